"""Entry point for `python -m lynq`.

Usage:
    python -m lynq run
    python -m lynq validate form.yaml
"""

from __future__ import annotations

from lynq.cli import cli

cli()
