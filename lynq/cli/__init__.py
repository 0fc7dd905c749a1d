"""Lynq command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``lynq`` script).
"""

from lynq.cli.main import cli

__all__ = ["cli"]
