"""Structured logging configuration using structlog.

Every line carries the ``component`` of the logger that emitted it.  While a
reconcile runs, :func:`bind_reconcile_context` adds a ``reconcile`` key
(``Kind/namespace/name``) through contextvars, so helpers that know nothing
about the object being reconciled still log it.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


def bind_reconcile_context(kind: str, key: str) -> AbstractContextManager[Any]:
    """Bind ``reconcile=<kind>/<key>`` to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(reconcile=f"{kind}/{key}")
