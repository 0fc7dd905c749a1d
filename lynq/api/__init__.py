"""HTTP layer for Lynq.

Exposes:
    create_app -- FastAPI application factory.
"""

from lynq.api.app import create_app

__all__ = ["create_app"]
