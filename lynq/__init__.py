"""Lynq: declarative multi-tenant resource orchestration for Kubernetes."""

__version__ = "0.4.0"
