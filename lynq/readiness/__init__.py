"""Readiness checks for managed objects."""

from lynq.readiness.checker import is_ready, readiness_message, wait_for_ready

__all__ = ["is_ready", "readiness_message", "wait_for_ready"]
