"""Logging and metrics for Lynq."""
