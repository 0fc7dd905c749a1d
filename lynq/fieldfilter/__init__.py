"""Ignore-field filtering for managed objects."""

from lynq.fieldfilter.filter import FieldFilter, parse_path, validate_path

__all__ = ["FieldFilter", "parse_path", "validate_path"]
