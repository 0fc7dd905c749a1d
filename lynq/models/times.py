"""RFC 3339 timestamp helpers matching the Kubernetes ``metav1.Time`` format."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def format_time(value: datetime) -> str:
    """Return *value* as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_time(value: str | None) -> datetime | None:
    """Parse an RFC 3339 string; returns None for empty or malformed input."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
