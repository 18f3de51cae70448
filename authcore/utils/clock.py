"""Wall-clock helper used for every expiry comparison."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (storage convention)."""
    return datetime.now(UTC).replace(tzinfo=None)
