"""Common helper functions for store modules."""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TypeVar

E = TypeVar("E", bound=Enum)


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Re-attach UTC to a timestamp read back from SQLite (which drops it)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def duration_ms(start: datetime, end: datetime) -> float:
    """Span duration in milliseconds, exactly ``end - start``."""
    return (end - start) / timedelta(milliseconds=1)


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a stored string to its enum.

    Invalid values crash: the store is our own data.

    Raises:
        ValueError: If string is not a valid enum value
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)
