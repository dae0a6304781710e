"""Timezone helpers – provide a single UTC *now()* function.

Database columns store **naive** UTC datetimes.  Everything that enters the
system from a client (query strings, JSON bodies) is normalised with
:func:`to_naive_utc` before it is compared against stored values.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def next_modified(previous: datetime | None) -> datetime:
    """Return a ``last_modified`` value strictly after *previous*.

    Two writes to the same record inside one clock tick would otherwise carry
    identical timestamps and look like a conflict to reconciling devices.
    """

    now = utc_now_naive()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


__all__ = ["EPOCH", "utc_now", "utc_now_naive", "to_naive_utc", "next_modified"]
