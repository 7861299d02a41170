"""Timezone handling for timestamps read back from different providers.

The memory provider returns the datetimes it was given, SQL providers return
naive values. Comparisons go through ``as_utc`` so both work.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
