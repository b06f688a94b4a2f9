"""UTC helpers.

SQLite hands datetimes back without tzinfo, so anything read from the store goes
through `as_utc` before arithmetic.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms(dt: datetime | None) -> int | None:
    if dt is None:
        return None
    return int(as_utc(dt).timestamp() * 1000)
