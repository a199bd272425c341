# server/utils/timeutil.py

from    datetime    import datetime, timezone


def utcnow() -> datetime:
    """Aware UTC now, the form timestamps are stored in."""
    return datetime.now(timezone.utc)


def to_aware_utc(value: datetime) -> datetime:
    # Naive input is taken to be UTC already; SQLite hands stored values back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
