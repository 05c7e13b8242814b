from datetime import datetime, timezone


def utcnow() -> datetime:
    """UTC-aware 'now' to keep comparisons consistent with timestamptz columns."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize ``value`` to an aware UTC datetime.

    Naive values are taken to be UTC already (SQLite hands timestamps back
    naive). Aware values are converted, since SQLite stores the wall-clock
    time and drops the offset.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0
