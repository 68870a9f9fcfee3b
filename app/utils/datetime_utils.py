from datetime import datetime, timezone

# DateTime columns hold naive values that are always UTC; the scheduler
# itself only passes aware datetimes around.


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime (the default job clock)."""
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    return utc_now().replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """Aware UTC view of ``dt``; a naive value is taken to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """Column form of ``dt``: converted to UTC, tzinfo dropped."""
    return to_utc(dt).replace(tzinfo=None)


def epoch_ms(dt: datetime) -> int:
    return int(to_utc(dt).timestamp() * 1000)
