from datetime import datetime, timezone


_UNITS = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes that were stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_age(created_at: datetime | None, now: datetime | None = None) -> str | None:
    """Render the time elapsed since ``created_at`` as e.g. ``"3 hours ago"``."""
    if created_at is None:
        return None
    now = as_utc(now or utcnow())
    seconds = int((now - as_utc(created_at)).total_seconds())
    if seconds < 60:
        return "just now"
    for name, size in _UNITS:
        count = seconds // size
        if count >= 1:
            return f"{count} {name}{'s' if count > 1 else ''} ago"
    return "just now"
