"""Time utilities."""
from datetime import UTC, date, datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def unix_now() -> int:
    """Return the current time as integer unix seconds."""

    return int(utcnow().timestamp())


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO 8601 string and normalize it to UTC."""

    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_start(moment: datetime) -> datetime:
    """Return midnight UTC of the day containing ``moment``."""

    moment = ensure_utc(moment)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def week_start(moment: datetime) -> datetime:
    """Return midnight UTC of the Monday starting the ISO week containing ``moment``."""

    start = day_start(moment)
    return start - timedelta(days=start.weekday())


def week_start_date(moment: datetime) -> date:
    return week_start(moment).date()


__all__ = [
    "utcnow",
    "unix_now",
    "parse_iso_utc",
    "ensure_utc",
    "day_start",
    "week_start",
    "week_start_date",
]
