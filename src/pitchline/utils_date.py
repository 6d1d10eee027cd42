"""Date utility functions for pitchline."""

import calendar
import datetime as dt


def utcnow() -> dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return dt.datetime.now(dt.timezone.utc)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """
    Coerce ``value`` to an aware UTC datetime.

    Naive datetimes are assumed to already be expressed in UTC, which is how
    every timestamp is written to the store.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_timestamp(value: str | dt.datetime) -> dt.datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into UTC."""
    if isinstance(value, dt.datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(dt.datetime.fromisoformat(text))


def months_before(moment: dt.datetime, months: int) -> dt.datetime:
    """
    Shift ``moment`` back by a number of calendar months.

    The day is clamped to the last day of the target month, so 31 March
    minus one month is 28 or 29 February.
    """
    if months < 0:
        raise ValueError("argument `months` must be non-negative")
    total = moment.year * 12 + (moment.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def lookback_start(now: dt.datetime, *, months: int | None = None, days: int | None = None, hours: float | None = None) -> dt.datetime:
    """
    Return the start of a trailing window ending at ``now``.

    Exactly one of ``months``, ``days`` or ``hours`` must be given.
    """
    given = [value for value in (months, days, hours) if value is not None]
    if len(given) != 1:
        raise ValueError("exactly one of months, days or hours is required")
    now = ensure_utc(now)
    if months is not None:
        return months_before(now, months)
    if days is not None:
        return now - dt.timedelta(days=days)
    return now - dt.timedelta(hours=float(hours or 0.0))


def isoformat(value: dt.datetime) -> str:
    """Serialise a datetime the way the store keeps it (UTC, seconds precision)."""
    return ensure_utc(value).replace(microsecond=0).isoformat()
