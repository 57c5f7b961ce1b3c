"""UTC time helpers.

All timestamps are stored and compared in UTC. SQLite hands back naive
datetimes and ISO date strings, PostgreSQL aware datetimes and ``date``
objects; these helpers normalise both.
"""

import datetime

__all__ = ["utcnow", "as_utc", "as_date", "today"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def today() -> datetime.date:
    return utcnow().date()


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def as_date(value: datetime.date | datetime.datetime | str) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return as_utc(value).date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])
