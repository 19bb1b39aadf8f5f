"""
UTC time helpers.

SQLite hands back naive datetimes for timezone-aware columns, PostgreSQL
hands back aware ones. Everything in the billing code compares aware UTC
values, so reads go through as_utc().
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
