"""
Persistent models for the payment & settlement engine.

All timestamps are written as timezone-aware UTC. SQLite hands them back
naive, so anything read from a row goes through ``as_utc()`` before it is
compared or formatted.
"""

import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as aware UTC."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Aware UTC view of a stored datetime; naive values are taken as UTC (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def to_epoch(value: datetime) -> int:
    """UTC datetime to epoch seconds."""
    return int(as_utc(value).timestamp())


def to_iso(value):
    """UTC datetime to an ISO-8601 string with a Z suffix (None passes through)."""
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")
