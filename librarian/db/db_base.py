"""
Shared column helpers and time handling for the bookkeeping models.

Keeps timestamps comparable across SQLite (used in tests, which returns naive
datetimes) and PostgreSQL (which returns aware ones).
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime


def utc_now() -> datetime:
    """Return current UTC time with timezone info attached."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SoftDeleteMixin:
    """created_at/deleted_at pair shared by every bookkeeping table."""

    created_at = Column(DateTime(timezone=True), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
