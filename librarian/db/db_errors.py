"""Helpers for recognising backend errors by SQLSTATE."""

from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..constants import SqlState


def sqlstate_of(exc: Optional[BaseException]) -> Optional[str]:
    """
    Find the SQLSTATE code behind an exception.

    Follows SQLAlchemy's ``orig`` (psycopg2 exposes ``pgcode``, psycopg 3
    exposes ``sqlstate``), our own errors' ``sqlstate``/``cause`` and the
    ``__cause__`` chain.
    """
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "sqlstate", None) or getattr(current, "pgcode", None)
        if code:
            return code
        orig = getattr(current, "orig", None)
        if orig is not None:
            code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
            if code:
                return code
        current = getattr(current, "cause", None) or current.__cause__
    return None


def is_unique_violation(exc: BaseException) -> bool:
    """True for unique constraint violations on Postgres and SQLite."""
    if sqlstate_of(exc) == SqlState.UNIQUE_VIOLATION.value:
        return True
    return isinstance(exc, IntegrityError) and "unique constraint" in str(exc).lower()
