"""
Identifier and secret generators, plus identifier validation.

Generators are zero-argument callables so that callers can swap them per
creation request.
"""

import secrets
import uuid

from ..constants import Defaults, Limits
from ..exceptions import validation_failed


def generate_db_name() -> str:
    """Return a fresh database name."""
    return f"db_{uuid.uuid4()}"


def generate_username() -> str:
    """Return a fresh role name."""
    return f"user_{uuid.uuid4()}"


def generate_password() -> str:
    """Return a fresh URL-safe password."""
    return secrets.token_urlsafe(Defaults.PASSWORD_BYTES)


def validate_identifier(field: str, value: str) -> str:
    """
    Check that ``value`` can be used as a quoted Postgres identifier.

    Quoting handles any character except NUL, so only emptiness, NUL bytes
    and the server's length limit are rejected.

    Raises:
        ValidationError: If the identifier is unusable
    """
    if not isinstance(value, str) or not value:
        raise validation_failed(field, value, "must be a non-empty string")
    if "\x00" in value:
        raise validation_failed(field, value, "must not contain NUL characters")
    if len(value.encode("utf-8")) > Limits.MAX_IDENTIFIER_BYTES:
        raise validation_failed(
            field, value, f"must not exceed {Limits.MAX_IDENTIFIER_BYTES} bytes"
        )
    return value
