"""Utility modules for librarian."""

from .identifier_utils import (
    generate_db_name,
    generate_password,
    generate_username,
    validate_identifier,
)
from .logger import (
    ContextAwareLogger,
    CorrelationIdFilter,
    configure_logging,
    get_logger,
    reset_logging,
)

__all__ = [
    # Generators
    "generate_db_name",
    "generate_password",
    "generate_username",
    "validate_identifier",
    # Logging
    "ContextAwareLogger",
    "CorrelationIdFilter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]
