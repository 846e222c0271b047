"""
SQLAlchemy models and session handling for the management database.

This module provides a common entry point for all bookkeeping models.
"""

from .db_base import SoftDeleteMixin, as_utc, utc_now
from .db_config import (
    Base,
    EngineFactory,
    create_backend_engine,
    import_all_models,
    make_session_factory,
    probe_engine,
)
from .db_errors import is_unique_violation, sqlstate_of
from .db_provisioning_models import DatabaseRecord, UserRecord
from .db_transaction import apply_statement_timeout, run_in_transaction, transaction

__all__ = [
    # Base definitions
    "Base",
    "SoftDeleteMixin",
    "as_utc",
    "utc_now",
    # Engines and sessions
    "EngineFactory",
    "create_backend_engine",
    "import_all_models",
    "make_session_factory",
    "probe_engine",
    # Models
    "DatabaseRecord",
    "UserRecord",
    # Errors
    "is_unique_violation",
    "sqlstate_of",
    # Units of work
    "apply_statement_timeout",
    "run_in_transaction",
    "transaction",
]
