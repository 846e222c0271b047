"""
Constants and enums for the librarian provisioning service.

This module centralizes all magic strings and constants used throughout
the package to ensure consistency and maintainability.
"""

from datetime import timedelta
from enum import Enum


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    PG_SCHEME = "LIBRARIAN_PG_SCHEME"
    PG_HOST = "LIBRARIAN_PG_HOST"
    PG_PORT = "LIBRARIAN_PG_PORT"
    PG_USERNAME = "LIBRARIAN_PG_USERNAME"
    PG_PASSWORD = "LIBRARIAN_PG_PASSWORD"
    PG_ROOT_DATABASE = "LIBRARIAN_PG_ROOT_DATABASE"
    PG_MANAGEMENT_DATABASE = "LIBRARIAN_PG_MANAGEMENT_DATABASE"
    PG_SOFT_DELETE = "LIBRARIAN_PG_SOFT_DELETE"
    PG_SSL_MODE = "LIBRARIAN_PG_SSL_MODE"
    DEFAULT_TTL_SECONDS = "LIBRARIAN_DEFAULT_TTL_SECONDS"


class SqlState(str, Enum):
    """Postgres SQLSTATE codes the provisioning engine reacts to."""

    UNIQUE_VIOLATION = "23505"
    DUPLICATE_DATABASE = "42P04"
    DUPLICATE_TABLE = "42P07"
    DUPLICATE_OBJECT = "42710"
    INVALID_CATALOG_NAME = "3D000"
    QUERY_CANCELED = "57014"


class ProvisionerState(str, Enum):
    """Lifecycle states of a provisioning engine."""

    UNCONNECTED = "unconnected"
    ROOT_CONNECTED = "root_connected"
    READY = "ready"


class Defaults:
    """Default values for provisioning."""

    TTL = timedelta(minutes=10)
    SCHEME = "postgresql"
    HOST = "localhost"
    PORT = 5432
    USERNAME = "postgres"
    ROOT_DATABASE = "postgres"
    MANAGEMENT_DATABASE = "librarian"
    SSL_MODE = "disable"
    PASSWORD_BYTES = 24


class Limits:
    """System limits and thresholds."""

    # NAMEDATALEN - 1 on a stock Postgres build
    MAX_IDENTIFIER_BYTES = 63
    DEFAULT_POOL_SIZE = 5
    DEFAULT_MAX_OVERFLOW = 10
    DEFAULT_POOL_TIMEOUT_SECONDS = 30
