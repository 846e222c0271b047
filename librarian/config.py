"""
Centralized configuration management for the librarian service.

This module provides a unified configuration system with support for:
- Environment variables
- Per-backend connection settings
- Validation using Pydantic
"""

import os
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.engine import URL

from .constants import Defaults, EnvironmentVariable, Limits, LogLevel


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class PostgresConfig(BaseModel):
    """Connection and policy settings for one Postgres provisioning backend."""

    scheme: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.PG_SCHEME.value, Defaults.SCHEME),
        description="SQLAlchemy dialect/driver name",
    )
    host: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.PG_HOST.value, Defaults.HOST),
        description="Backend host",
    )
    port: int = Field(
        default_factory=lambda: int(
            os.getenv(EnvironmentVariable.PG_PORT.value, str(Defaults.PORT))
        ),
        description="Backend port",
    )
    username: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.PG_USERNAME.value, Defaults.USERNAME
        ),
        description="Administrative role used for DDL and bookkeeping",
    )
    password: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.PG_PASSWORD.value, ""),
        description="Password of the administrative role",
    )
    root_database: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.PG_ROOT_DATABASE.value, Defaults.ROOT_DATABASE
        ),
        description="Database the root administrative connection attaches to",
    )
    management_database: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.PG_MANAGEMENT_DATABASE.value, Defaults.MANAGEMENT_DATABASE
        ),
        description="Database holding the bookkeeping tables",
    )
    soft_delete: bool = Field(
        default_factory=lambda: _env_bool(EnvironmentVariable.PG_SOFT_DELETE.value),
        description="Mark reclaimed rows with deleted_at instead of removing them",
    )
    ssl_mode: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.PG_SSL_MODE.value, Defaults.SSL_MODE),
        description="libpq sslmode",
    )
    pool_size: int = Field(default=Limits.DEFAULT_POOL_SIZE, description="Connection pool size")
    max_overflow: int = Field(
        default=Limits.DEFAULT_MAX_OVERFLOW, description="Maximum overflow connections"
    )
    pool_timeout: int = Field(
        default=Limits.DEFAULT_POOL_TIMEOUT_SECONDS, description="Pool timeout in seconds"
    )
    echo: bool = Field(default=False, description="Echo SQL statements")

    model_config = ConfigDict(frozen=True)

    @field_validator("port")
    def validate_port(cls, v: int) -> int:
        """Validate port is in the TCP range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator("management_database", "root_database")
    def validate_database_name(cls, v: str) -> str:
        """Validate database names fit a Postgres identifier."""
        if not v or len(v.encode("utf-8")) > Limits.MAX_IDENTIFIER_BYTES:
            raise ValueError(
                f"Database name must be 1..{Limits.MAX_IDENTIFIER_BYTES} bytes long"
            )
        return v

    def get_connection_url(self, database: Optional[str] = None) -> URL:
        """Build the SQLAlchemy URL for ``database`` (the root database by default)."""
        return URL.create(
            drivername=self.scheme,
            username=self.username,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=database or self.root_database,
            query={"sslmode": self.ssl_mode} if self.ssl_mode else {},
        )

    def __repr__(self) -> str:
        """String representation with masked password for security."""
        return (
            f"PostgresConfig("
            f"scheme='{self.scheme}', "
            f"host='{self.host}', "
            f"port={self.port}, "
            f"username='{self.username}', "
            f"password='***', "
            f"management_database='{self.management_database}', "
            f"soft_delete={self.soft_delete})"
        )

    __str__ = __repr__


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class LibrarianConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    default_ttl: timedelta = Field(
        default_factory=lambda: timedelta(
            seconds=int(
                os.getenv(
                    EnvironmentVariable.DEFAULT_TTL_SECONDS.value,
                    str(int(Defaults.TTL.total_seconds())),
                )
            )
        ),
        description="TTL applied when a creation request does not set one",
    )

    # Sub-configurations
    postgres: PostgresConfig = Field(
        default_factory=PostgresConfig, description="Postgres backend configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @field_validator("default_ttl")
    def validate_default_ttl(cls, v: timedelta) -> timedelta:
        """A negative TTL would create already-expired databases."""
        if v < timedelta(0):
            raise ValueError("default_ttl must not be negative")
        return v

    @classmethod
    def from_env(cls) -> "LibrarianConfig":
        """Create configuration from environment variables."""
        return cls()


# Global configuration instance
_config: Optional[LibrarianConfig] = None


def get_config() -> LibrarianConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = LibrarianConfig.from_env()
    return _config


def set_config(config: LibrarianConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
