from typing import Any, Callable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..config import PostgresConfig
from ..exceptions import BackendConnectionError
from ..utils import get_logger

# Base class for all SQLAlchemy models
Base: Any = declarative_base()

# Builds an engine for the given URL; swapped out in tests
EngineFactory = Callable[..., Engine]


def create_backend_engine(url: URL, config: PostgresConfig, autocommit: bool = False) -> Engine:
    """
    Create an engine for a backend database.

    The root administrative engine runs in AUTOCOMMIT because CREATE DATABASE
    and DROP DATABASE cannot run inside a transaction block.
    """
    kwargs: dict = {
        "echo": config.echo,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_timeout": config.pool_timeout,
        "pool_pre_ping": True,
    }
    if autocommit:
        kwargs["isolation_level"] = "AUTOCOMMIT"
    return create_engine(url, **kwargs)


def probe_engine(engine: Engine, label: str) -> None:
    """
    Check that the engine can reach its database, disposing it if not.

    Raises:
        BackendConnectionError: If the liveness probe fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        engine.dispose()
        raise BackendConnectionError(
            f"Cannot ping {label} database",
            cause=e,
            database=label,
        ) from e
    get_logger().debug(f"Connected to {label} database", extra={"database": label})


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory for the management database."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def import_all_models():
    """Import all models to ensure they're registered with SQLAlchemy metadata."""
    from sqlalchemy.orm import configure_mappers

    from .db_provisioning_models import DatabaseRecord, UserRecord  # noqa

    configure_mappers()
