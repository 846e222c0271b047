"""
Test fixtures for the librarian provisioning engine.

The management database is real (SQLite in memory, one StaticPool connection
per database name so that separate sessions share state). The Postgres
administrative surface is the external service and is replaced by
``FakeAdmin``, which keeps the backend's view of databases, roles and grants.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set, Tuple, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import StaticPool

from librarian.config import PostgresConfig, reset_config
from librarian.constants import SqlState
from librarian.context.call_context import CallContext, ensure_context
from librarian.exceptions import AdministrativeError, clear_correlation_id
from librarian.provisioners.admin_executor import AdminExecutor
from librarian.provisioners.postgres import PostgresProvisioner
from librarian.utils.logger import reset_logging


class FakeAdmin(AdminExecutor):
    """
    AdminExecutor that records statements instead of sending them.

    Statements are still built by the real executor methods, so quoting is
    exercised. Backend conditions (duplicate database, missing role) are
    reported with the same SQLSTATE Postgres would use. ``fail_on`` injects a
    failure for one step, either as a SQLSTATE or as an exception instance.
    """

    def __init__(self, engine: Optional[Engine] = None):
        super().__init__(engine)
        self.databases: Set[str] = set()
        self.users: Set[str] = set()
        self.grants: Set[Tuple[str, str]] = set()
        self.statements = []
        self.failures: Dict[str, Union[str, BaseException]] = {}

    def fail_on(self, step: str, error: Union[str, BaseException] = "XX000") -> None:
        self.failures[step] = error

    def clear_failures(self) -> None:
        self.failures.clear()

    def _execute(self, statement, step, ctx, redact=False, **context):
        ctx = ensure_context(ctx)
        ctx.check(step)
        self.statements.append(statement)

        failure = self.failures.get(step)
        if isinstance(failure, BaseException):
            raise failure
        if failure is not None:
            raise AdministrativeError(f"Cannot {step}", sqlstate=failure, step=step, **context)

        database = context.get("database")
        username = context.get("username")
        if step == "create_database":
            if database in self.databases:
                self._backend_error(step, SqlState.DUPLICATE_DATABASE, context)
            self.databases.add(database)
        elif step == "drop_database":
            if database not in self.databases:
                self._backend_error(step, SqlState.INVALID_CATALOG_NAME, context)
            self.databases.discard(database)
            self.grants = {g for g in self.grants if g[0] != database}
        elif step == "create_user":
            if username in self.users:
                self._backend_error(step, SqlState.DUPLICATE_OBJECT, context)
            self.users.add(username)
        elif step == "drop_user":
            self.users.discard(username)
            self.grants = {g for g in self.grants if g[1] != username}
        elif step == "grant_all_privileges":
            if database not in self.databases:
                self._backend_error(step, SqlState.INVALID_CATALOG_NAME, context)
            self.grants.add((database, username))

    @staticmethod
    def _backend_error(step, sqlstate, context):
        raise AdministrativeError(f"Cannot {step}", sqlstate=sqlstate.value, step=step, **context)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SqliteEngineFactory:
    """Engine factory handing out one in-memory SQLite engine per database name."""

    def __init__(self):
        self.engines: Dict[str, Engine] = {}
        self.calls = []

    def __call__(self, url: URL, config: PostgresConfig, autocommit: bool = False) -> Engine:
        self.calls.append((url.database, autocommit))
        engine = self.engines.get(url.database)
        if engine is None:
            engine = create_engine(
                "sqlite://",
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            self.engines[url.database] = engine
        return engine

    def dispose_all(self) -> None:
        for engine in self.engines.values():
            engine.dispose()


@pytest.fixture(autouse=True)
def clean_globals():
    """Reset process-wide configuration, logger and correlation id around each test."""
    reset_config()
    reset_logging()
    clear_correlation_id()
    yield
    reset_config()
    reset_logging()
    clear_correlation_id()


@pytest.fixture
def pg_config() -> PostgresConfig:
    """Explicit config so that LIBRARIAN_PG_* variables cannot leak into tests."""
    return PostgresConfig(
        scheme="postgresql",
        host="localhost",
        port=5432,
        username="postgres",
        password="secret",
        root_database="postgres",
        management_database="librarian",
        soft_delete=False,
        ssl_mode="disable",
    )


@pytest.fixture
def engine_factory():
    factory = SqliteEngineFactory()
    yield factory
    factory.dispose_all()


@pytest.fixture
def admin() -> FakeAdmin:
    return FakeAdmin()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_provisioner(pg_config, engine_factory, admin, clock):
    """Build unconnected provisioners sharing the fake backend and clock."""

    def build(**overrides) -> PostgresProvisioner:
        config = pg_config.model_copy(update=overrides) if overrides else pg_config
        return PostgresProvisioner(
            config,
            engine_factory=engine_factory,
            admin_factory=lambda engine: admin,
            clock=clock,
        )

    return build


@pytest.fixture
def provisioner(make_provisioner) -> PostgresProvisioner:
    """A ready provisioner with hard delete."""
    provisioner = make_provisioner()
    provisioner.connect()
    provisioner.init()
    return provisioner


@pytest.fixture
def soft_provisioner(make_provisioner) -> PostgresProvisioner:
    """A ready provisioner with soft delete."""
    provisioner = make_provisioner(soft_delete=True)
    provisioner.connect()
    provisioner.init()
    return provisioner


@pytest.fixture
def background() -> CallContext:
    return CallContext.background()
