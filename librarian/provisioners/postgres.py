"""
Postgres provisioning engine.

Owns two connections: the root administrative connection (DDL on the
backend) and the management database connection (bookkeeping rows). Keeps
the two consistent as follows:

- create: the database row is inserted and flushed (claiming the name)
  before CREATE DATABASE runs, and only committed once the DDL succeeded;
  the user row follows the same pattern with CREATE USER and GRANT. DDL is
  not transactional, so when a later step fails the already-created role and
  database are dropped again and the database row removed. If that cleanup
  fails too, the row is kept so that the expiry sweep retries it, and the
  leftover is logged for an operator.
- delete_expired: each expired database is reclaimed in its own unit of
  work, DROP DATABASE and DROP USER first, rows afterwards. A group whose
  drop fails is rolled back and reported without stopping the others.
  With soft delete the rows are only marked deleted and keep their unique
  names, so a reclaimed database name or username is refused by a later
  create with DuplicateResourceError.
"""

from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..config import PostgresConfig, get_config
from ..constants import ProvisionerState, SqlState
from ..context.call_context import CallContext, ensure_context
from ..context.operation_context import operation
from ..db.db_base import utc_now
from ..db.db_config import (
    Base,
    EngineFactory,
    create_backend_engine,
    import_all_models,
    make_session_factory,
    probe_engine,
)
from ..db.db_errors import sqlstate_of
from ..db.db_transaction import run_in_transaction, transaction
from ..exceptions import (
    AdministrativeError,
    BackendConnectionError,
    BaseError,
    ContextError,
    DuplicateResourceError,
    ErrorCode,
    InitializationError,
    MetadataStoreError,
    ProvisioningError,
    ReclamationError,
    ServiceError,
)
from ..schemas.provisioning_schema import CreationOptions, ProvisionedCredential
from ..utils import get_logger, validate_identifier
from . import metadata_store
from .admin_executor import AdminExecutor
from .base import Provisioner
from .metadata_store import DatabaseGroup

AdminFactory = Callable[[Engine], AdminExecutor]


class PostgresProvisioner(Provisioner):
    """Provisioner backed by a Postgres server."""

    def __init__(
        self,
        config: Optional[PostgresConfig] = None,
        engine_factory: EngineFactory = create_backend_engine,
        admin_factory: AdminFactory = AdminExecutor,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            config: Connection and policy settings (default: from global config)
            engine_factory: Builds engines from (url, config, autocommit=...)
            admin_factory: Builds the administrative executor for the root engine
            clock: Source of the current time, UTC-aware
        """
        self.config = config or get_config().postgres
        self._engine_factory = engine_factory
        self._admin_factory = admin_factory
        self._clock = clock
        self.logger = get_logger()

        self.state = ProvisionerState.UNCONNECTED
        self.admin: Optional[AdminExecutor] = None
        self._root_engine: Optional[Engine] = None
        self._management_engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker] = None

    @property
    def soft_delete(self) -> bool:
        return self.config.soft_delete

    # ---- Lifecycle -------------------------------------------------------

    @operation()
    def connect(self, ctx: Optional[CallContext] = None) -> None:
        ctx = ensure_context(ctx)
        self._require_state("connect", ProvisionerState.UNCONNECTED)
        ctx.check("connect")

        engine = self._open_engine(self.config.root_database, autocommit=True)
        self._root_engine = engine
        self.admin = self._admin_factory(engine)
        self.state = ProvisionerState.ROOT_CONNECTED

        self.logger.info("Connected to root database", extra={"config": repr(self.config)})

    @operation()
    def init(self, ctx: Optional[CallContext] = None) -> None:
        ctx = ensure_context(ctx)
        self._require_state("init", ProvisionerState.ROOT_CONNECTED, ProvisionerState.READY)
        management_database = self.config.management_database

        try:
            self.admin.create_database(management_database, ctx)
        except AdministrativeError as e:
            if e.sqlstate != SqlState.DUPLICATE_DATABASE.value:
                raise InitializationError(
                    "Cannot create management database",
                    cause=e,
                    database=management_database,
                ) from e
            self.logger.info(
                "Management database already exists", extra={"database": management_database}
            )

        if self._management_engine is None:
            self._management_engine = self._open_engine(management_database, autocommit=False)
            self._sessions = make_session_factory(self._management_engine)

        import_all_models()
        try:
            run_in_transaction(
                self._sessions,
                lambda session: Base.metadata.create_all(bind=session.connection()),
                ctx,
            )
        except SQLAlchemyError as e:
            if sqlstate_of(e) != SqlState.DUPLICATE_TABLE.value:
                raise InitializationError(
                    "Cannot create management tables", cause=e, database=management_database
                ) from e
            self.logger.info(
                "Management tables already exist", extra={"database": management_database}
            )

        self.state = ProvisionerState.READY

    def disconnect(self) -> None:
        """
        Close both connections.

        Both engines are disposed even if the first one fails; the first
        failure is raised afterwards as BackendConnectionError.
        """
        first_failure = None
        for label, engine in (("root", self._root_engine), ("management", self._management_engine)):
            if engine is None:
                continue
            try:
                engine.dispose()
            except Exception as e:
                self.logger.error(
                    f"Cannot close connection with {label} database",
                    extra={"database": label, "error": str(e)},
                )
                if first_failure is None:
                    first_failure = (label, e)

        self._root_engine = None
        self._management_engine = None
        self._sessions = None
        self.admin = None
        self.state = ProvisionerState.UNCONNECTED

        if first_failure is not None:
            label, error = first_failure
            raise BackendConnectionError(
                f"Cannot close connection with {label} database", cause=error, database=label
            ) from error

    # ---- Capabilities ----------------------------------------------------

    @operation()
    def create(
        self, options: Optional[CreationOptions] = None, ctx: Optional[CallContext] = None
    ) -> ProvisionedCredential:
        ctx = ensure_context(ctx)
        self._require_state("create", ProvisionerState.READY)
        if options is None:
            options = CreationOptions()

        now = self._clock()
        database = validate_identifier("database", options.resolve_database())
        username = validate_identifier("username", options.resolve_username())
        password = options.resolve_password()
        expired_at = options.resolve_expired_at(now, get_config().default_ttl)

        database_id = self._create_database(database, now, expired_at, ctx)
        self._create_user(database_id, database, username, password, now, ctx)

        self.logger.info(
            "Provisioned database",
            extra={"database": database, "username": username, "expired_at": expired_at},
        )

        return ProvisionedCredential(
            database=database,
            username=username,
            password=password,
            expired_at=expired_at,
        )

    @operation()
    def list(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        return self._list(ctx, expired_only=False)

    @operation()
    def list_expired(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        return self._list(ctx, expired_only=True)

    @operation()
    def delete_expired(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        ctx = ensure_context(ctx)
        self._require_state("delete_expired", ProvisionerState.READY)
        now = self._clock()

        groups = run_in_transaction(
            self._sessions,
            lambda session: metadata_store.select_groups(session, now, expired_only=True),
            ctx,
        )

        reclaimed: List[ProvisionedCredential] = []
        failures = {}
        for group in groups:
            try:
                reclaimed.extend(self._reclaim(group, now, ctx))
            except ContextError as e:
                e.add_context(reclaimed_databases=sorted({c.database for c in reclaimed}))
                raise
            except BaseError as e:
                self.logger.error(
                    "Cannot reclaim expired database",
                    extra={"database": group.name, "error_code": e.error_code.value},
                )
                failures[group.name] = e
            except SQLAlchemyError as e:
                failures[group.name] = MetadataStoreError(
                    "Cannot commit reclaimed database", cause=e, database=group.name
                )

        if failures:
            raise ReclamationError(
                f"Cannot reclaim {len(failures)} of {len(groups)} expired databases",
                reclaimed=reclaimed,
                failures=failures,
            )

        self.logger.info(
            "Reclaimed expired databases",
            extra={"databases": len(groups), "credentials": len(reclaimed)},
        )
        return reclaimed

    # ---- Internals -------------------------------------------------------

    def _require_state(self, step: str, *states: ProvisionerState) -> None:
        if self.state not in states:
            raise ServiceError(
                f"Cannot {step} while {self.state.value}",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                operation=step,
                state=self.state.value,
            )

    def _open_engine(self, database: str, autocommit: bool) -> Engine:
        url = self.config.get_connection_url(database)
        try:
            engine = self._engine_factory(url, self.config, autocommit=autocommit)
        except (SQLAlchemyError, ImportError) as e:
            raise BackendConnectionError(
                f"Cannot open connection to {database} database", cause=e, database=database
            ) from e
        probe_engine(engine, database)
        return engine

    def _list(self, ctx: Optional[CallContext], expired_only: bool) -> List[ProvisionedCredential]:
        ctx = ensure_context(ctx)
        self._require_state("list", ProvisionerState.READY)
        now = self._clock()
        groups = run_in_transaction(
            self._sessions,
            lambda session: metadata_store.select_groups(session, now, expired_only=expired_only),
            ctx,
        )
        return [credential for group in groups for credential in _credentials(group)]

    def _create_database(
        self, database: str, now: datetime, expired_at: Optional[datetime], ctx: CallContext
    ) -> int:
        created = False
        try:
            with transaction(self._sessions, ctx) as session:
                database_id = metadata_store.insert_database(session, database, now, expired_at)
                self.admin.create_database(database, ctx)
                created = True
        except BaseException as e:
            if created:
                # DDL went through but the row did not commit
                self._drop_orphan_database(database)
            raise self._creation_error(e, "create database", database=database)
        return database_id

    def _create_user(
        self,
        database_id: int,
        database: str,
        username: str,
        password: str,
        now: datetime,
        ctx: CallContext,
    ) -> None:
        user_created = False
        try:
            with transaction(self._sessions, ctx) as session:
                metadata_store.insert_user(session, database_id, username, now)
                self.admin.create_user(username, password, ctx)
                user_created = True
                self.admin.grant_all_privileges(database, username, ctx)
        except BaseException as e:
            self._undo_database(database_id, database, username if user_created else None)
            raise self._creation_error(e, "create user", database=database, username=username)

    def _creation_error(self, error: BaseException, step: str, **context) -> BaseException:
        """Map a failure inside a creation phase onto the error taxonomy."""
        if isinstance(error, (DuplicateResourceError, ContextError, MetadataStoreError)):
            return error
        if isinstance(error, AdministrativeError):
            if error.sqlstate in (
                SqlState.DUPLICATE_DATABASE.value,
                SqlState.DUPLICATE_OBJECT.value,
            ):
                return DuplicateResourceError(
                    f"Cannot {step}: already exists on the backend", cause=error, **context
                )
            return ProvisioningError(f"Cannot {step}", cause=error, **context)
        if isinstance(error, SQLAlchemyError):
            return MetadataStoreError(f"Cannot {step}: metadata store failed", cause=error, **context)
        return error

    def _drop_orphan_database(self, database: str) -> None:
        try:
            self.admin.drop_database(database)
        except BaseError as e:
            self.logger.error(
                "Database exists without a metadata row; drop it manually",
                extra={"database": database, "error_id": e.error_id},
            )

    def _undo_database(self, database_id: int, database: str, username: Optional[str]) -> None:
        """Compensate a failed credential phase by removing what phase one created."""
        try:
            if username is not None:
                self.admin.drop_user(username)
            self.admin.drop_database(database)
            with transaction(self._sessions) as session:
                metadata_store.delete_database(session, database_id, self._clock(), soft=False)
        except BaseError as e:
            self.logger.error(
                "Cannot roll back provisioned database; the expiry sweep will retry it",
                extra={"database": database, "username": username, "error_id": e.error_id},
            )
        except SQLAlchemyError as e:
            self.logger.error(
                "Cannot remove metadata row of rolled back database",
                extra={"database": database, "error": str(e)},
            )

    def _reclaim(
        self, group: DatabaseGroup, now: datetime, ctx: CallContext
    ) -> List[ProvisionedCredential]:
        """Reclaim one expired database and its users in a single unit of work."""
        with transaction(self._sessions, ctx) as session:
            locked = metadata_store.select_groups(
                session, now, expired_only=True, database_id=group.id, for_update=True
            )
            if not locked:
                # reclaimed or locked by a concurrent sweep
                return []
            group = locked[0]

            try:
                self.admin.drop_database(group.name, ctx)
            except AdministrativeError as e:
                if e.sqlstate != SqlState.INVALID_CATALOG_NAME.value:
                    raise
                self.logger.warning(
                    "Expired database already dropped", extra={"database": group.name}
                )

            for user in group.users:
                self.admin.drop_user(user.username, ctx)

            for user in group.users:
                metadata_store.delete_user(session, user.id, now, self.soft_delete)

            metadata_store.delete_database(session, group.id, now, self.soft_delete)

        return _credentials(group)


def _credentials(group: DatabaseGroup) -> List[ProvisionedCredential]:
    return [
        ProvisionedCredential(
            database=group.name,
            username=user.username,
            password="",
            expired_at=group.expired_at,
        )
        for user in group.users
    ]
