"""
Administrative DDL against the backend's root connection.

Statements are built from quoted identifiers and escaped literals; nothing
is concatenated unquoted. Each statement runs on its own pooled connection
in AUTOCOMMIT mode and is never retried.
"""

from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..constants import SqlState
from ..context.call_context import CallContext, driver_cancel, ensure_context
from ..db.db_errors import sqlstate_of
from ..exceptions import AdministrativeError, BaseError, ContextError, ErrorCode
from ..utils import get_logger


def quote_identifier(name: str) -> str:
    """Always-quoted identifier with embedded double quotes doubled."""
    if "\x00" in name:
        raise ValueError("identifier must not contain NUL")
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """
    String literal safe to splice into a statement.

    Single quotes are doubled; a value containing backslashes is written as an
    escape string (E'...') with the backslashes doubled, so the result is
    correct whatever standard_conforming_strings is set to.
    """
    if "\x00" in value:
        raise ValueError("literal must not contain NUL")
    value = value.replace("'", "''")
    if "\\" in value:
        return "E'" + value.replace("\\", "\\\\") + "'"
    return "'" + value + "'"


class AdminExecutor:
    """Issues CREATE/DROP DATABASE, CREATE/DROP USER and GRANT statements."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.logger = get_logger()

    def create_database(self, name: str, ctx: Optional[CallContext] = None) -> None:
        self._execute(
            f"CREATE DATABASE {quote_identifier(name)}",
            "create_database",
            ctx,
            database=name,
        )

    def drop_database(self, name: str, ctx: Optional[CallContext] = None) -> None:
        self._execute(
            f"DROP DATABASE {quote_identifier(name)}",
            "drop_database",
            ctx,
            database=name,
        )

    def create_user(self, username: str, password: str, ctx: Optional[CallContext] = None) -> None:
        self._execute(
            f"CREATE USER {quote_identifier(username)} "
            f"WITH ENCRYPTED PASSWORD {quote_literal(password)}",
            "create_user",
            ctx,
            redact=True,
            username=username,
        )

    def drop_user(self, username: str, ctx: Optional[CallContext] = None) -> None:
        """Drop a role; missing roles are not an error."""
        self._execute(
            f"DROP USER IF EXISTS {quote_identifier(username)}",
            "drop_user",
            ctx,
            username=username,
        )

    def grant_all_privileges(
        self, database: str, username: str, ctx: Optional[CallContext] = None
    ) -> None:
        self._execute(
            f"GRANT ALL PRIVILEGES ON DATABASE {quote_identifier(database)} "
            f"TO {quote_identifier(username)}",
            "grant_all_privileges",
            ctx,
            database=database,
            username=username,
        )

    def _execute(
        self,
        statement: str,
        step: str,
        ctx: Optional[CallContext],
        redact: bool = False,
        **context,
    ) -> None:
        """
        Run one administrative statement.

        Args:
            statement: Fully quoted statement text
            step: Name of the step, used in logs and errors
            ctx: Call context checked before the statement runs; cancelling it
                while the statement runs cancels the statement on the server
            redact: The statement carries a secret; driver errors (which echo
                the statement) are not attached as cause
            **context: Error and log context

        Raises:
            ContextError: If the call was cancelled, timed out, or the server
                cancelled the statement
            AdministrativeError: For any other failure, with its SQLSTATE
        """
        ctx = ensure_context(ctx)
        ctx.check(step)

        timeout_ms = ctx.statement_timeout_ms()
        use_timeout = timeout_ms is not None and self.engine.dialect.name == "postgresql"

        try:
            with self.engine.connect() as conn:
                # statements may contain '%' inside escaped passwords
                conn = conn.execution_options(no_parameters=True)
                cancel = driver_cancel(conn.connection.dbapi_connection)
                remove_cancel = ctx.on_cancel(cancel) if cancel is not None else None
                try:
                    ctx.check(step)
                    if use_timeout:
                        conn.exec_driver_sql(f"SET statement_timeout = {timeout_ms}")
                    try:
                        conn.exec_driver_sql(statement)
                    finally:
                        if use_timeout:
                            conn.exec_driver_sql("RESET statement_timeout")
                finally:
                    if remove_cancel is not None:
                        remove_cancel()
        except SQLAlchemyError as e:
            sqlstate = sqlstate_of(e)
            cause = None if redact else e
            if sqlstate == SqlState.QUERY_CANCELED.value:
                code = ctx.interruption_code()
                reason = "cancelled" if code == ErrorCode.CANCELLED else "statement timeout"
                error: BaseError = ContextError(
                    f"{step} interrupted by {reason}",
                    error_code=code,
                    cause=cause,
                    step=step,
                    **context,
                )
            else:
                error = AdministrativeError(
                    f"Cannot {step.replace('_', ' ')}",
                    sqlstate=sqlstate,
                    cause=cause,
                    step=step,
                    **context,
                )
            raise error from cause

        self.logger.info(f"Executed {step}", extra={"step": step, **context})
