"""
Atomic unit-of-work helper for the management database.

``transaction`` yields a session bound to a single transaction, commits when
the block finishes and rolls back when anything escapes it (including
KeyboardInterrupt and SystemExit, which are re-raised unchanged after the
rollback). The session must not be used after the block exits, and units of
work do not nest: there are no savepoints.

Cancelling the call context while the block runs cancels the statement in
flight on the server; the resulting query_canceled error is reported as
ContextError.
"""

from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from ..constants import SqlState
from ..context.call_context import CallContext, driver_cancel, ensure_context
from ..exceptions import ContextError
from ..utils import get_logger
from .db_errors import sqlstate_of

T = TypeVar("T")


def apply_statement_timeout(session: Session, ctx: CallContext) -> None:
    """Bound every statement of the transaction by the call's remaining time (Postgres only)."""
    timeout_ms = ctx.statement_timeout_ms()
    if timeout_ms is None or session.get_bind().dialect.name != "postgresql":
        return
    # SET does not take bind parameters; timeout_ms is an int
    session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))


def register_cancel(session: Session, ctx: CallContext) -> Callable[[], None]:
    """Hook the session's driver connection into ``ctx`` cancellation; returns the remover."""
    cancel = driver_cancel(session.connection().connection.dbapi_connection)
    if cancel is None:
        return lambda: None
    return ctx.on_cancel(cancel)


@contextmanager
def transaction(
    session_factory: sessionmaker, ctx: Optional[CallContext] = None
) -> Iterator[Session]:
    """
    Run a block inside one transaction on a fresh session.

    Usage:
        with transaction(session_factory, ctx) as session:
            session.add(record)
            # Auto-commits on success, rollback on exception
    """
    ctx = ensure_context(ctx)
    ctx.check("begin transaction")

    session = session_factory()
    remove_cancel = None
    try:
        remove_cancel = register_cancel(session, ctx)
        apply_statement_timeout(session, ctx)
        yield session
        ctx.check("commit transaction")
        session.commit()
    except BaseException as e:
        get_logger().debug(
            "Rolling back transaction",
            extra={"error_type": type(e).__name__},
        )
        session.rollback()
        if (
            isinstance(e, Exception)
            and not isinstance(e, ContextError)
            and sqlstate_of(e) == SqlState.QUERY_CANCELED.value
        ):
            raise ContextError(
                "Transaction interrupted", error_code=ctx.interruption_code(), cause=e
            ) from e
        raise
    finally:
        if remove_cancel is not None:
            remove_cancel()
        session.close()


def run_in_transaction(
    session_factory: sessionmaker,
    fn: Callable[[Session], T],
    ctx: Optional[CallContext] = None,
) -> T:
    """Call ``fn(session)`` inside ``transaction`` and return its result."""
    with transaction(session_factory, ctx) as session:
        return fn(session)
