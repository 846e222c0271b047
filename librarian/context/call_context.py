"""
Cancellation-aware call context.

Every provisioning operation accepts an optional CallContext. The context
carries an optional deadline and a cancel flag which can be set from another
thread; operations check it before each statement they issue. While a
statement runs, the driver connection registers a cancel callback so that
``cancel()`` also aborts the statement on the server.
"""

import threading
import time
from typing import Callable, Dict, Optional

from ..exceptions import ContextError, ErrorCode

CancelCallback = Callable[[], None]


class CallContext:
    """Deadline and cancellation state for a single call."""

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Seconds until the deadline, or None for no deadline
        """
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must not be negative")
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[int, CancelCallback] = {}
        self._next_token = 0

    @classmethod
    def background(cls) -> "CallContext":
        """A context that is never cancelled and has no deadline."""
        return cls()

    def cancel(self) -> None:
        """
        Cancel the call; subsequent checks raise ContextError.

        Registered cancel callbacks run on the calling thread. A failing
        callback is logged and does not keep the others from running.
        """
        with self._lock:
            self._cancelled.set()
            callbacks = list(self._callbacks.values())
        for callback in callbacks:
            self._run_callback(callback)

    def on_cancel(self, callback: CancelCallback) -> CancelCallback:
        """
        Register ``callback`` to run when the call is cancelled.

        Runs it immediately if the call is already cancelled.

        Returns:
            A function removing the registration; safe to call more than once
        """
        with self._lock:
            if not self._cancelled.is_set():
                token = self._next_token
                self._next_token += 1
                self._callbacks[token] = callback

                def remove() -> None:
                    with self._lock:
                        self._callbacks.pop(token, None)

                return remove

        self._run_callback(callback)
        return lambda: None

    @staticmethod
    def _run_callback(callback: CancelCallback) -> None:
        try:
            callback()
        except Exception as e:
            from ..utils.logger import get_logger

            get_logger().warning(
                "Cancel callback failed",
                extra={"error_type": type(e).__name__, "error": str(e)},
            )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def has_deadline(self) -> bool:
        return self._deadline is not None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or None."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self, operation: Optional[str] = None) -> None:
        """
        Raise ContextError if the call was cancelled or its deadline passed.

        Args:
            operation: Name of the step about to run, for error context
        """
        if self.cancelled:
            raise ContextError("Operation cancelled", error_code=ErrorCode.CANCELLED, step=operation)
        if self.expired:
            raise ContextError(
                "Operation deadline exceeded", error_code=ErrorCode.TIMEOUT_ERROR, step=operation
            )

    def interruption_code(self) -> ErrorCode:
        """Error code for a statement the server cancelled on behalf of this call."""
        return ErrorCode.CANCELLED if self.cancelled else ErrorCode.TIMEOUT_ERROR

    def statement_timeout_ms(self) -> Optional[int]:
        """Remaining time as a Postgres statement_timeout value, or None."""
        remaining = self.remaining()
        if remaining is None:
            return None
        # statement_timeout = 0 disables the timeout, so never hand out 0
        return max(1, int(remaining * 1000))


def driver_cancel(dbapi_connection) -> Optional[CancelCallback]:
    """The DBAPI connection's server-side cancel (psycopg2 ``cancel()``), if it has one."""
    cancel = getattr(dbapi_connection, "cancel", None)
    return cancel if callable(cancel) else None


def ensure_context(ctx: Optional[CallContext]) -> CallContext:
    """Return ``ctx`` or a background context when None."""
    return ctx if ctx is not None else CallContext.background()
