"""Context management for calls and operations."""

from .call_context import CallContext, ensure_context
from .operation_context import OperationContext, OperationHandler, operation

__all__ = [
    "CallContext",
    "ensure_context",
    "operation",
    "OperationContext",
    "OperationHandler",
]
