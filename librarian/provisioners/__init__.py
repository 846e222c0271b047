"""Provisioning engines and their building blocks."""

from .admin_executor import AdminExecutor, quote_identifier, quote_literal
from .base import Provisioner
from .metadata_store import DatabaseGroup, UserEntry
from .postgres import PostgresProvisioner

__all__ = [
    "AdminExecutor",
    "DatabaseGroup",
    "PostgresProvisioner",
    "Provisioner",
    "UserEntry",
    "quote_identifier",
    "quote_literal",
]
