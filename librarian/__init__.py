"""
Librarian: short-lived Postgres databases with dedicated credentials.

A provisioner creates a database together with a role that owns all
privileges on it, records both in a management database, and drops them
again once their time to live has passed.
"""

from .config import LibrarianConfig, LoggingConfig, PostgresConfig, get_config, set_config
from .context import CallContext
from .exceptions import BaseError, ErrorCode
from .provisioners import PostgresProvisioner, Provisioner
from .registry import ProvisionerRegistry
from .schemas import CreationOptions, ProvisionedCredential

__version__ = "0.1.0"

__all__ = [
    "BaseError",
    "CallContext",
    "CreationOptions",
    "ErrorCode",
    "LibrarianConfig",
    "LoggingConfig",
    "PostgresConfig",
    "PostgresProvisioner",
    "ProvisionedCredential",
    "Provisioner",
    "ProvisionerRegistry",
    "get_config",
    "set_config",
]
