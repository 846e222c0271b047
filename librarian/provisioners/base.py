"""
Provisioner capability contract.

A provisioner is one backend instance able to hand out short-lived databases
with a dedicated credential and to reclaim them once they expire. The
registry and any façade only ever see this interface.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..context.call_context import CallContext
from ..schemas.provisioning_schema import CreationOptions, ProvisionedCredential


class Provisioner(ABC):
    """Abstract base class for provisioning engines."""

    # ---- Lifecycle -------------------------------------------------------

    @abstractmethod
    def connect(self, ctx: Optional[CallContext] = None) -> None:
        """Open the root administrative connection."""
        ...

    @abstractmethod
    def init(self, ctx: Optional[CallContext] = None) -> None:
        """Bootstrap the management database and schema; safe to repeat."""
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close every connection, reporting the first close failure."""
        ...

    # ---- Capabilities ----------------------------------------------------

    @abstractmethod
    def create(
        self, options: Optional[CreationOptions] = None, ctx: Optional[CallContext] = None
    ) -> ProvisionedCredential:
        """Provision one database and one credential on it."""
        ...

    @abstractmethod
    def list(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        """All live (not reclaimed) credentials, passwords empty."""
        ...

    @abstractmethod
    def list_expired(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        """Live credentials whose database has expired, passwords empty."""
        ...

    @abstractmethod
    def delete_expired(self, ctx: Optional[CallContext] = None) -> List[ProvisionedCredential]:
        """Reclaim every expired database and return what was reclaimed."""
        ...
