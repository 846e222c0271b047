"""
Name-keyed registry of provisioning engines.

Several backend instances can be served side by side, each under its own
name. The registry is owned by whatever assembles the service and is passed
around explicitly; engines are never unregistered.
"""

import threading
from typing import Dict, List, Optional

from .exceptions import DuplicateNameError, NilEngineError, ValidationError, not_found
from .provisioners.base import Provisioner
from .utils import get_logger


class ProvisionerRegistry:
    """Thread-safe mapping of names to provisioners."""

    def __init__(self):
        self._provisioners: Dict[str, Provisioner] = {}
        self._lock = threading.Lock()
        self.logger = get_logger()

    def register(self, name: str, provisioner: Optional[Provisioner]) -> None:
        """
        Register ``provisioner`` under ``name``.

        Raises:
            ValidationError: If the name is empty
            NilEngineError: If the provisioner is None
            DuplicateNameError: If the name is already taken
        """
        if not name:
            raise ValidationError("Provisioner name must not be empty", field="name")
        if provisioner is None:
            raise NilEngineError(f"Provisioner is None: {name}", provisioner=name)

        with self._lock:
            if name in self._provisioners:
                raise DuplicateNameError(
                    f"Provisioner already registered: {name}", provisioner=name
                )
            self._provisioners[name] = provisioner

        self.logger.info(
            "Registered provisioner",
            extra={"provisioner": name, "type": type(provisioner).__name__},
        )

    def get(self, name: str) -> Optional[Provisioner]:
        with self._lock:
            return self._provisioners.get(name)

    def require(self, name: str) -> Provisioner:
        """Like ``get`` but raises a 404 error when ``name`` is unknown."""
        provisioner = self.get(name)
        if provisioner is None:
            raise not_found("Provisioner", name=name)
        return provisioner

    def names(self) -> List[str]:
        """Registered names in lexicographic order."""
        with self._lock:
            return sorted(self._provisioners)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._provisioners

    def __len__(self) -> int:
        with self._lock:
            return len(self._provisioners)
