"""
Pydantic schemas for provisioning requests and results.

CreationOptions describes one create call; ProvisionedCredential is what the
caller gets back. The password is only ever populated on the result of a
create call; listings and sweeps return it empty.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import Defaults
from ..utils.identifier_utils import generate_db_name, generate_password, generate_username


class CreationOptions(BaseModel):
    """
    Options for a single create call.

    Empty ``database``/``username`` and a None ``password`` are filled in from
    the generators. A None ``ttl`` takes the configured default TTL; a ``ttl``
    of zero means the database never expires.
    """

    database: str = Field(default="", description="Explicit database name")
    username: str = Field(default="", description="Explicit role name")
    password: Optional[str] = Field(default=None, description="Explicit password", repr=False)
    ttl: Optional[timedelta] = Field(
        default=None, description="Time to live; 0 disables expiry, None uses the default"
    )
    db_name_generator: Callable[[], str] = Field(default=generate_db_name, repr=False)
    username_generator: Callable[[], str] = Field(default=generate_username, repr=False)
    password_generator: Callable[[], str] = Field(default=generate_password, repr=False)

    @field_validator("ttl")
    def validate_ttl(cls, v: Optional[timedelta]) -> Optional[timedelta]:
        """Reject negative TTLs."""
        if v is not None and v < timedelta(0):
            raise ValueError("ttl must not be negative")
        return v

    def resolve_database(self) -> str:
        return self.database or self.db_name_generator()

    def resolve_username(self) -> str:
        return self.username or self.username_generator()

    def resolve_password(self) -> str:
        return self.password if self.password is not None else self.password_generator()

    def resolve_ttl(self, default: timedelta = Defaults.TTL) -> timedelta:
        return self.ttl if self.ttl is not None else default

    def resolve_expired_at(
        self, now: datetime, default_ttl: timedelta = Defaults.TTL
    ) -> Optional[datetime]:
        """``now`` plus the effective TTL, or None when it is zero."""
        ttl = self.resolve_ttl(default_ttl)
        return now + ttl if ttl != timedelta(0) else None


class ProvisionedCredential(BaseModel):
    """A database/role pairing as seen by callers."""

    database: str
    username: str
    password: str = Field(default="", repr=False)
    expired_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def without_password(self) -> "ProvisionedCredential":
        return self.model_copy(update={"password": ""})
