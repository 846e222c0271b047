"""
Bookkeeping models for provisioned databases and their credentials.

Just the data structure - no business logic. Constraint names follow the
``pk__<table>__<column>`` / ``ux__`` / ``fk__`` convention.

The name constraints cover soft-deleted rows as well: under soft delete a
reclaimed database or username stays reserved and cannot be provisioned
again until its row is purged.
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db_base import SoftDeleteMixin
from .db_config import Base


class DatabaseRecord(Base, SoftDeleteMixin):
    """One provisioned database; expired_at NULL means it never expires."""

    __tablename__ = "databases"

    id = Column(Integer, autoincrement=True)
    name = Column(String(255), nullable=False)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    users = relationship("UserRecord", back_populates="database", order_by="UserRecord.id")

    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk__databases__id"),
        UniqueConstraint("name", name="ux__databases__name"),
    )


class UserRecord(Base, SoftDeleteMixin):
    """One credential (role) granted on a provisioned database."""

    __tablename__ = "users"

    id = Column(Integer, autoincrement=True)
    username = Column(String(255), nullable=False)
    database_id = Column(
        Integer,
        ForeignKey("databases.id", name="fk__users__database_id"),
        nullable=False,
    )

    database = relationship("DatabaseRecord", back_populates="users")

    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk__users__id"),
        UniqueConstraint("username", name="ux__users__name"),
    )
