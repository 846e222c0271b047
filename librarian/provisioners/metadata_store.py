"""
Bookkeeping reads and writes against the management database.

Every function takes the session of the caller's unit of work and never
commits; the caller's transaction decides whether the change sticks.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.db_base import as_utc
from ..db.db_errors import is_unique_violation
from ..db.db_provisioning_models import DatabaseRecord, UserRecord
from ..exceptions import DuplicateResourceError, MetadataStoreError


@dataclass
class UserEntry:
    id: int
    username: str


@dataclass
class DatabaseGroup:
    """A database row together with the live users granted on it."""

    id: int
    name: str
    expired_at: Optional[datetime]
    users: List[UserEntry] = field(default_factory=list)


def insert_database(
    session: Session, name: str, created_at: datetime, expired_at: Optional[datetime]
) -> int:
    """
    Insert a database row and return its id.

    Raises:
        DuplicateResourceError: If the name is already recorded
        MetadataStoreError: For any other store failure
    """
    record = DatabaseRecord(name=name, created_at=created_at, expired_at=expired_at)
    try:
        session.add(record)
        session.flush()
    except SQLAlchemyError as e:
        if is_unique_violation(e):
            raise DuplicateResourceError(
                f"Database already exists: {name}", cause=e, database=name
            ) from e
        raise MetadataStoreError(f"Cannot insert database {name}", cause=e, database=name) from e
    return record.id


def insert_user(session: Session, database_id: int, username: str, created_at: datetime) -> int:
    """
    Insert a user row for ``database_id`` and return its id.

    Raises:
        DuplicateResourceError: If the username is already recorded
        MetadataStoreError: For any other store failure
    """
    record = UserRecord(username=username, database_id=database_id, created_at=created_at)
    try:
        session.add(record)
        session.flush()
    except SQLAlchemyError as e:
        if is_unique_violation(e):
            raise DuplicateResourceError(
                f"User already exists: {username}", cause=e, username=username
            ) from e
        raise MetadataStoreError(
            f"Cannot insert user {username}", cause=e, username=username
        ) from e
    return record.id


def select_groups(
    session: Session,
    now: datetime,
    expired_only: bool,
    database_id: Optional[int] = None,
    for_update: bool = False,
) -> List[DatabaseGroup]:
    """
    Select non-deleted databases with their non-deleted users in one join.

    Args:
        session: Session of the current unit of work
        now: Reference time for expiry
        expired_only: Only databases whose expiry is set and already passed
        database_id: Restrict to a single database
        for_update: Lock the selected database rows, skipping rows locked by
            a concurrent sweep (ignored by SQLite)

    Returns:
        Groups keyed by database id, users in id order
    """
    stmt = (
        select(
            DatabaseRecord.id,
            DatabaseRecord.name,
            DatabaseRecord.expired_at,
            UserRecord.id,
            UserRecord.username,
        )
        .outerjoin(
            UserRecord,
            and_(UserRecord.database_id == DatabaseRecord.id, UserRecord.deleted_at.is_(None)),
        )
        .where(DatabaseRecord.deleted_at.is_(None))
        .order_by(DatabaseRecord.id, UserRecord.id)
    )
    if expired_only:
        stmt = stmt.where(
            DatabaseRecord.expired_at.is_not(None), DatabaseRecord.expired_at < now
        )
    if database_id is not None:
        stmt = stmt.where(DatabaseRecord.id == database_id)
    if for_update:
        stmt = stmt.with_for_update(of=DatabaseRecord, skip_locked=True)

    try:
        rows = session.execute(stmt).all()
    except SQLAlchemyError as e:
        raise MetadataStoreError("Cannot select databases", cause=e) from e

    groups: Dict[int, DatabaseGroup] = {}
    for db_id, name, expired_at, user_id, username in rows:
        group = groups.get(db_id)
        if group is None:
            group = groups[db_id] = DatabaseGroup(
                id=db_id, name=name, expired_at=as_utc(expired_at)
            )
        # outer join yields a NULL user for databases without live users
        if user_id is not None:
            group.users.append(UserEntry(id=user_id, username=username))

    return list(groups.values())


def delete_user(session: Session, user_id: int, now: datetime, soft: bool) -> None:
    """Remove a user row, or stamp its deleted_at when ``soft``."""
    if soft:
        stmt = update(UserRecord).where(UserRecord.id == user_id).values(deleted_at=now)
    else:
        stmt = delete(UserRecord).where(UserRecord.id == user_id)
    try:
        session.execute(stmt)
    except SQLAlchemyError as e:
        raise MetadataStoreError(f"Cannot delete user {user_id}", cause=e, user_id=user_id) from e


def delete_database(session: Session, database_id: int, now: datetime, soft: bool) -> None:
    """Remove a database row, or stamp its deleted_at when ``soft``."""
    if soft:
        stmt = (
            update(DatabaseRecord).where(DatabaseRecord.id == database_id).values(deleted_at=now)
        )
    else:
        stmt = delete(DatabaseRecord).where(DatabaseRecord.id == database_id)
    try:
        session.execute(stmt)
    except SQLAlchemyError as e:
        raise MetadataStoreError(
            f"Cannot delete database {database_id}", cause=e, database_id=database_id
        ) from e
