"""
Unit test conftest.py - Component-specific fixtures.

Provides a bookkeeping schema on a real in-memory SQLite database for the
metadata store and unit-of-work tests.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from librarian.db import Base, import_all_models, make_session_factory


@pytest.fixture(scope="function")
def metadata_engine():
    """In-memory SQLite engine with the bookkeeping tables created."""
    import_all_models()
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def sessions(metadata_engine):
    """Session factory bound to the bookkeeping database."""
    return make_session_factory(metadata_engine)
