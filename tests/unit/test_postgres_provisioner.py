"""
Tests for the Postgres provisioning engine.

The management database is real SQLite; the administrative surface is the
recording FakeAdmin from the shared conftest.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from librarian.config import LibrarianConfig, set_config
from librarian.constants import ProvisionerState
from librarian.context.call_context import CallContext
from librarian.db import DatabaseRecord, UserRecord
from librarian.exceptions import (
    AdministrativeError,
    BackendConnectionError,
    ContextError,
    DuplicateResourceError,
    ErrorCode,
    InitializationError,
    MetadataStoreError,
    ProvisioningError,
    ReclamationError,
    ServiceError,
    ValidationError,
)
from librarian.schemas import CreationOptions, ProvisionedCredential


def rows(provisioner):
    """All bookkeeping rows as (name, deleted) pairs, deleted ones included."""
    with provisioner._sessions() as session:
        databases = {
            (r.name, r.deleted_at is not None)
            for r in session.execute(select(DatabaseRecord)).scalars()
        }
        users = {
            (r.username, r.deleted_at is not None)
            for r in session.execute(select(UserRecord)).scalars()
        }
    return databases, users


def named(database, username, ttl=timedelta(minutes=10), password="pw"):
    return CreationOptions(database=database, username=username, password=password, ttl=ttl)


class TestLifecycle:
    """Test connect, init and disconnect."""

    def test_connect_then_init(self, make_provisioner, engine_factory, admin):
        """Test the state machine reaches READY and bootstraps the management database."""
        provisioner = make_provisioner()
        assert provisioner.state == ProvisionerState.UNCONNECTED

        provisioner.connect()
        assert provisioner.state == ProvisionerState.ROOT_CONNECTED
        assert engine_factory.calls == [("postgres", True)]

        provisioner.init()
        assert provisioner.state == ProvisionerState.READY
        assert "librarian" in admin.databases
        assert engine_factory.calls[-1] == ("librarian", False)

    def test_init_twice(self, provisioner, admin):
        """Test repeated bootstrap tolerates existing database and tables."""
        provisioner.init()

        assert provisioner.state == ProvisionerState.READY
        assert admin.statements.count('CREATE DATABASE "librarian"') == 2

    def test_init_tolerates_existing_management_database(self, make_provisioner, admin):
        """Test a management database created by someone else is reused."""
        admin.databases.add("librarian")
        provisioner = make_provisioner()
        provisioner.connect()
        provisioner.init()

        assert provisioner.state == ProvisionerState.READY

    def test_init_fails_on_other_admin_error(self, make_provisioner, admin):
        """Test bootstrap failures other than 'already exists' are fatal."""
        admin.fail_on("create_database", "42501")
        provisioner = make_provisioner()
        provisioner.connect()

        with pytest.raises(InitializationError) as exc_info:
            provisioner.init()

        assert isinstance(exc_info.value.cause, AdministrativeError)
        assert provisioner.state == ProvisionerState.ROOT_CONNECTED

    def test_init_tolerates_duplicate_table(self, make_provisioner):
        """Test a duplicate-table race during schema creation is ignored."""

        class DuplicateTable(Exception):
            pgcode = "42P07"

        provisioner = make_provisioner()
        provisioner.connect()
        error = OperationalError("CREATE TABLE databases", None, DuplicateTable())
        with patch("librarian.provisioners.postgres.run_in_transaction", side_effect=error):
            provisioner.init()

        assert provisioner.state == ProvisionerState.READY

    def test_init_fails_on_schema_error(self, make_provisioner):
        """Test other schema failures raise InitializationError."""
        provisioner = make_provisioner()
        provisioner.connect()
        error = OperationalError("CREATE TABLE databases", None, Exception("disk full"))
        with patch("librarian.provisioners.postgres.run_in_transaction", side_effect=error):
            with pytest.raises(InitializationError):
                provisioner.init()

    def test_init_requires_connection(self, make_provisioner):
        """Test init before connect is a state error."""
        with pytest.raises(ServiceError) as exc_info:
            make_provisioner().init()

        assert exc_info.value.error_code == ErrorCode.INVALID_STATE_TRANSITION

    def test_connect_twice(self, provisioner):
        """Test connecting a connected provisioner is a state error."""
        with pytest.raises(ServiceError):
            provisioner.connect()

    def test_connect_probe_failure(self, pg_config):
        """Test a failed liveness probe raises BackendConnectionError."""
        from sqlalchemy import create_engine

        from librarian.provisioners import PostgresProvisioner

        def unreachable(url, config, autocommit=False):
            return create_engine("sqlite:////nonexistent/dir/db.sqlite")

        provisioner = PostgresProvisioner(pg_config, engine_factory=unreachable)

        with pytest.raises(BackendConnectionError):
            provisioner.connect()
        assert provisioner.state == ProvisionerState.UNCONNECTED

    def test_connect_engine_creation_failure(self, pg_config):
        """Test engine construction failures are wrapped."""
        from librarian.provisioners import PostgresProvisioner

        def broken(url, config, autocommit=False):
            raise ImportError("no driver")

        with pytest.raises(BackendConnectionError):
            PostgresProvisioner(pg_config, engine_factory=broken).connect()

    def test_disconnect(self, provisioner):
        """Test disconnect returns to UNCONNECTED."""
        provisioner.disconnect()

        assert provisioner.state == ProvisionerState.UNCONNECTED
        with pytest.raises(ServiceError):
            provisioner.list()

    def test_disconnect_reports_first_failure_and_closes_both(self, provisioner):
        """Test a failing root close still closes the management engine."""
        root = provisioner._root_engine
        management = provisioner._management_engine

        with patch.object(root, "dispose", side_effect=RuntimeError("root")), patch.object(
            management, "dispose", side_effect=RuntimeError("management")
        ) as management_dispose:
            with pytest.raises(BackendConnectionError) as exc_info:
                provisioner.disconnect()

        management_dispose.assert_called_once()
        assert exc_info.value.context["database"] == "root"
        assert provisioner.state == ProvisionerState.UNCONNECTED


class TestCreate:
    """Test database and credential creation."""

    def test_generated_credential(self, provisioner, admin, clock):
        """Test an all-generated request with a 10 minute TTL."""
        credential = provisioner.create(CreationOptions(ttl=timedelta(minutes=10)))

        assert credential.database.startswith("db_")
        assert credential.username.startswith("user_")
        assert credential.password
        assert credential.expired_at == clock.now + timedelta(minutes=10)

        assert credential.database in admin.databases
        assert credential.username in admin.users
        assert (credential.database, credential.username) in admin.grants

        databases, users = rows(provisioner)
        assert databases == {(credential.database, False)}
        assert users == {(credential.username, False)}

    def test_default_options_use_configured_ttl(self, provisioner, clock):
        """Test create without options applies the configured default TTL."""
        set_config(LibrarianConfig(default_ttl=timedelta(minutes=3)))

        credential = provisioner.create()

        assert credential.expired_at == clock.now + timedelta(minutes=3)

    def test_options_without_ttl_use_configured_ttl(self, provisioner, clock):
        """Test explicit options that leave ttl unset still get the configured default."""
        set_config(LibrarianConfig(default_ttl=timedelta(minutes=3)))

        credential = provisioner.create(CreationOptions(database="acme", username="acme_user"))

        assert credential.expired_at == clock.now + timedelta(minutes=3)

    def test_configured_zero_ttl_never_expires(self, provisioner, clock):
        """Test a configured default of zero creates non-expiring databases."""
        set_config(LibrarianConfig(default_ttl=timedelta(0)))

        credential = provisioner.create(CreationOptions(database="acme", username="acme_user"))

        assert credential.expired_at is None

    def test_zero_ttl_never_expires(self, provisioner, clock):
        """Test ttl=0 stores a NULL expiry that no sweep selects."""
        credential = provisioner.create(named("forever", "forever_user", ttl=timedelta(0)))
        assert credential.expired_at is None

        clock.advance(days=365)
        assert provisioner.delete_expired() == []
        assert provisioner.list() == [credential.without_password()]

    def test_explicit_names_and_generators(self, provisioner):
        """Test explicit values win and generators fill the gaps."""
        options = CreationOptions(
            database="acme",
            username_generator=lambda: "generated_user",
            password_generator=lambda: "generated_pw",
        )

        credential = provisioner.create(options)

        assert credential.database == "acme"
        assert credential.username == "generated_user"
        assert credential.password == "generated_pw"

    def test_password_with_quotes_reaches_backend_escaped(self, provisioner, admin):
        """Test the password is escaped in the CREATE USER statement."""
        provisioner.create(named("acme", "acme_user", password="it's%"))

        assert "CREATE USER \"acme_user\" WITH ENCRYPTED PASSWORD 'it''s%'" in admin.statements

    def test_duplicate_database_name(self, provisioner, admin):
        """Test a colliding database name fails without partial mutation."""
        first = provisioner.create(named("acme", "acme_user"))

        with pytest.raises(DuplicateResourceError):
            provisioner.create(named("acme", "acme_user"))

        assert set(provisioner.list()) == {first.without_password()}
        assert rows(provisioner) == ({("acme", False)}, {("acme_user", False)})
        assert admin.databases == {"librarian", "acme"}

    def test_duplicate_username_rolls_back_database(self, provisioner, admin):
        """Test a colliding username removes the database created for it."""
        provisioner.create(named("acme", "acme_user"))

        with pytest.raises(DuplicateResourceError):
            provisioner.create(named("other", "acme_user"))

        assert rows(provisioner) == ({("acme", False)}, {("acme_user", False)})
        assert "other" not in admin.databases

    def test_database_exists_on_backend_only(self, provisioner, admin):
        """Test a physical database without a row is reported as duplicate."""
        admin.databases.add("stray")

        with pytest.raises(DuplicateResourceError):
            provisioner.create(named("stray", "stray_user"))

        assert rows(provisioner) == (set(), set())
        assert "stray" in admin.databases

    def test_create_database_failure_rolls_back_row(self, provisioner, admin):
        """Test a failed CREATE DATABASE leaves no row behind."""
        admin.fail_on("create_database", "53100")

        with pytest.raises(ProvisioningError) as exc_info:
            provisioner.create(named("acme", "acme_user"))

        assert isinstance(exc_info.value.cause, AdministrativeError)
        assert rows(provisioner) == (set(), set())

    @pytest.mark.parametrize("step", ["create_user", "grant_all_privileges"])
    def test_credential_failure_compensates(self, provisioner, admin, step):
        """Test a failed credential step drops the role and database and their rows."""
        admin.fail_on(step, "42501")

        with pytest.raises(ProvisioningError):
            provisioner.create(named("acme", "acme_user"))

        assert rows(provisioner) == (set(), set())
        assert "acme" not in admin.databases
        assert "acme_user" not in admin.users

    def test_failed_compensation_keeps_row_for_sweep(self, provisioner, admin, clock):
        """Test the database row survives when the compensating drop fails."""
        admin.fail_on("grant_all_privileges", "42501")
        admin.fail_on("drop_database", "55006")

        with pytest.raises(ProvisioningError):
            provisioner.create(named("acme", "acme_user", ttl=timedelta(minutes=1)))

        assert rows(provisioner) == ({("acme", False)}, set())
        assert "acme" in admin.databases

        admin.clear_failures()
        clock.advance(minutes=2)
        assert provisioner.delete_expired() == []
        assert rows(provisioner) == (set(), set())
        assert "acme" not in admin.databases

    def test_metadata_commit_failure_drops_database(self, provisioner, admin):
        """Test a database is dropped again when its row cannot be committed."""
        original = provisioner._sessions

        def failing_commit():
            raise OperationalError("COMMIT", None, Exception("connection lost"))

        def failing_sessions():
            session = original()
            session.commit = failing_commit
            return session

        provisioner._sessions = failing_sessions
        try:
            with pytest.raises(MetadataStoreError):
                provisioner.create(named("acme", "acme_user"))
        finally:
            provisioner._sessions = original

        assert "acme" not in admin.databases
        assert rows(provisioner) == (set(), set())

    def test_interrupt_compensates_and_propagates(self, provisioner, admin):
        """Test a KeyboardInterrupt during the credential phase cleans up and is re-raised."""
        admin.fail_on("grant_all_privileges", KeyboardInterrupt())

        with pytest.raises(KeyboardInterrupt):
            provisioner.create(named("acme", "acme_user"))

        assert rows(provisioner) == (set(), set())
        assert admin.databases == {"librarian"}
        assert admin.users == set()

    @pytest.mark.parametrize(
        "options",
        [
            CreationOptions(database="x" * 64),
            CreationOptions(username="bad\x00name"),
        ],
    )
    def test_invalid_identifiers(self, provisioner, admin, options):
        """Test unusable identifiers are rejected before anything is written."""
        with pytest.raises(ValidationError):
            provisioner.create(options)

        assert admin.databases == {"librarian"}

    def test_cancelled_context(self, provisioner, admin):
        """Test a cancelled context creates nothing."""
        ctx = CallContext()
        ctx.cancel()

        with pytest.raises(ContextError):
            provisioner.create(named("acme", "acme_user"), ctx)

        assert rows(provisioner) == (set(), set())
        assert "acme" not in admin.databases

    def test_requires_ready(self, make_provisioner):
        """Test create before init is a state error."""
        provisioner = make_provisioner()
        provisioner.connect()

        with pytest.raises(ServiceError):
            provisioner.create()

    def test_unique_across_many_creates(self, provisioner):
        """Test generated names never repeat across live records."""
        credentials = [provisioner.create() for _ in range(10)]

        assert len({c.database for c in credentials}) == 10
        assert len({c.username for c in credentials}) == 10


class TestList:
    """Test listing live and expired credentials."""

    def test_list_hides_passwords(self, provisioner, clock):
        """Test listings carry empty passwords."""
        created = provisioner.create(named("acme", "acme_user"))

        listed = provisioner.list()

        assert listed == [
            ProvisionedCredential(
                database="acme", username="acme_user", password="", expired_at=created.expired_at
            )
        ]

    def test_list_and_list_expired(self, provisioner, clock):
        """Test list returns everything live while list_expired only the expired."""
        short = provisioner.create(named("short", "short_user", ttl=timedelta(minutes=1)))
        long = provisioner.create(named("long", "long_user", ttl=timedelta(hours=1)))

        clock.advance(minutes=5)

        assert set(provisioner.list()) == {short.without_password(), long.without_password()}
        assert provisioner.list_expired() == [short.without_password()]

    def test_list_empty(self, provisioner):
        """Test an empty store lists nothing."""
        assert provisioner.list() == []
        assert provisioner.list_expired() == []


class TestDeleteExpired:
    """Test the expiry sweep."""

    def test_reclaims_expired_hard_delete(self, provisioner, admin, clock):
        """Test expired databases are dropped and their rows removed."""
        expired = provisioner.create(named("acme", "acme_user", ttl=timedelta(minutes=10)))
        live = provisioner.create(named("live", "live_user", ttl=timedelta(hours=1)))

        clock.advance(minutes=11)
        reclaimed = provisioner.delete_expired()

        assert reclaimed == [expired.without_password()]
        assert all(c.password == "" for c in reclaimed)
        assert "acme" not in admin.databases
        assert "acme_user" not in admin.users
        assert rows(provisioner) == ({("live", False)}, {("live_user", False)})
        assert provisioner.list() == [live.without_password()]
        assert provisioner.delete_expired() == []

    def test_reclaims_expired_soft_delete(self, soft_provisioner, admin, clock):
        """Test soft delete keeps rows with deleted_at set and skips them later."""
        expired = soft_provisioner.create(named("acme", "acme_user"))

        clock.advance(minutes=11)
        reclaimed = soft_provisioner.delete_expired()

        assert reclaimed == [expired.without_password()]
        assert rows(soft_provisioner) == ({("acme", True)}, {("acme_user", True)})
        assert "acme" not in admin.databases
        assert soft_provisioner.list() == []
        assert soft_provisioner.delete_expired() == []

    def test_soft_deleted_names_stay_reserved(self, soft_provisioner, admin, clock):
        """Test reclaimed names cannot be provisioned again under soft delete."""
        soft_provisioner.create(named("acme", "acme_user"))
        clock.advance(minutes=11)
        soft_provisioner.delete_expired()

        with pytest.raises(DuplicateResourceError):
            soft_provisioner.create(named("acme", "other_user"))
        with pytest.raises(DuplicateResourceError):
            soft_provisioner.create(named("other", "acme_user"))

        assert rows(soft_provisioner) == ({("acme", True)}, {("acme_user", True)})
        assert "acme" not in admin.databases
        assert "other" not in admin.databases

    def test_not_expired_at_exact_expiry(self, provisioner, clock):
        """Test a database is only reclaimed after its expiry has passed."""
        provisioner.create(named("acme", "acme_user", ttl=timedelta(minutes=10)))

        clock.advance(minutes=10)
        assert provisioner.delete_expired() == []

        clock.advance(seconds=1)
        assert len(provisioner.delete_expired()) == 1

    def test_database_already_gone(self, provisioner, admin, clock):
        """Test a database dropped out of band is still reclaimed."""
        provisioner.create(named("acme", "acme_user"))
        admin.databases.discard("acme")

        clock.advance(minutes=11)
        reclaimed = provisioner.delete_expired()

        assert [c.database for c in reclaimed] == ["acme"]
        assert rows(provisioner) == (set(), set())

    def test_partial_failure_continues_other_groups(self, provisioner, admin, clock):
        """Test one failing drop does not stop the rest of the sweep."""
        provisioner.create(named("busy", "busy_user"))
        ok = provisioner.create(named("idle", "idle_user"))
        clock.advance(minutes=11)

        original = admin._execute

        def drop_busy_fails(statement, step, ctx, redact=False, **context):
            if step == "drop_database" and context.get("database") == "busy":
                raise AdministrativeError("Cannot drop database", sqlstate="55006", **context)
            return original(statement, step, ctx, redact=redact, **context)

        with patch.object(admin, "_execute", side_effect=drop_busy_fails):
            with pytest.raises(ReclamationError) as exc_info:
                provisioner.delete_expired()

        error = exc_info.value
        assert error.reclaimed == [ok.without_password()]
        assert set(error.failures) == {"busy"}
        assert error.failures["busy"].sqlstate == "55006"
        assert error.context["failed_databases"] == ["busy"]

        assert rows(provisioner) == ({("busy", False)}, {("busy_user", False)})
        assert "busy" in admin.databases
        assert "busy_user" in admin.users

        # retried by the next sweep
        assert [c.database for c in provisioner.delete_expired()] == ["busy"]

    def test_drop_user_failure_rolls_back_group(self, provisioner, admin, clock):
        """Test a failing DROP USER keeps the rows so a later sweep retries."""
        provisioner.create(named("acme", "acme_user"))
        clock.advance(minutes=11)
        admin.fail_on("drop_user", "2BP01")

        with pytest.raises(ReclamationError):
            provisioner.delete_expired()

        assert rows(provisioner) == ({("acme", False)}, {("acme_user", False)})

        admin.clear_failures()
        assert [c.username for c in provisioner.delete_expired()] == ["acme_user"]
        assert rows(provisioner) == (set(), set())

    def test_cancel_aborts_sweep(self, provisioner, admin, clock):
        """Test cancellation stops the sweep and is reported as ContextError."""
        provisioner.create(named("first", "first_user"))
        provisioner.create(named("second", "second_user"))
        clock.advance(minutes=11)
        ctx = CallContext()

        original = admin._execute

        def cancel_after_first_group(statement, step, ctx_, redact=False, **context):
            result = original(statement, step, ctx_, redact=redact, **context)
            if step == "drop_user":
                ctx.cancel()
            return result

        with patch.object(admin, "_execute", side_effect=cancel_after_first_group):
            with pytest.raises(ContextError) as exc_info:
                provisioner.delete_expired(ctx)

        assert exc_info.value.error_code == ErrorCode.CANCELLED
        databases, _ = rows(provisioner)
        assert ("second", False) in databases

    def test_requires_ready(self, make_provisioner):
        """Test the sweep before init is a state error."""
        provisioner = make_provisioner()
        with pytest.raises(ServiceError):
            provisioner.delete_expired()

    def test_shared_store_between_provisioners(self, provisioner, make_provisioner, clock):
        """Test a second provisioner on the same backend sees and reclaims the rows."""
        created = provisioner.create(named("acme", "acme_user"))
        other = make_provisioner()
        other.connect()
        other.init()

        clock.advance(minutes=11)

        assert other.delete_expired() == [created.without_password()]
        assert provisioner.list() == []
