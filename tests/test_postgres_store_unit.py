import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import OperationalError, errors
from psycopg_pool import PoolTimeout

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import Role, Session
from portalauth.storage.postgres import PostgresStore, _token_digest


class DummyPool:
    def connection(self, timeout=None):
        raise AssertionError("database access should be stubbed in unit tests")


class TimeoutPool:
    def connection(self, timeout=None):
        raise PoolTimeout("couldn't get a connection after 5.00 sec")


class FakeCursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor([])
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConnection(responses)
        self.checkouts = 0

    @contextmanager
    def connection(self, timeout=None):
        self.checkouts += 1
        yield self.conn


def create_test_store(pool) -> PostgresStore:
    """Create a PostgresStore without touching a database."""
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.connect_timeout = 0.1
    store.logger = get_logger("tests.postgres")
    store.pool = pool
    return store


def _user_row(**overrides):
    now = datetime(2025, 1, 6, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "row@example.com",
        "name": None,
        "role": "user",
        "super_admin": False,
        "email_verified": False,
        "strikes": 0,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_pool_timeout_is_store_unavailable():
    store = create_test_store(TimeoutPool())
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_role_by_id(str(uuid.uuid4()))
    assert excinfo.value.operation == "get_role_by_id"


def test_operational_error_is_store_unavailable():
    store = create_test_store(FakePool(OperationalError("server closed the connection")))
    with pytest.raises(StoreUnavailable):
        store.get_session_by_token("t" * 43)


def test_non_uuid_ids_short_circuit():
    store = create_test_store(DummyPool())
    assert store.get_role_by_id("not-a-uuid") is None
    assert store.get_user_by_id("not-a-uuid") is None
    assert store.update_role("not-a-uuid", Role.ADMIN) is None
    assert store.delete_sessions_by_user("not-a-uuid") == 0


def test_get_role_by_id_reads_role_column():
    pool = FakePool(FakeCursor([{"role": "admin"}]))
    store = create_test_store(pool)
    user_id = str(uuid.uuid4())

    assert store.get_role_by_id(user_id) == Role.ADMIN
    sql, params = pool.conn.executed[0]
    assert sql == "SELECT role FROM app_user WHERE id = %s"
    assert params == (user_id,)


def test_sessions_are_stored_by_token_digest():
    pool = FakePool(FakeCursor([]))
    store = create_test_store(pool)
    now = datetime(2025, 1, 6, tzinfo=timezone.utc)
    session = Session.new(str(uuid.uuid4()), "a" * 43, ttl=timedelta(days=7), now=now)

    store.create_session(session)

    _, params = pool.conn.executed[0]
    assert "a" * 43 not in params
    assert params[1] == _token_digest("a" * 43)


def test_get_session_by_token_rebuilds_session():
    expires = datetime(2025, 1, 13, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "expires_at": expires,
        "created_at": expires - timedelta(days=7),
        "updated_at": expires - timedelta(days=7),
        "user_agent": "pytest",
        "ip_address": None,
    }
    pool = FakePool(FakeCursor([row]))
    store = create_test_store(pool)

    session = store.get_session_by_token("b" * 43)

    assert session.token == "b" * 43
    assert session.user_id == str(row["user_id"])
    assert session.expires_at == expires
    assert pool.conn.executed[0][1] == (_token_digest("b" * 43),)


def test_duplicate_email_is_constraint_violation():
    store = create_test_store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_update_role_returns_updated_user():
    row = _user_row(role="admin")
    pool = FakePool(FakeCursor([row]))
    store = create_test_store(pool)

    user = store.update_role(str(row["id"]), Role.ADMIN)

    assert user.role == Role.ADMIN
    assert pool.conn.executed[0][1] == ("admin", str(row["id"]))


def test_delete_sessions_by_user_reports_rowcount():
    pool = FakePool(FakeCursor([], rowcount=3))
    store = create_test_store(pool)
    assert store.delete_sessions_by_user(str(uuid.uuid4())) == 3


def test_create_user_with_password_uses_one_transaction():
    row = _user_row(email="atomic@example.com")
    pool = FakePool(FakeCursor([row]), FakeCursor([]))
    store = create_test_store(pool)

    user = store.create_user_with_password(
        "Atomic@Example.com",
        provider_id="credential",
        password_hash="$argon2id$digest",
        password_algo="argon2id",
    )

    assert user.email == "atomic@example.com"
    assert pool.checkouts == 1
    (user_sql, user_params), (cred_sql, cred_params) = pool.conn.executed
    assert user_sql.startswith("INSERT INTO app_user")
    assert cred_sql.startswith("INSERT INTO user_credential")
    assert user_params[1] == "atomic@example.com"
    assert cred_params[1] == user_params[0]
    assert cred_params[2:5] == ("credential", "$argon2id$digest", "argon2id")


def test_create_user_with_password_credential_failure_propagates():
    pool = FakePool(FakeCursor([_user_row()]), OperationalError("connection lost"))
    store = create_test_store(pool)

    # The failure escapes the connection block, so the pool rolls the user back too
    with pytest.raises(StoreUnavailable):
        store.create_user_with_password(
            "lost@example.com",
            provider_id="credential",
            password_hash="h",
            password_algo="argon2id",
        )
    assert pool.checkouts == 1


def test_create_user_with_password_duplicate_email_is_constraint_violation():
    store = create_test_store(FakePool(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user_with_password(
            "dup@example.com", provider_id="credential", password_hash="h", password_algo="argon2id"
        )
