import contextlib
from types import SimpleNamespace

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from flickmeter.storage.errors import ConstraintViolation, RecordNotFound, StoreUnavailable
from flickmeter.storage.postgres import PostgresStore, _PostgresUserTransaction, constraint_field
from flickmeter.storage.models import RefreshToken, User
from flickmeter.service.identity import VerifiedIdentity
from flickmeter.service.users import UserDirectory


def _with_constraint(exc_type, constraint):
    """Build a psycopg error carrying a diagnostic constraint name."""

    class _Err(exc_type):
        @property
        def diag(self):
            return SimpleNamespace(constraint_name=constraint)

    return _Err("constraint violated")


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConn:
    def __init__(self, *, row=None, raises=None, raises_on=None):
        self.row = row
        self.raises = raises
        # statement prefix that triggers ``raises``; any statement when unset
        self.raises_on = raises_on
        self.statements = []
        self.transactions = 0

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if "set_config" in sql:
            return FakeCursor(None)
        if self.raises is not None and (
            self.raises_on is None or " ".join(sql.split()).startswith(self.raises_on)
        ):
            raise self.raises
        return FakeCursor(self.row)


class FakePool:
    def __init__(self, conn=None, *, timeout=False):
        self.conn = conn
        self.timeout = timeout
        self.checkouts = []

    @contextlib.contextmanager
    def connection(self, timeout=None):
        self.checkouts.append(timeout)
        if self.timeout:
            raise PoolTimeout("couldn't get a connection after 3.00 sec")
        yield self.conn


class DummyPool:
    def connection(self, timeout=None):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.timeout_seconds = 3.0
    store.provisioning_timeout_seconds = 5.0
    store.logger = SimpleNamespace(
        warning=lambda *a, **k: None, error=lambda *a, **k: None
    )
    store.pool = pool
    return store


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("users_username_key", "username"),
        ("users_email_key", "email"),
        ("users_username_length", "username_length"),
        ("users_email_length", "email_length"),
        ("refresh_user_id_fkey", "user_id"),
        ("some_other_key", "some_other_key"),
    ],
)
def test_constraint_field_maps_names_to_columns(constraint, field):
    assert constraint_field(_with_constraint(errors.UniqueViolation, constraint)) == field


def test_constraint_field_without_diagnostics():
    assert constraint_field(ValueError("plain")) is None


def test_insert_user_maps_username_collision():
    conn = FakeConn(raises=_with_constraint(errors.UniqueViolation, "users_username_key"))
    tx = _PostgresUserTransaction(conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        tx.insert_user("a@x.com", "BoldLion1")

    assert excinfo.value.constraint == "username"
    # each attempt runs inside its own savepoint
    assert conn.transactions == 1


def test_insert_user_maps_email_collision():
    conn = FakeConn(raises=_with_constraint(errors.UniqueViolation, "users_email_key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        _PostgresUserTransaction(conn).insert_user("a@x.com", "BoldLion1")
    assert excinfo.value.constraint == "email"


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("users_email_length", "email_length"),
        ("users_username_length", "username_length"),
    ],
)
def test_length_check_aborts_provisioning_after_one_pass(constraint, field):
    conn = FakeConn(
        raises=_with_constraint(errors.CheckViolation, constraint), raises_on="INSERT"
    )
    pool = FakePool(conn)
    names = iter(["BoldLion1", "WiseEmu7", "SlyFox3"])
    directory = UserDirectory(_store(pool), username_factory=lambda: next(names))

    with pytest.raises(ConstraintViolation) as excinfo:
        directory.read_or_create(VerifiedIdentity(email="a@x.com", display_name=""))

    assert excinfo.value.constraint == field
    # neither an email race nor a username collision: no re-run, no new candidate
    assert len(pool.checkouts) == 1
    inserts = [sql for sql, _ in conn.statements if sql.startswith("INSERT")]
    assert len(inserts) == 1


def test_provisioning_sets_local_statement_timeout():
    row = {"id": 3, "email": "a@x.com", "username": "BoldLion1", "avatar_url": None}
    conn = FakeConn(row=row)
    pool = FakePool(conn)
    store = _store(pool)

    with store.provisioning() as tx:
        user = tx.insert_user("a@x.com", "BoldLion1")

    assert user.id == 3
    assert pool.checkouts == [5.0]
    assert conn.statements[0] == (
        "SELECT set_config('statement_timeout', %s, true)",
        ("5000ms",),
    )


def test_get_refresh_token_missing_is_record_not_found():
    conn = FakeConn(row=None)
    store = _store(FakePool(conn))

    with pytest.raises(RecordNotFound):
        store.get_refresh_token("missing")
    sql = conn.statements[-1][0]
    assert "JOIN users" in sql
    assert "expires_at IS NULL OR r.expires_at > now()" in sql


def test_get_refresh_token_returns_live_user():
    row = {
        "refresh_id": "tok",
        "refresh_expires_at": None,
        "refresh_created_at": "2024-01-01T00:00:00+00:00",
        "id": 9,
        "email": "a@x.com",
        "username": "Renamed42",
        "avatar_url": None,
    }
    store = _store(FakePool(FakeConn(row=row)))

    token = store.get_refresh_token("tok")

    assert token.id == "tok"
    assert token.user.id == 9
    assert token.user.username == "Renamed42"
    assert token.expires_at is None


def test_query_timeout_is_store_unavailable():
    conn = FakeConn(raises=errors.QueryCanceled("canceling statement due to statement timeout"))
    store = _store(FakePool(conn))

    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_refresh_token("tok")
    assert excinfo.value.backend == "postgres"


def test_pool_timeout_is_store_unavailable():
    store = _store(FakePool(timeout=True))
    with pytest.raises(StoreUnavailable):
        store.delete_refresh_token("tok")


def test_create_refresh_token_for_missing_user_is_constraint_violation():
    conn = FakeConn(raises=_with_constraint(errors.ForeignKeyViolation, "refresh_user_id_fkey"))
    store = _store(FakePool(conn))
    token = RefreshToken.new(User(id=404, email="a@x.com", username="Ghost1"), remember=False)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_refresh_token(token)
    assert excinfo.value.constraint == "user_id"


def test_unit_tests_never_touch_the_pool():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.get_user(1)
