from contextlib import contextmanager
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from constructor_auth.storage.errors import ConstraintViolation
from constructor_auth.storage.models import AuditLogAction, CodeType
from constructor_auth.storage.postgres import PostgresStore, _constraint_field

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Cursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class _ScriptedConnection:
    """Replays canned cursors and records every statement."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    if conn is not None:

        @contextmanager
        def _connect():
            yield conn

        store._connect = _connect
    return store


def _user_row(**overrides):
    row = {
        "id": 7,
        "email": "pg@example.com",
        "username": "pg@example.com",
        "password": "digest",
        "first_name": None,
        "last_name": None,
        "is_active": True,
        "is_super": False,
        "roles": None,
        "created_at": NOW,
        "updated_at": NOW,
        "deleted_at": None,
    }
    row.update(overrides)
    return row


def test_row_to_user_defaults_roles():
    user = PostgresStore._row_to_user(_user_row())

    assert user.id == 7
    assert user.roles == ["user"]
    assert not user.is_deleted


def test_row_to_audit_log_fills_unknown_context():
    entry = PostgresStore._row_to_audit_log(
        {
            "id": "3",
            "action": "sign_in_failed",
            "success": False,
            "user_id": None,
            "ip_address": None,
            "user_agent": "ua",
            "device_info": None,
            "error_message": "Invalid password",
            "metadata": {"username": "x"},
            "created_at": NOW,
        }
    )

    assert entry.id == 3
    assert entry.action == AuditLogAction.SIGN_IN_FAILED
    assert entry.ip_address == "unknown"
    assert entry.user_agent == "ua"


def test_row_to_code_parses_type():
    code = PostgresStore._row_to_code(
        {
            "id": 1,
            "username": "pg@example.com",
            "code": "12345",
            "type": "recovery",
            "created_at": NOW,
            "expiration_date": NOW,
        }
    )

    assert code.type is CodeType.RECOVERY


@pytest.mark.parametrize(
    "constraint,expected",
    [
        ("app_user_username_live_key", "username"),
        ("app_user_email_live_key", "email"),
        (None, "email"),
    ],
)
def test_constraint_field(constraint, expected):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))

    assert _constraint_field(exc) == expected


def test_create_user_normalizes_and_returns_row():
    conn = _ScriptedConnection(_Cursor([_user_row()]))

    user = _store(conn).create_user(email=" PG@Example.com ", username="PG@Example.com", password="digest")

    assert user.email == "pg@example.com"
    query, params = conn.statements[0]
    assert query.startswith("INSERT INTO app_user")
    assert params[2:4] == ("pg@example.com", "pg@example.com")


def test_unique_violation_becomes_constraint_violation():
    conn = _ScriptedConnection(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_user(email="pg@example.com", username="pg@example.com", password="d")
    assert exc_info.value.field == "email"


def test_empty_update_reads_current_row():
    conn = _ScriptedConnection(_Cursor([_user_row()]))

    user = _store(conn).update_user(7, {"created_at": None})

    assert user.id == 7
    assert conn.statements[0][0].startswith("SELECT * FROM app_user WHERE id = %s")


def test_update_builds_assignments_for_mutable_columns():
    conn = _ScriptedConnection(_Cursor([_user_row(first_name="Pat")]))

    user = _store(conn).update_user(7, {"first_name": "Pat", "id": 1})

    query, params = conn.statements[0]
    assert "SET first_name = %s, updated_at = now()" in query
    assert params == ["Pat", 7]
    assert user.first_name == "Pat"


def test_list_users_returns_total():
    conn = _ScriptedConnection(_Cursor([_user_row(), _user_row(id=6)]), _Cursor([{"total": 9}]))

    users, total = _store(conn).list_users(offset=0, limit=2)

    assert [u.id for u in users] == [7, 6]
    assert total == 9


def test_delete_codes_reports_rowcount():
    conn = _ScriptedConnection(_Cursor(rowcount=3))

    assert _store(conn).delete_codes("pg@example.com", CodeType.SIGNUP) == 3
    assert conn.statements[0][1] == ("pg@example.com", "signup")


def test_count_audit_events_by_day_maps_rows():
    conn = _ScriptedConnection(
        _Cursor([{"day": date(2025, 3, 1), "action": "sign_in_success", "total": 4}])
    )

    rows = _store(conn).count_audit_events_by_day(NOW, NOW, [AuditLogAction.SIGN_IN_SUCCESS])

    assert rows == [(date(2025, 3, 1), "sign_in_success", 4)]
    assert conn.statements[0][1][0] == ["sign_in_success"]


def test_store_without_stubbed_connection_refuses_queries():
    with pytest.raises(AssertionError):
        _store().get_user(1)


def _profile_row(**overrides):
    row = {
        "id": 3,
        "user_id": 7,
        "birth_date": None,
        "bio": None,
        "photo": None,
        "gender": None,
        "height": None,
        "weight": None,
        "sport_activity": None,
        "cheat_meal_day": None,
        "period_of_days": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_user_and_profile_insert_share_one_transaction():
    conn = _ScriptedConnection(_Cursor([_user_row()]), _Cursor([_profile_row(gender="other")]))

    user, profile = _store(conn).create_user_with_profile(
        email="pg@example.com",
        username="pg@example.com",
        password="digest",
        profile={"gender": "other", "unknown": "dropped"},
    )

    assert conn.transactions == 1
    assert [q.split(" (")[0] for q, _ in conn.statements] == [
        "INSERT INTO app_user",
        "INSERT INTO user_profile",
    ]
    assert conn.statements[1] == (
        "INSERT INTO user_profile (user_id, gender) VALUES (%s, %s) RETURNING *",
        (7, "other"),
    )
    assert user.id == 7
    assert profile.user_id == 7 and profile.gender == "other"


def test_duplicate_user_aborts_before_profile_insert():
    conn = _ScriptedConnection(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        _store(conn).create_user_with_profile(
            email="pg@example.com", username="pg@example.com", password="d"
        )
    assert len(conn.statements) == 1


def test_update_profile_builds_assignments():
    conn = _ScriptedConnection(_Cursor([_profile_row(bio="Hi", height=181.0)]))

    profile = _store(conn).update_profile(7, {"bio": "Hi", "height": 181.0, "is_super": True})

    query, params = conn.statements[0]
    assert "SET bio = %s, height = %s, updated_at = now() WHERE user_id = %s" in query
    assert params == ["Hi", 181.0, 7]
    assert profile.bio == "Hi"


def test_update_profile_for_missing_owner():
    conn = _ScriptedConnection(_Cursor([]))

    assert _store(conn).update_profile(404, {"bio": "x"}) is None


def test_replace_code_deletes_and_inserts_in_one_transaction():
    row = {
        "id": 9,
        "username": "pg@example.com",
        "code": "48213",
        "type": "signup",
        "created_at": NOW,
        "expiration_date": NOW,
    }
    conn = _ScriptedConnection(_Cursor(rowcount=2), _Cursor([row]))

    code = _store(conn).replace_code("pg@example.com", "48213", CodeType.SIGNUP, NOW)

    assert conn.transactions == 1
    assert conn.statements[0] == (
        "DELETE FROM verification_code WHERE username = %s AND type = %s",
        ("pg@example.com", "signup"),
    )
    assert conn.statements[1][0].startswith("INSERT INTO verification_code")
    assert conn.statements[1][1] == ("pg@example.com", "48213", "signup", NOW)
    assert code.id == 9
