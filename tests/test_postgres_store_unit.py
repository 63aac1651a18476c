from contextlib import contextmanager
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from qcauth.logging import get_logger
from qcauth.storage.memory import derive_cipher_key
from qcauth.storage.models import UserStatus, utcnow
from qcauth.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _bare_store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store.logger = get_logger("test")
    store._mfa_cipher = Fernet(derive_cipher_key("postgres-unit-test-key"))
    return store


def test_user_row_mapping_decrypts_secret():
    store = _bare_store()
    encrypted = store._encrypt_secret("JBSWY3DPEHPK3PXP")
    user = store._user_from_row(
        {
            "id": "u1",
            "email": "a@example.com",
            "username": None,
            "status": "SUSPENDED",
            "two_factor_secret": encrypted,
            "two_factor_enabled": True,
        }
    )
    assert user.status is UserStatus.SUSPENDED
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.two_factor_enabled is True


def test_undecryptable_secret_is_passed_through():
    store = _bare_store()
    assert store._decrypt_secret("legacy-plaintext") == "legacy-plaintext"
    assert store._encrypt_secret(None) is None


def test_role_row_mapping():
    role = PostgresStore._role_from_row(
        {"id": 7, "name": "trabajador", "display_name": "Trabajador", "level": "50"}
    )
    assert role.id == "7"
    assert role.level == 50
    assert role.is_system is False


def test_update_role_rejects_unknown_fields_without_db():
    store = _bare_store()
    with pytest.raises(ValueError):
        store.update_role("r1", is_system=True)


def test_mark_reset_used_is_conditional():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _bare_store(FakePool(conn))
    assert store.mark_password_reset_used("tok") is True
    assert store.mark_password_reset_used("tok") is False
    sql, params = conn.statements[0]
    assert "used_at IS NULL" in sql
    assert params[1] == "tok"


def test_replace_reset_token_locks_then_swaps():
    conn = FakeConnection([])
    store = _bare_store(FakePool(conn))
    row = store.replace_password_reset_token("u1", "tok", utcnow() + timedelta(hours=1))
    assert row.token == "tok"
    statements = [sql for sql, _ in conn.statements]
    assert statements[0].endswith("FOR UPDATE")
    assert statements[1].startswith("DELETE FROM password_reset_token")
    assert statements[2].startswith("INSERT INTO password_reset_token")
