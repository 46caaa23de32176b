from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.postgres import PostgresStore, next_attempt_state

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
LIMITS = dict(threshold=3, window_seconds=60, lockout_seconds=120)


class DummyPool:
    def __init__(self, exc=None, conn=None):
        self.exc = exc
        self.conn = conn

    def connection(self):
        if self.exc is not None:
            raise self.exc
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        return self.conn


class FakeConnection:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def transaction(self):
        yield

    def execute(self, statement, params=None):
        self.statements.append(statement)
        if self.fail_with is not None and "set_config" not in statement:
            raise self.fail_with


def make_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.statement_timeout_ms = 2000
    store.logger = get_logger("test")
    return store


class TestTransactionErrors:
    def test_pool_timeout_is_unavailable(self):
        store = make_store(DummyPool(exc=PoolTimeout("no connection available")))
        with pytest.raises(StoreUnavailable) as excinfo:
            store.ping()
        assert excinfo.value.operation == "ping"

    def test_operational_error_is_unavailable(self):
        store = make_store(DummyPool(exc=psycopg.OperationalError("connection refused")))
        with pytest.raises(StoreUnavailable):
            store.ping()

    def test_statement_timeout_is_unavailable(self):
        conn = FakeConnection(fail_with=errors.QueryCanceled("canceling statement"))
        store = make_store(DummyPool(conn=conn))
        with pytest.raises(StoreUnavailable):
            store.revoke_family("fam-1", NOW)
        assert "set_config" in conn.statements[0]

    def test_unique_violation_is_constraint_violation(self):
        conn = FakeConnection(fail_with=errors.UniqueViolation("duplicate key"))
        store = make_store(DummyPool(conn=conn))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.save_password("alice", "$argon2id$...", "argon2id")
        assert excinfo.value.detail == {"operation": "save_password"}


class TestNextAttemptState:
    def test_first_failure_opens_window(self):
        outcome, values = next_attempt_state({}, NOW, **LIMITS)
        assert outcome.locked is False
        assert outcome.count == 1
        assert values["count"] == 1
        assert values["window_expires_at"] == NOW + timedelta(seconds=60)
        assert values["locked_until"] is None

    def test_threshold_locks_and_resets_counter(self):
        row = {"count": 2, "window_expires_at": NOW + timedelta(seconds=30), "locked_until": None}
        outcome, values = next_attempt_state(row, NOW, **LIMITS)
        assert outcome.locked is True
        assert outcome.locked_until == NOW + timedelta(seconds=120)
        assert values["count"] == 0
        assert values["locked_until"] == NOW + timedelta(seconds=120)

    def test_active_lock_does_not_count(self):
        row = {"count": 0, "window_expires_at": NOW, "locked_until": NOW + timedelta(seconds=5)}
        outcome, values = next_attempt_state(row, NOW, **LIMITS)
        assert outcome.locked is True
        assert values == row

    def test_expired_window_restarts(self):
        row = {"count": 2, "window_expires_at": NOW, "locked_until": None}
        outcome, values = next_attempt_state(row, NOW, **LIMITS)
        assert outcome.locked is False
        assert outcome.count == 1

    def test_expired_lock_counts_again(self):
        row = {"count": 0, "window_expires_at": NOW, "locked_until": NOW}
        outcome, _ = next_attempt_state(row, NOW, **LIMITS)
        assert outcome.locked is False
        assert outcome.count == 1
