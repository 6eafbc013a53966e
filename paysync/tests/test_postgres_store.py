"""Tests for the PostgreSQL store against a recording connection double."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import psycopg2.extras
import pytest

from paysync.app.billing import (
    Customer,
    DuplicateEventError,
    PaymentMethod,
    PostgresBillingStore,
    Subscription,
    TaxRate,
    UnknownResourceError,
)
from paysync.app.billing.repository import SCHEMA

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.rowcount = -1
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        if self.connection.fail_with is not None:
            raise self.connection.fail_with
        self.connection.statements.append((" ".join(sql.split()), params))
        self.rowcount = self.connection.rowcount

    def fetchone(self) -> Optional[dict]:
        return self.connection.rows.pop(0) if self.connection.rows else None

    def fetchall(self) -> List[dict]:
        rows, self.connection.rows = self.connection.rows, []
        return rows

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, rows: Optional[List[dict]] = None, rowcount: int = 1) -> None:
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.statements: List = []
        self.cursor_factories: List = []
        self.fail_with: Optional[Exception] = None
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


def _store(connection: FakeConnection) -> PostgresBillingStore:
    return PostgresBillingStore(connect=lambda: connection)


def test_lookup_customer_maps_row():
    connection = FakeConnection(
        rows=[{"id": "cus_1", "email": "me@example.com", "jurisdiction": "GB", "created_at": CREATED}]
    )

    customer = _store(connection).lookup_customer("me@example.com")

    assert customer.id == "cus_1"
    assert customer.email == "me@example.com"
    assert customer.jurisdiction == "GB"
    assert customer.created_at == CREATED
    assert connection.statements[0][1] == ("me@example.com",)
    assert connection.cursor_factories == [psycopg2.extras.RealDictCursor]
    assert connection.commits >= 1
    assert connection.closed


def test_subscription_is_most_recent_start():
    ends_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
    connection = FakeConnection(
        rows=[{"id": "sub_1", "customer_id": "cus_1", "status": "active", "started_at": CREATED, "ends_at": ends_at}]
    )

    subscription = _store(connection).subscription(Customer(attributes={"id": "cus_1"}))

    assert subscription.id == "sub_1"
    assert subscription.started_at == CREATED
    assert subscription.ends_at == ends_at
    assert "ORDER BY started_at DESC" in connection.statements[0][0]


def test_payment_methods_map_type_specific_info():
    connection = FakeConnection(
        rows=[
            {
                "id": "pm_1",
                "customer_id": "cus_1",
                "type": "card",
                "info": {"brand": "visa", "last4": "4242", "exp_month": 1, "exp_year": 2030},
                "is_default": True,
                "created_at": CREATED,
            }
        ]
    )

    methods = _store(connection).payment_methods(Customer(attributes={"id": "cus_1"}))

    assert len(methods) == 1
    assert methods[0].is_default
    assert methods[0].customer_id == "cus_1"
    assert methods[0].info["last4"] == "4242"


def test_put_default_payment_method_locks_then_clears_previous_default():
    connection = FakeConnection()
    payment_method = PaymentMethod(
        attributes={"id": "pm_2", "customer": "cus_1", "type": "card", "card": {"brand": "visa", "last4": "1111"}},
        is_default=True,
    )

    _store(connection).put(payment_method)

    statements = [sql for sql, _ in connection.statements]
    assert len(statements) == 3
    assert statements[0] == "SELECT pg_advisory_xact_lock(hashtext(%s))"
    assert connection.statements[0][1] == ("cus_1",)
    assert statements[1].startswith("UPDATE stripe_payment_methods SET is_default = FALSE")
    assert statements[2].startswith("INSERT INTO stripe_payment_methods")
    params = connection.statements[2][1]
    assert params["is_default"] is True
    assert isinstance(params["info"], psycopg2.extras.Json)


def test_put_non_default_payment_method_keeps_other_defaults():
    connection = FakeConnection()

    _store(connection).put(PaymentMethod(attributes={"id": "pm_3", "customer": "cus_1", "type": "card"}))

    statements = [sql for sql, _ in connection.statements]
    assert len(statements) == 2
    assert not any(sql.startswith("UPDATE") for sql in statements)


def test_put_subscription_upserts_status_and_end():
    connection = FakeConnection()
    subscription = Subscription(
        attributes={"id": "sub_1", "customer": "cus_1", "status": "active", "start_date": 1_700_000_000},
        ends_at=CREATED,
    )

    _store(connection).put(subscription)

    sql, params = connection.statements[0]
    assert "ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, ends_at = EXCLUDED.ends_at" in sql
    assert params["status"] == "active"
    assert params["ends_at"] == CREATED


def test_log_event_raises_on_conflict():
    connection = FakeConnection(rowcount=0)

    with pytest.raises(DuplicateEventError):
        _store(connection).log_event("evt_1")


def test_log_event_inserts_new_event():
    connection = FakeConnection(rowcount=1)

    _store(connection).log_event("evt_2")

    assert connection.statements[0][1] == ("evt_2",)


def test_failed_statement_rolls_back():
    connection = FakeConnection()
    connection.fail_with = RuntimeError("connection lost")

    with pytest.raises(RuntimeError):
        _store(connection).put(Customer(attributes={"id": "cus_1", "email": "me@example.com"}))

    assert connection.rollbacks >= 1
    assert connection.commits == 0
    assert connection.closed


def test_shared_connection_is_left_to_the_caller():
    connection = FakeConnection()
    store = PostgresBillingStore(conn=connection)

    store.remove(Customer(attributes={"id": "cus_1"}))

    assert connection.statements == [("DELETE FROM stripe_customers WHERE id = %s", ("cus_1",))]
    assert connection.commits == 0
    assert not connection.closed


def test_unknown_resource_is_rejected():
    connection = FakeConnection()

    with pytest.raises(UnknownResourceError):
        _store(connection).put(TaxRate(attributes={"id": "txr_1"}))
    with pytest.raises(UnknownResourceError):
        _store(connection).remove(TaxRate(attributes={"id": "txr_1"}))


def test_create_schema_runs_ddl():
    connection = FakeConnection()

    _store(connection).create_schema()

    assert connection.statements[0][0] == " ".join(SCHEMA.split())


def test_first_payment_method_for_customer_still_takes_customer_lock():
    connection = FakeConnection()

    _store(connection).put(
        PaymentMethod(attributes={"id": "pm_1", "customer": "cus_new", "type": "card"}, is_default=True)
    )

    sql, params = connection.statements[0]
    assert "pg_advisory_xact_lock" in sql
    assert "stripe_payment_methods" not in sql
    assert params == ("cus_new",)


def test_schema_allows_one_default_payment_method_per_customer():
    ddl = " ".join(SCHEMA.split())

    assert "CREATE UNIQUE INDEX IF NOT EXISTS" in ddl
    assert "ON stripe_payment_methods (customer_id) WHERE is_default" in ddl
