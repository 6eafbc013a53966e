"""PostgreSQL persistence for provider resources."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterable, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import DuplicateEventError, UnknownResourceError
from .models import Customer, Invoice, PaymentMethod, Resource, Subscription, to_datetime

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS stripe_customers (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    jurisdiction TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS stripe_events (
    id TEXT PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS stripe_invoices (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    number TEXT NOT NULL,
    amount INTEGER NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS stripe_payment_methods (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    type TEXT NOT NULL,
    info JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS stripe_payment_methods_one_default
    ON stripe_payment_methods (customer_id) WHERE is_default;

CREATE TABLE IF NOT EXISTS stripe_subscriptions (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    ends_at TIMESTAMPTZ
);
"""

_TABLES = {
    Customer: "stripe_customers",
    Invoice: "stripe_invoices",
    PaymentMethod: "stripe_payment_methods",
    Subscription: "stripe_subscriptions",
}


@contextmanager
def managed_connection(
    conn: Optional[PgConnection] = None,
    connect: Optional[Callable[[], PgConnection]] = None,
):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return
    if connect is None:
        raise RuntimeError("PostgresBillingStore needs a connection or a connect callable")

    connection = connect()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_customer(row: dict) -> Customer:
    return Customer(
        attributes={"id": row["id"], "email": row["email"], "created": row.get("created_at")},
        jurisdiction=row.get("jurisdiction"),
    )


def _row_to_invoice(row: dict) -> Invoice:
    return Invoice(
        attributes={
            "id": row["id"],
            "customer": row["customer_id"],
            "number": row["number"],
            "amount_due": int(row["amount"]),
            "status": row["status"],
            "created": row.get("created_at"),
        },
        updated_at=to_datetime(row.get("updated_at")),
    )


def _row_to_payment_method(row: dict) -> PaymentMethod:
    payment_type = row["type"]
    return PaymentMethod(
        attributes={
            "id": row["id"],
            "customer": row["customer_id"],
            "type": payment_type,
            payment_type: dict(row.get("info") or {}),
            "created": row.get("created_at"),
        },
        is_default=bool(row["is_default"]),
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        attributes={
            "id": row["id"],
            "customer": row["customer_id"],
            "status": row["status"],
            "start_date": row.get("started_at"),
        },
        ends_at=to_datetime(row.get("ends_at")),
    )


class PostgresBillingStore:
    """Store backed by the ``stripe_*`` tables.

    Either pass an open ``conn`` (the caller owns the transaction) or a
    ``connect`` callable, in which case every operation runs in its own
    transaction that is committed on success and rolled back on error.
    """

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        connect: Optional[Callable[[], PgConnection]] = None,
    ) -> None:
        self._conn = conn
        self._connect = connect

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn, self._connect) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def create_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA)

    def lookup_customer(self, email: str) -> Optional[Customer]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, email, jurisdiction, created_at
                FROM stripe_customers
                WHERE email = %s
                LIMIT 1
                """,
                (email,),
            )
            row = cursor.fetchone()
            return _row_to_customer(row) if row else None

    def lookup_invoice(self, customer: Customer, number: str) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, customer_id, number, amount, status, created_at, updated_at
                FROM stripe_invoices
                WHERE customer_id = %s AND number = %s
                LIMIT 1
                """,
                (customer.id, number),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def subscription(self, customer: Customer) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, customer_id, status, started_at, ends_at
                FROM stripe_subscriptions
                WHERE customer_id = %s
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (customer.id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def default_payment_method(self, customer: Customer) -> Optional[PaymentMethod]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, customer_id, type, info, is_default, created_at
                FROM stripe_payment_methods
                WHERE customer_id = %s AND is_default
                LIMIT 1
                """,
                (customer.id,),
            )
            row = cursor.fetchone()
            return _row_to_payment_method(row) if row else None

    def invoices(self, customer: Customer) -> List[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, customer_id, number, amount, status, created_at, updated_at
                FROM stripe_invoices
                WHERE customer_id = %s
                ORDER BY created_at DESC
                """,
                (customer.id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_invoice(row) for row in rows]

    def payment_methods(self, customer: Customer) -> List[PaymentMethod]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, customer_id, type, info, is_default, created_at
                FROM stripe_payment_methods
                WHERE customer_id = %s
                ORDER BY created_at DESC
                """,
                (customer.id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_payment_method(row) for row in rows]

    def put(self, resource: Resource) -> None:
        with self._cursor() as cursor:
            if isinstance(resource, Customer):
                self._put_customer(cursor, resource)
            elif isinstance(resource, Invoice):
                self._put_invoice(cursor, resource)
            elif isinstance(resource, PaymentMethod):
                self._put_payment_method(cursor, resource)
            elif isinstance(resource, Subscription):
                self._put_subscription(cursor, resource)
            else:
                raise UnknownResourceError(f"cannot store {type(resource).__name__}")

    def _put_customer(self, cursor: PgCursor, customer: Customer) -> None:
        cursor.execute(
            """
            INSERT INTO stripe_customers (id, email, jurisdiction, created_at)
            VALUES (%(id)s, %(email)s, %(jurisdiction)s, COALESCE(%(created_at)s, NOW()))
            ON CONFLICT (id) DO UPDATE SET
                email = EXCLUDED.email,
                jurisdiction = EXCLUDED.jurisdiction
            """,
            {
                "id": customer.id,
                "email": customer.email,
                "jurisdiction": customer.jurisdiction,
                "created_at": customer.created_at,
            },
        )

    def _put_invoice(self, cursor: PgCursor, invoice: Invoice) -> None:
        cursor.execute(
            """
            INSERT INTO stripe_invoices (id, customer_id, number, amount, status, created_at, updated_at)
            VALUES (%(id)s, %(customer_id)s, %(number)s, %(amount)s, %(status)s,
                    COALESCE(%(created_at)s, NOW()), COALESCE(%(created_at)s, NOW()))
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                updated_at = NOW()
            """,
            {
                "id": invoice.id,
                "customer_id": invoice.customer_id,
                "number": invoice.number,
                "amount": invoice.amount_due,
                "status": invoice.status,
                "created_at": invoice.created_at,
            },
        )

    def _put_payment_method(self, cursor: PgCursor, payment_method: PaymentMethod) -> None:
        # Transaction-scoped lock on the customer id, not on existing rows.
        cursor.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (payment_method.customer_id,),
        )
        if payment_method.is_default:
            cursor.execute(
                """
                UPDATE stripe_payment_methods
                SET is_default = FALSE
                WHERE customer_id = %s AND is_default AND id <> %s
                """,
                (payment_method.customer_id, payment_method.id),
            )
        cursor.execute(
            """
            INSERT INTO stripe_payment_methods (id, customer_id, type, info, is_default, created_at)
            VALUES (%(id)s, %(customer_id)s, %(type)s, %(info)s, %(is_default)s,
                    COALESCE(%(created_at)s, NOW()))
            ON CONFLICT (id) DO UPDATE SET
                is_default = EXCLUDED.is_default
            """,
            {
                "id": payment_method.id,
                "customer_id": payment_method.customer_id,
                "type": payment_method.type,
                "info": psycopg2.extras.Json(payment_method.info),
                "is_default": payment_method.is_default,
                "created_at": payment_method.created_at,
            },
        )

    def _put_subscription(self, cursor: PgCursor, subscription: Subscription) -> None:
        cursor.execute(
            """
            INSERT INTO stripe_subscriptions (id, customer_id, status, started_at, ends_at)
            VALUES (%(id)s, %(customer_id)s, %(status)s, COALESCE(%(started_at)s, NOW()), %(ends_at)s)
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                ends_at = EXCLUDED.ends_at
            """,
            {
                "id": subscription.id,
                "customer_id": subscription.customer_id,
                "status": subscription.status.value,
                "started_at": subscription.started_at,
                "ends_at": subscription.ends_at,
            },
        )

    def remove(self, resource: Resource) -> None:
        table = self._table_for(resource)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (resource.id,))

    @staticmethod
    def _table_for(resource: Any) -> str:
        for model, table in _TABLES.items():
            if isinstance(resource, model):
                return table
        raise UnknownResourceError(f"cannot remove {type(resource).__name__}")

    def log_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO stripe_events (id) VALUES (%s) ON CONFLICT (id) DO NOTHING",
                (event_id,),
            )
            inserted = cursor.rowcount > 0
        if not inserted:
            logger.debug("Event %s already logged", event_id)
            raise DuplicateEventError(event_id)


def connect_factory(connect_kwargs: dict) -> Callable[[], PgConnection]:
    """Return a callable opening a new psycopg2 connection per call."""

    def _connect() -> PgConnection:
        return psycopg2.connect(**connect_kwargs)

    return _connect


__all__ = ["PostgresBillingStore", "SCHEMA", "connect_factory", "managed_connection"]
