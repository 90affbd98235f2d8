"""Postgres store: tenants, customers, orders, products.

Every tenant-owned table carries ``tenant_id`` and a
``UNIQUE (tenant_id, external_id)`` constraint. Those constraints are the
concurrency guard for reconciliation: concurrent duplicate deliveries race
on the insert, and the loser gets ``ON CONFLICT DO NOTHING`` instead of a
second row. Orders reference customers through ``(tenant_id, customer_id)``
so a cross-tenant binding is rejected by the database itself.

Connections are opened per transaction or per read, the same way across
the package; driver errors are wrapped into PersistenceError after the
transaction has rolled back.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from shoplens.errors import ConflictError, PersistenceError, Reason
from shoplens.storage.models import (
    Customer,
    DailyRevenue,
    Order,
    Product,
    RecentOrder,
    Summary,
    Tenant,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id            BIGSERIAL PRIMARY KEY,
        name          TEXT NOT NULL,
        slug          TEXT NOT NULL UNIQUE,
        api_key       TEXT NOT NULL UNIQUE,
        shop_domain   TEXT UNIQUE,
        access_token  TEXT,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customers (
        id            BIGSERIAL PRIMARY KEY,
        tenant_id     BIGINT NOT NULL REFERENCES tenants (id),
        external_id   TEXT NOT NULL,
        email         TEXT,
        first_name    TEXT,
        last_name     TEXT,
        total_spend   NUMERIC NOT NULL DEFAULT 0 CHECK (total_spend >= 0),
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, external_id),
        UNIQUE (tenant_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id            BIGSERIAL PRIMARY KEY,
        tenant_id     BIGINT NOT NULL REFERENCES tenants (id),
        external_id   TEXT NOT NULL,
        customer_id   BIGINT,
        total_price   NUMERIC NOT NULL CHECK (total_price >= 0),
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, external_id),
        FOREIGN KEY (tenant_id, customer_id) REFERENCES customers (tenant_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id            BIGSERIAL PRIMARY KEY,
        tenant_id     BIGINT NOT NULL REFERENCES tenants (id),
        external_id   TEXT NOT NULL,
        title         TEXT NOT NULL,
        sku           TEXT,
        price         NUMERIC NOT NULL CHECK (price >= 0),
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, external_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_tenant_created ON orders (tenant_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_customers_tenant_spend ON customers (tenant_id, total_spend DESC, id)",
]

_TENANT_COLUMNS = "id, name, slug, api_key, shop_domain, access_token"
_CUSTOMER_COLUMNS = "id, tenant_id, external_id, email, first_name, last_name, total_spend"


def _tenant(row: dict[str, Any]) -> Tenant:
    return Tenant(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        api_key=row["api_key"],
        shop_domain=row["shop_domain"],
        access_token=row["access_token"],
    )


def _customer(row: dict[str, Any], prefix: str = "") -> Customer:
    return Customer(
        id=row[f"{prefix}id"],
        tenant_id=row[f"{prefix}tenant_id"],
        external_id=row[f"{prefix}external_id"],
        email=row[f"{prefix}email"],
        first_name=row[f"{prefix}first_name"],
        last_name=row[f"{prefix}last_name"],
        total_spend=Decimal(row[f"{prefix}total_spend"]),
    )


class _PgTransaction:
    """Writes bound to one open Postgres transaction."""

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def execute(self, sql: str, params: tuple | dict | None = None) -> psycopg.Cursor:
        return self._conn.execute(sql, params)

    def find_order_id(self, tenant_id: int, external_id: str) -> int | None:
        row = self.execute(
            "SELECT id FROM orders WHERE tenant_id = %s AND external_id = %s",
            (tenant_id, external_id),
        ).fetchone()
        return row["id"] if row else None

    def find_customer(self, tenant_id: int, external_id: str) -> Customer | None:
        row = self.execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE tenant_id = %s AND external_id = %s",
            (tenant_id, external_id),
        ).fetchone()
        return _customer(row) if row else None

    def insert_customer(
        self,
        tenant_id: int,
        external_id: str,
        *,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
    ) -> Customer | None:
        row = self.execute(
            f"""INSERT INTO customers (tenant_id, external_id, email, first_name, last_name)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, external_id) DO NOTHING
                RETURNING {_CUSTOMER_COLUMNS}""",
            (tenant_id, external_id, email, first_name, last_name),
        ).fetchone()
        return _customer(row) if row else None

    def update_customer_identity(
        self,
        tenant_id: int,
        customer_id: int,
        *,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
    ) -> None:
        self.execute(
            """UPDATE customers
               SET email = COALESCE(%s, email),
                   first_name = COALESCE(%s, first_name),
                   last_name = COALESCE(%s, last_name)
               WHERE tenant_id = %s AND id = %s""",
            (email, first_name, last_name, tenant_id, customer_id),
        )

    def insert_order(
        self,
        tenant_id: int,
        external_id: str,
        *,
        customer_id: int | None,
        total_price: Decimal,
        created_at: datetime,
    ) -> int | None:
        row = self.execute(
            """INSERT INTO orders (tenant_id, external_id, customer_id, total_price, created_at)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (tenant_id, external_id) DO NOTHING
               RETURNING id""",
            (tenant_id, external_id, customer_id, total_price, created_at),
        ).fetchone()
        return row["id"] if row else None

    def increment_customer_spend(
        self, tenant_id: int, customer_id: int, amount: Decimal
    ) -> None:
        cur = self.execute(
            """UPDATE customers SET total_spend = total_spend + %s
               WHERE tenant_id = %s AND id = %s""",
            (amount, tenant_id, customer_id),
        )
        if cur.rowcount != 1:
            raise PersistenceError(
                f"customer {customer_id} missing in tenant {tenant_id} during spend update"
            )

    def upsert_product(
        self,
        tenant_id: int,
        external_id: str,
        *,
        title: str,
        sku: str | None,
        price: Decimal,
    ) -> Product:
        row = self.execute(
            """INSERT INTO products (tenant_id, external_id, title, sku, price)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (tenant_id, external_id)
               DO UPDATE SET title = EXCLUDED.title, sku = EXCLUDED.sku, price = EXCLUDED.price
               RETURNING id, tenant_id, external_id, title, sku, price""",
            (tenant_id, external_id, title, sku, price),
        ).fetchone()
        return Product(
            id=row["id"],
            tenant_id=row["tenant_id"],
            external_id=row["external_id"],
            title=row["title"],
            sku=row["sku"],
            price=Decimal(row["price"]),
        )


class PostgresStore:
    """psycopg-backed implementation of the Store protocol."""

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 10000,
    ):
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._statement_timeout_ms = statement_timeout_ms

    def _get_conn(self, *, autocommit: bool = False) -> psycopg.Connection:
        return psycopg.connect(
            self._dsn,
            autocommit=autocommit,
            row_factory=dict_row,
            connect_timeout=self._connect_timeout,
            options=f"-c statement_timeout={self._statement_timeout_ms}",
        )

    @contextmanager
    def transaction(self) -> Iterator[_PgTransaction]:
        try:
            with self._get_conn() as conn:
                with conn.transaction():
                    yield _PgTransaction(conn)
        except psycopg.errors.UniqueViolation as e:
            # Callers map this to ConflictError
            logger.info("Transaction rolled back on unique constraint: %s", e.diag.constraint_name)
            raise PersistenceError(type(e).__name__) from e
        except psycopg.Error as e:
            logger.exception("Transaction rolled back")
            raise PersistenceError(type(e).__name__) from e

    def _fetch_all(self, sql: str, params: tuple | dict) -> list[dict[str, Any]]:
        try:
            with self._get_conn(autocommit=True) as conn:
                return conn.execute(sql, params).fetchall()
        except psycopg.Error as e:
            logger.exception("Read query failed")
            raise PersistenceError(type(e).__name__) from e

    def _fetch_one(self, sql: str, params: tuple | dict) -> dict[str, Any] | None:
        rows = self._fetch_all(sql, params)
        return rows[0] if rows else None

    # ── Tenants ──────────────────────────────────────────────────────────

    def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None:
        row = self._fetch_one(
            f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE shop_domain = %s",
            (shop_domain,),
        )
        return _tenant(row) if row else None

    def get_tenant_by_api_key(self, api_key: str) -> Tenant | None:
        row = self._fetch_one(
            f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE api_key = %s",
            (api_key,),
        )
        return _tenant(row) if row else None

    def create_tenant(
        self,
        *,
        name: str,
        slug: str,
        api_key: str,
        shop_domain: str | None = None,
        access_token: str | None = None,
    ) -> Tenant:
        try:
            with self.transaction() as tx:
                row = tx.execute(
                    f"""INSERT INTO tenants (name, slug, api_key, shop_domain, access_token)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING {_TENANT_COLUMNS}""",
                    (name, slug, api_key, shop_domain, access_token),
                ).fetchone()
        except PersistenceError as e:
            if isinstance(e.__cause__, psycopg.errors.UniqueViolation):
                raise ConflictError(Reason.CONFLICT, f"tenant slug {slug!r} or domain taken") from e
            raise
        return _tenant(row)

    def upsert_installed_tenant(
        self,
        *,
        slug: str,
        name: str,
        shop_domain: str,
        access_token: str,
        api_key: str,
    ) -> tuple[Tenant, Tenant | None]:
        try:
            with self.transaction() as tx:
                previous = tx.execute(
                    f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE slug = %s FOR UPDATE",
                    (slug,),
                ).fetchone()
                if previous:
                    row = tx.execute(
                        f"""UPDATE tenants
                            SET shop_domain = %s, access_token = %s, updated_at = now()
                            WHERE id = %s
                            RETURNING {_TENANT_COLUMNS}""",
                        (shop_domain, access_token, previous["id"]),
                    ).fetchone()
                else:
                    row = tx.execute(
                        f"""INSERT INTO tenants (name, slug, api_key, shop_domain, access_token)
                            VALUES (%s, %s, %s, %s, %s)
                            RETURNING {_TENANT_COLUMNS}""",
                        (name, slug, api_key, shop_domain, access_token),
                    ).fetchone()
        except PersistenceError as e:
            if isinstance(e.__cause__, psycopg.errors.UniqueViolation):
                raise ConflictError(Reason.CONFLICT, f"shop {shop_domain!r} bound to another tenant") from e
            raise
        return _tenant(row), (_tenant(previous) if previous else None)

    def rotate_api_key(self, tenant_id: int, api_key: str) -> Tenant:
        with self.transaction() as tx:
            row = tx.execute(
                f"""UPDATE tenants SET api_key = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING {_TENANT_COLUMNS}""",
                (api_key, tenant_id),
            ).fetchone()
        if row is None:
            raise PersistenceError(f"tenant {tenant_id} vanished during rotation")
        return _tenant(row)

    # ── Reads ────────────────────────────────────────────────────────────

    def summary(self, tenant_id: int) -> Summary:
        row = self._fetch_one(
            """SELECT (SELECT COUNT(*) FROM customers WHERE tenant_id = %(t)s) AS total_customers,
                      COUNT(o.id) AS total_orders,
                      COALESCE(SUM(o.total_price), 0) AS total_revenue
               FROM orders o
               WHERE o.tenant_id = %(t)s""",
            {"t": tenant_id},
        )
        return Summary(
            total_customers=int(row["total_customers"]),
            total_orders=int(row["total_orders"]),
            total_revenue=Decimal(row["total_revenue"]),
        )

    def revenue_by_day(
        self, tenant_id: int, start: datetime, end: datetime
    ) -> list[DailyRevenue]:
        rows = self._fetch_all(
            """SELECT (created_at AT TIME ZONE 'UTC')::date AS day,
                      COUNT(*) AS order_count,
                      COALESCE(SUM(total_price), 0) AS revenue
               FROM orders
               WHERE tenant_id = %s AND created_at >= %s AND created_at < %s
               GROUP BY day
               ORDER BY day ASC""",
            (tenant_id, start, end),
        )
        return [
            DailyRevenue(
                day=r["day"],
                order_count=int(r["order_count"]),
                revenue=Decimal(r["revenue"]),
            )
            for r in rows
        ]

    def top_customers(self, tenant_id: int, limit: int) -> list[Customer]:
        rows = self._fetch_all(
            f"""SELECT {_CUSTOMER_COLUMNS} FROM customers
                WHERE tenant_id = %s
                ORDER BY total_spend DESC, id ASC
                LIMIT %s""",
            (tenant_id, limit),
        )
        return [_customer(r) for r in rows]

    def recent_orders(self, tenant_id: int, limit: int) -> list[RecentOrder]:
        rows = self._fetch_all(
            """SELECT o.id, o.tenant_id, o.external_id, o.customer_id, o.total_price, o.created_at,
                      c.id AS c_id, c.tenant_id AS c_tenant_id, c.external_id AS c_external_id,
                      c.email AS c_email, c.first_name AS c_first_name,
                      c.last_name AS c_last_name, c.total_spend AS c_total_spend
               FROM orders o
               LEFT JOIN customers c ON c.tenant_id = o.tenant_id AND c.id = o.customer_id
               WHERE o.tenant_id = %s
               ORDER BY o.created_at DESC, o.id DESC
               LIMIT %s""",
            (tenant_id, limit),
        )
        return [
            RecentOrder(
                order=Order(
                    id=r["id"],
                    tenant_id=r["tenant_id"],
                    external_id=r["external_id"],
                    customer_id=r["customer_id"],
                    total_price=Decimal(r["total_price"]),
                    created_at=r["created_at"],
                ),
                customer=_customer(r, prefix="c_") if r["c_id"] is not None else None,
            )
            for r in rows
        ]

    # ── Lifecycle ────────────────────────────────────────────────────────

    def init_schema(self) -> None:
        """Create tables if they don't exist.  Idempotent."""
        with self.transaction() as tx:
            for statement in _SCHEMA:
                tx.execute(statement)
        logger.info("ShopLens tables initialized")

    def close(self) -> None:
        """Connections are per call; nothing is held between requests."""
