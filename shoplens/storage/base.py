"""Storage protocols.

The ingestion pipeline and the read engine never reach for a global
client: every call site is handed a ``Store`` explicitly. Writes happen
inside ``Store.transaction()``, which commits when the block exits
normally and rolls back on any exception.

Concurrency contract:
- ``insert_customer`` and ``insert_order`` never raise on a duplicate
  ``(tenant_id, external_id)``; they return ``None`` so the caller can
  treat the lost race as a duplicate delivery.
- Every method takes ``tenant_id``; no query may cross tenants.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from shoplens.storage.models import (
    Customer,
    DailyRevenue,
    Product,
    RecentOrder,
    Summary,
    Tenant,
)


class StoreTransaction(Protocol):
    """Tenant-scoped writes that share one atomic unit."""

    def find_order_id(self, tenant_id: int, external_id: str) -> int | None: ...

    def find_customer(self, tenant_id: int, external_id: str) -> Customer | None: ...

    def insert_customer(
        self,
        tenant_id: int,
        external_id: str,
        *,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
    ) -> Customer | None: ...

    def update_customer_identity(
        self,
        tenant_id: int,
        customer_id: int,
        *,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
    ) -> None:
        """Overwrite only the fields that are not None."""
        ...

    def insert_order(
        self,
        tenant_id: int,
        external_id: str,
        *,
        customer_id: int | None,
        total_price: Decimal,
        created_at: datetime,
    ) -> int | None: ...

    def increment_customer_spend(
        self, tenant_id: int, customer_id: int, amount: Decimal
    ) -> None: ...

    def upsert_product(
        self,
        tenant_id: int,
        external_id: str,
        *,
        title: str,
        sku: str | None,
        price: Decimal,
    ) -> Product: ...


class Store(Protocol):
    """Handle to the relational store, constructed once per process."""

    def transaction(self) -> AbstractContextManager[StoreTransaction]: ...

    # Tenants
    def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None: ...

    def get_tenant_by_api_key(self, api_key: str) -> Tenant | None: ...

    def create_tenant(
        self,
        *,
        name: str,
        slug: str,
        api_key: str,
        shop_domain: str | None = None,
        access_token: str | None = None,
    ) -> Tenant:
        """Insert a tenant. Raises ConflictError on a taken slug, domain or key."""
        ...

    def upsert_installed_tenant(
        self,
        *,
        slug: str,
        name: str,
        shop_domain: str,
        access_token: str,
        api_key: str,
    ) -> tuple[Tenant, Tenant | None]:
        """Create or re-install a tenant keyed by slug.

        An existing tenant keeps its credential; domain and token are
        replaced. Returns ``(current, previous)``; ``previous`` is None
        on first install.
        """
        ...

    def rotate_api_key(self, tenant_id: int, api_key: str) -> Tenant: ...

    # Reads
    def summary(self, tenant_id: int) -> Summary: ...

    def revenue_by_day(
        self, tenant_id: int, start: datetime, end: datetime
    ) -> list[DailyRevenue]:
        """Orders with ``start <= created_at < end`` grouped by UTC day."""
        ...

    def top_customers(self, tenant_id: int, limit: int) -> list[Customer]: ...

    def recent_orders(self, tenant_id: int, limit: int) -> list[RecentOrder]: ...

    def init_schema(self) -> None: ...

    def close(self) -> None: ...
