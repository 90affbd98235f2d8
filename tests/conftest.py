"""Shared fixtures for the ShopLens test suite.

``InMemoryStore`` is a Store double with the semantics the pipeline relies
on: ``(tenant_id, external_id)`` uniqueness that returns None instead of
raising, and transactions that commit on success and discard every write
on any exception.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import itertools
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from shoplens.app import create_app
from shoplens.config import Settings
from shoplens.errors import ConflictError, PersistenceError, Reason
from shoplens.storage import (
    Customer,
    DailyRevenue,
    Order,
    Product,
    RecentOrder,
    Summary,
    Tenant,
)

SECRET = "shopify-test-secret"
SHOP = "acme.myshopify.com"
API_KEY = "acme-api-key"


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class _Tables:
    def __init__(self) -> None:
        self.tenants: dict[int, Tenant] = {}
        self.customers: dict[int, Customer] = {}
        self.orders: dict[int, Order] = {}
        self.products: dict[int, Product] = {}

    def copy(self) -> _Tables:
        clone = _Tables()
        clone.tenants = dict(self.tenants)
        clone.customers = dict(self.customers)
        clone.orders = dict(self.orders)
        clone.products = dict(self.products)
        return clone


class _MemoryTransaction:
    def __init__(self, store: InMemoryStore, tables: _Tables):
        self._store = store
        self._t = tables

    def _maybe_fail(self, method: str) -> None:
        if self._store.fail_on == method:
            raise PersistenceError(f"injected failure in {method}")

    def find_order_id(self, tenant_id: int, external_id: str) -> int | None:
        if self._store.stale_order_reads > 0:
            # Simulates a read taken before a concurrent writer committed
            self._store.stale_order_reads -= 1
            return None
        for o in self._t.orders.values():
            if o.tenant_id == tenant_id and o.external_id == external_id:
                return o.id
        return None

    def find_customer(self, tenant_id: int, external_id: str) -> Customer | None:
        for c in self._t.customers.values():
            if c.tenant_id == tenant_id and c.external_id == external_id:
                return c
        return None

    def insert_customer(self, tenant_id, external_id, *, email, first_name, last_name):
        self._maybe_fail("insert_customer")
        if self.find_customer(tenant_id, external_id) is not None:
            return None
        customer = Customer(
            id=next(self._store._ids),
            tenant_id=tenant_id,
            external_id=external_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
        self._t.customers[customer.id] = customer
        return customer

    def update_customer_identity(self, tenant_id, customer_id, *, email, first_name, last_name):
        self._maybe_fail("update_customer_identity")
        current = self._t.customers[customer_id]
        assert current.tenant_id == tenant_id
        self._t.customers[customer_id] = replace(
            current,
            email=email if email is not None else current.email,
            first_name=first_name if first_name is not None else current.first_name,
            last_name=last_name if last_name is not None else current.last_name,
        )

    def insert_order(self, tenant_id, external_id, *, customer_id, total_price, created_at):
        self._maybe_fail("insert_order")
        for o in self._t.orders.values():
            if o.tenant_id == tenant_id and o.external_id == external_id:
                return None
        if customer_id is not None:
            assert self._t.customers[customer_id].tenant_id == tenant_id
        order = Order(
            id=next(self._store._ids),
            tenant_id=tenant_id,
            external_id=external_id,
            customer_id=customer_id,
            total_price=total_price,
            created_at=created_at,
        )
        self._t.orders[order.id] = order
        return order.id

    def increment_customer_spend(self, tenant_id, customer_id, amount):
        self._maybe_fail("increment_customer_spend")
        current = self._t.customers.get(customer_id)
        if current is None or current.tenant_id != tenant_id:
            raise PersistenceError("customer missing")
        self._t.customers[customer_id] = replace(current, total_spend=current.total_spend + amount)

    def upsert_product(self, tenant_id, external_id, *, title, sku, price):
        for p in self._t.products.values():
            if p.tenant_id == tenant_id and p.external_id == external_id:
                updated = replace(p, title=title, sku=sku, price=price)
                self._t.products[p.id] = updated
                return updated
        product = Product(
            id=next(self._store._ids),
            tenant_id=tenant_id,
            external_id=external_id,
            title=title,
            sku=sku,
            price=price,
        )
        self._t.products[product.id] = product
        return product


class InMemoryStore:
    """Store double; transactions are serialized and fully atomic."""

    def __init__(self) -> None:
        self._tables = _Tables()
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self.fail_on: str | None = None
        self.stale_order_reads = 0
        self.schema_initialized = False

    # Committed state, for assertions
    @property
    def tenants(self) -> list[Tenant]:
        return sorted(self._tables.tenants.values(), key=lambda t: t.id)

    @property
    def customers(self) -> list[Customer]:
        return sorted(self._tables.customers.values(), key=lambda c: c.id)

    @property
    def orders(self) -> list[Order]:
        return sorted(self._tables.orders.values(), key=lambda o: o.id)

    @property
    def products(self) -> list[Product]:
        return sorted(self._tables.products.values(), key=lambda p: p.id)

    def customer(self, tenant_id: int, external_id: str) -> Customer | None:
        for c in self.customers:
            if c.tenant_id == tenant_id and c.external_id == external_id:
                return c
        return None

    @contextmanager
    def transaction(self) -> Iterator[_MemoryTransaction]:
        with self._lock:
            working = self._tables.copy()
            yield _MemoryTransaction(self, working)
            self._tables = working

    # ── Tenants ──────────────────────────────────────────────────────────

    def get_tenant_by_domain(self, shop_domain: str) -> Tenant | None:
        return next((t for t in self.tenants if t.shop_domain == shop_domain), None)

    def get_tenant_by_api_key(self, api_key: str) -> Tenant | None:
        return next((t for t in self.tenants if t.api_key == api_key), None)

    def _check_unique(self, tenant: Tenant, ignore_id: int | None = None) -> None:
        for t in self.tenants:
            if t.id == ignore_id:
                continue
            if t.slug == tenant.slug or t.api_key == tenant.api_key or (
                tenant.shop_domain and t.shop_domain == tenant.shop_domain
            ):
                raise ConflictError(Reason.CONFLICT, "tenant identity taken")

    def create_tenant(self, *, name, slug, api_key, shop_domain=None, access_token=None) -> Tenant:
        with self._lock:
            tenant = Tenant(
                id=next(self._ids),
                name=name,
                slug=slug,
                api_key=api_key,
                shop_domain=shop_domain,
                access_token=access_token,
            )
            self._check_unique(tenant)
            self._tables.tenants[tenant.id] = tenant
            return tenant

    def upsert_installed_tenant(self, *, slug, name, shop_domain, access_token, api_key):
        with self._lock:
            previous = next((t for t in self.tenants if t.slug == slug), None)
            if previous is None:
                return self.create_tenant(
                    name=name,
                    slug=slug,
                    api_key=api_key,
                    shop_domain=shop_domain,
                    access_token=access_token,
                ), None
            current = replace(previous, shop_domain=shop_domain, access_token=access_token)
            self._check_unique(current, ignore_id=previous.id)
            self._tables.tenants[current.id] = current
            return current, previous

    def rotate_api_key(self, tenant_id: int, api_key: str) -> Tenant:
        with self._lock:
            current = replace(self._tables.tenants[tenant_id], api_key=api_key)
            self._tables.tenants[tenant_id] = current
            return current

    # ── Reads ────────────────────────────────────────────────────────────

    def summary(self, tenant_id: int) -> Summary:
        orders = [o for o in self.orders if o.tenant_id == tenant_id]
        return Summary(
            total_customers=sum(1 for c in self.customers if c.tenant_id == tenant_id),
            total_orders=len(orders),
            total_revenue=sum((o.total_price for o in orders), Decimal("0")),
        )

    def revenue_by_day(self, tenant_id: int, start: datetime, end: datetime) -> list[DailyRevenue]:
        buckets: dict[Any, list[Decimal]] = {}
        for o in self.orders:
            if o.tenant_id == tenant_id and start <= o.created_at < end:
                buckets.setdefault(o.created_at.date(), []).append(o.total_price)
        return [
            DailyRevenue(day=day, order_count=len(prices), revenue=sum(prices, Decimal("0")))
            for day, prices in sorted(buckets.items())
        ]

    def top_customers(self, tenant_id: int, limit: int) -> list[Customer]:
        rows = [c for c in self.customers if c.tenant_id == tenant_id]
        rows.sort(key=lambda c: (-c.total_spend, c.id))
        return rows[:limit]

    def recent_orders(self, tenant_id: int, limit: int) -> list[RecentOrder]:
        rows = [o for o in self.orders if o.tenant_id == tenant_id]
        rows.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return [
            RecentOrder(order=o, customer=self._tables.customers.get(o.customer_id))
            for o in rows[:limit]
        ]

    def init_schema(self) -> None:
        self.schema_initialized = True

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# In-memory Redis
# ---------------------------------------------------------------------------


class InMemoryRedis:
    """The slice of the redis client the tenant cache uses (TTL ignored)."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def mget(self, *keys: str) -> list[str | None]:
        return [self.data.get(k) for k in keys]

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.data[key] = value

    def incr(self, key: str) -> int:
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    def pipeline(self) -> _InMemoryPipeline:
        return _InMemoryPipeline(self)


class _InMemoryPipeline:
    def __init__(self, client: InMemoryRedis) -> None:
        self._client = client
        self._queued: list[tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        def queue(*args):
            self._queued.append((name, args))

        return queue

    def execute(self) -> list:
        queued, self._queued = self._queued, []
        return [getattr(self._client, name)(*args) for name, args in queued]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sign(body: bytes, secret: str = SECRET) -> str:
    """Compute a valid platform signature."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def spend_invariant_holds(store: InMemoryStore) -> bool:
    """Every customer's total_spend equals the sum of its orders."""
    for c in store.customers:
        expected = sum(
            (o.total_price for o in store.orders if o.customer_id == c.id),
            Decimal("0"),
        )
        if c.total_spend != expected:
            return False
    return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def tenant(store: InMemoryStore) -> Tenant:
    return store.create_tenant(
        name="Acme", slug="acme", api_key=API_KEY, shop_domain=SHOP, access_token="shpat_acme"
    )


@pytest.fixture()
def other_tenant(store: InMemoryStore) -> Tenant:
    return store.create_tenant(
        name="Globex", slug="globex", api_key="globex-api-key", shop_domain="globex.myshopify.com"
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="postgresql://unused@localhost/unused",
        shopify_api_key="app-client-id",
        shopify_api_secret=SECRET,
        public_url="https://shoplens.example.com",
        auto_create_schema=False,
        redis_url="",
        admin_token="",
        forward_base_delay=0.0,
    )


@pytest.fixture()
def http_client() -> MagicMock:
    return MagicMock(spec=httpx.Client)


@pytest.fixture()
def app(settings: Settings, store: InMemoryStore, http_client: MagicMock):
    return create_app(settings, store=store, http_client=http_client)


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def deliver(client: TestClient):
    """Post a signed webhook delivery."""

    def _deliver(
        topic: str,
        payload: Any = None,
        *,
        shop: str = SHOP,
        secret: str = SECRET,
        raw: bytes | None = None,
        signature: str | None = None,
    ):
        body = raw if raw is not None else json.dumps(payload).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Hmac-Sha256": signature if signature is not None else sign(body, secret),
            "X-Shopify-Shop-Domain": shop,
            "X-Shopify-Topic": topic,
        }
        return client.post("/webhook", content=body, headers=headers)

    return _deliver
