"""Integration tests for PostgresStore against a live database.

Skipped unless SHOPLENS_TEST_DATABASE_URL points at a disposable database.
"""

from __future__ import annotations

import os
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest

from shoplens.errors import ConflictError, PersistenceError
from shoplens.storage.postgres import PostgresStore
from shoplens.webhooks.events import CustomerCreated, OrderCreated
from shoplens.webhooks.reconcile import Outcome, Reconciler

DATABASE_URL = os.environ.get("SHOPLENS_TEST_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="SHOPLENS_TEST_DATABASE_URL not set")


@pytest.fixture(scope="module")
def pg_store():
    store = PostgresStore(DATABASE_URL)
    store.init_schema()
    return store


@pytest.fixture()
def pg_tenant(pg_store):
    suffix = uuid.uuid4().hex[:10]
    return pg_store.create_tenant(
        name=f"Test {suffix}",
        slug=f"test-{suffix}",
        api_key=f"key-{suffix}",
        shop_domain=f"test-{suffix}.myshopify.com",
    )


def _at(day: int, hour: int = 10, minute: int = 0) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


class TestTenants:
    def test_lookup(self, pg_store, pg_tenant):
        assert pg_store.get_tenant_by_domain(pg_tenant.shop_domain) == pg_tenant
        assert pg_store.get_tenant_by_api_key(pg_tenant.api_key) == pg_tenant

    def test_duplicate_slug_conflicts(self, pg_store, pg_tenant):
        with pytest.raises(ConflictError):
            pg_store.create_tenant(name="dup", slug=pg_tenant.slug, api_key=uuid.uuid4().hex)

    def test_rotate_api_key(self, pg_store, pg_tenant):
        rotated = pg_store.rotate_api_key(pg_tenant.id, uuid.uuid4().hex)
        assert pg_store.get_tenant_by_api_key(pg_tenant.api_key) is None
        assert pg_store.get_tenant_by_api_key(rotated.api_key).id == pg_tenant.id

    def test_reinstall_keeps_credential(self, pg_store, pg_tenant):
        current, previous = pg_store.upsert_installed_tenant(
            slug=pg_tenant.slug,
            name=pg_tenant.name,
            shop_domain=pg_tenant.shop_domain,
            access_token="shpat_new",
            api_key="unused",
        )
        assert previous == pg_tenant
        assert current.api_key == pg_tenant.api_key
        assert current.access_token == "shpat_new"


class TestReconciliation:
    def test_redelivery_counts_spend_once(self, pg_store, pg_tenant):
        reconciler = Reconciler(pg_store)
        event = OrderCreated("o1", Decimal("79.99"), _at(1), "A")

        assert reconciler.apply(pg_tenant.id, event).outcome is Outcome.CREATED
        assert reconciler.apply(pg_tenant.id, event).outcome is Outcome.DUPLICATE

        [top] = pg_store.top_customers(pg_tenant.id, 5)
        assert top.total_spend == Decimal("79.99")
        assert pg_store.summary(pg_tenant.id).total_orders == 1

    def test_concurrent_duplicates_persist_once(self, pg_store, pg_tenant):
        reconciler = Reconciler(pg_store)
        event = OrderCreated("race", Decimal("10.00"), _at(2), "R")
        outcomes: list[Outcome] = []
        barrier = threading.Barrier(8)

        def deliver():
            barrier.wait()
            outcomes.append(reconciler.apply(pg_tenant.id, event).outcome)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(Outcome.CREATED) == 1
        assert outcomes.count(Outcome.DUPLICATE) == 7
        [top] = pg_store.top_customers(pg_tenant.id, 5)
        assert top.total_spend == Decimal("10.00")

    def test_cross_tenant_customer_binding_rejected(self, pg_store, pg_tenant):
        other = pg_store.create_tenant(
            name="other", slug=f"other-{uuid.uuid4().hex[:8]}", api_key=uuid.uuid4().hex
        )
        Reconciler(pg_store).apply(other.id, CustomerCreated("X"))
        with pg_store.transaction() as tx:
            foreign_id = tx.find_customer(other.id, "X").id

        with pytest.raises(PersistenceError):
            with pg_store.transaction() as tx:
                tx.insert_order(
                    pg_tenant.id,
                    "bad",
                    customer_id=foreign_id,
                    total_price=Decimal("1"),
                    created_at=_at(1),
                )


class TestReads:
    def test_aggregates(self, pg_store, pg_tenant):
        reconciler = Reconciler(pg_store)
        reconciler.apply(pg_tenant.id, OrderCreated("o1", Decimal("79.99"), _at(1, 10, 0), "A"))
        reconciler.apply(pg_tenant.id, OrderCreated("o2", Decimal("20.01"), _at(1, 10, 5), "B"))
        reconciler.apply(pg_tenant.id, OrderCreated("o3", Decimal("5.00"), _at(2, 23, 59), None))

        summary = pg_store.summary(pg_tenant.id)
        assert (summary.total_customers, summary.total_orders) == (2, 3)
        assert summary.total_revenue == Decimal("105.00")

        days = pg_store.revenue_by_day(pg_tenant.id, _at(1, 0), _at(3, 0))
        assert [(d.day.isoformat(), d.order_count, d.revenue) for d in days] == [
            ("2024-03-01", 2, Decimal("100.00")),
            ("2024-03-02", 1, Decimal("5.00")),
        ]

        recent = pg_store.recent_orders(pg_tenant.id, 2)
        assert [r.order.external_id for r in recent] == ["o3", "o2"]
        assert recent[0].customer is None
        assert recent[1].customer.external_id == "B"

    def test_statement_errors_become_persistence_errors(self, pg_store):
        with pytest.raises(PersistenceError) as exc:
            pg_store._fetch_all("SELECT * FROM no_such_table", ())
        assert isinstance(exc.value.__cause__, psycopg.Error)
