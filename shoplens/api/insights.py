"""Dashboard read API: tenant-scoped aggregates.

Every route requires the tenant credential (``x-api-key`` or
``Authorization: Bearer``) and is rate limited per client IP.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from shoplens import insights
from shoplens.api.deps import get_store, require_tenant
from shoplens.security.middleware import enforce_dashboard_limit
from shoplens.storage import Store, Tenant

router = APIRouter(
    prefix="/api/insights",
    tags=["insights"],
    dependencies=[Depends(enforce_dashboard_limit)],
)


@router.get("/summary")
def get_summary(
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
):
    """Customer count, order count and revenue for the tenant."""
    return insights.summary_payload(insights.summary(store, tenant.id))


@router.get("/orders")
def get_orders_by_day(
    start: str | None = None,
    end: str | None = None,
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
):
    """Orders and revenue grouped by day over an inclusive date range."""
    start_day, end_day = insights.resolve_range(
        insights.parse_day(start, "start"), insights.parse_day(end, "end")
    )
    rows = insights.revenue_by_day(store, tenant.id, start_day, end_day)
    return insights.daily_payload(start_day, end_day, rows)


@router.get("/top-customers")
def get_top_customers(
    limit: int | None = None,
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
):
    rows = insights.top_customers(store, tenant.id, limit)
    return {"data": [insights.customer_payload(c) for c in rows]}


@router.get("/recent-orders")
def get_recent_orders(
    limit: int | None = None,
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
):
    rows = insights.recent_orders(store, tenant.id, limit)
    return {"data": [insights.recent_order_payload(r) for r in rows]}
