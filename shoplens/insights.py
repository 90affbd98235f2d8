"""Aggregation read engine: dashboard queries over the reconciled store.

All reads are tenant-scoped and side-effect-free. Days are UTC calendar
days; ranges are inclusive of both end days.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from shoplens.errors import Reason, ValidationError
from shoplens.storage import Customer, DailyRevenue, RecentOrder, Store, Summary

DEFAULT_WINDOW_DAYS = 30
TOP_CUSTOMERS_DEFAULT = 5
TOP_CUSTOMERS_MAX = 100
RECENT_ORDERS_DEFAULT = 50
RECENT_ORDERS_MAX = 1000


def clamp(value: int | None, default: int, high: int, low: int = 1) -> int:
    if value is None:
        return default
    return max(low, min(high, value))


def parse_day(value: str | None, field: str) -> date | None:
    """Parse a YYYY-MM-DD query value."""
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError as e:
        raise ValidationError(Reason.INVALID_QUERY, f"{field} must be YYYY-MM-DD") from e


def resolve_range(
    start: date | None, end: date | None, today: date | None = None
) -> tuple[date, date]:
    """Fill in the default trailing window (30 days ending today)."""
    today = today or datetime.now(timezone.utc).date()
    end = end or today
    start = start or end - timedelta(days=DEFAULT_WINDOW_DAYS - 1)
    return start, end


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def summary(store: Store, tenant_id: int) -> Summary:
    return store.summary(tenant_id)


def revenue_by_day(store: Store, tenant_id: int, start: date, end: date) -> list[DailyRevenue]:
    """Sparse per-day buckets; ``start > end`` yields an empty list."""
    if start > end:
        return []
    return store.revenue_by_day(tenant_id, _day_start(start), _day_start(end + timedelta(days=1)))


def top_customers(store: Store, tenant_id: int, limit: int | None = None) -> list[Customer]:
    """Highest total spend first; equal spend keeps insertion order."""
    return store.top_customers(
        tenant_id, clamp(limit, TOP_CUSTOMERS_DEFAULT, TOP_CUSTOMERS_MAX)
    )


def recent_orders(store: Store, tenant_id: int, limit: int | None = None) -> list[RecentOrder]:
    return store.recent_orders(
        tenant_id, clamp(limit, RECENT_ORDERS_DEFAULT, RECENT_ORDERS_MAX)
    )


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------


def money(value: Any) -> float:
    """Monetary values leave the service as JSON numbers."""
    return float(value)


def summary_payload(s: Summary) -> dict[str, Any]:
    return {
        "totalCustomers": s.total_customers,
        "totalOrders": s.total_orders,
        "totalRevenue": money(s.total_revenue),
    }


def daily_payload(start: date, end: date, rows: list[DailyRevenue]) -> dict[str, Any]:
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "data": [
            {"date": r.day.isoformat(), "orderCount": r.order_count, "revenue": money(r.revenue)}
            for r in rows
        ],
    }


def customer_payload(c: Customer) -> dict[str, Any]:
    return {
        "externalId": c.external_id,
        "email": c.email,
        "firstName": c.first_name,
        "lastName": c.last_name,
        "totalSpent": money(c.total_spend),
    }


def recent_order_payload(r: RecentOrder) -> dict[str, Any]:
    customer = None
    if r.customer is not None:
        customer = {
            "externalId": r.customer.external_id,
            "email": r.customer.email,
            "firstName": r.customer.first_name,
            "lastName": r.customer.last_name,
        }
    return {
        "externalId": r.order.external_id,
        "totalPrice": money(r.order.total_price),
        "createdAt": r.order.created_at.isoformat(),
        "customer": customer,
    }
