"""Tenant-scoped records read from and written to the store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal


@dataclass(frozen=True)
class Tenant:
    """One storefront. ``shop_domain`` and ``api_key`` are each unique."""

    id: int
    name: str
    slug: str
    api_key: str
    shop_domain: str | None = None
    access_token: str | None = None


@dataclass(frozen=True)
class Customer:
    id: int
    tenant_id: int
    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    total_spend: Decimal = Decimal("0")


@dataclass(frozen=True)
class Order:
    id: int
    tenant_id: int
    external_id: str
    total_price: Decimal
    created_at: datetime
    customer_id: int | None = None


@dataclass(frozen=True)
class Product:
    id: int
    tenant_id: int
    external_id: str
    title: str
    price: Decimal
    sku: str | None = None


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Summary:
    total_customers: int
    total_orders: int
    total_revenue: Decimal


@dataclass(frozen=True)
class DailyRevenue:
    day: date
    order_count: int
    revenue: Decimal


@dataclass(frozen=True)
class RecentOrder:
    """An order joined with its bound customer, if any."""

    order: Order
    customer: Customer | None = None
