"""Tenant-partitioned relational storage."""

from shoplens.storage.base import Store, StoreTransaction
from shoplens.storage.models import (
    Customer,
    DailyRevenue,
    Order,
    Product,
    RecentOrder,
    Summary,
    Tenant,
)

__all__ = [
    "Customer",
    "DailyRevenue",
    "Order",
    "Product",
    "RecentOrder",
    "Store",
    "StoreTransaction",
    "Summary",
    "Tenant",
]
