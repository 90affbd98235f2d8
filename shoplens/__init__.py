"""ShopLens: storefront webhook ingestion and insights service.

Receives signed storefront webhooks, reconciles them into per-tenant
Postgres tables, and serves dashboard aggregates from the same store.
"""

__version__ = "0.3.0"
