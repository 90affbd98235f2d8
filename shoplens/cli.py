"""Operator CLI for ShopLens.

Usage:
    shoplens serve --port 4000
    shoplens init-db
    shoplens create-tenant "Acme Store" --slug acme-store
    shoplens rotate-key --api-key <current key>
    shoplens seed
    shoplens send-webhook orders_create --url http://localhost:4000/webhook
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from decimal import Decimal

import httpx

from shoplens.config import Settings, get_settings
from shoplens.errors import ShoplensError
from shoplens.storage.postgres import PostgresStore
from shoplens.tenancy import provisioning
from shoplens.tenancy.cache import TenantCache
from shoplens.tenancy.resolver import TenantResolver
from shoplens.webhooks.events import CustomerCreated, OrderCreated
from shoplens.webhooks.reconcile import Reconciler
from shoplens.webhooks.verification import compute_signature

logger = logging.getLogger("shoplens.cli")

# Demo tenant used by `seed`; rerunning seed is a no-op
SEED_API_KEY = "d164897e4fca3a9d1cdb6a878ce8752bfd0c036f237f7e4e"

SAMPLE_PAYLOADS = {
    "orders_create": {
        "id": 999999,
        "total_price": "123.45",
        "customer": {"id": 555, "email": "sim@example.com", "first_name": "Sim", "last_name": "Tester"},
    },
    "customers_create": {
        "id": 555,
        "email": "sim@example.com",
        "first_name": "Sim",
        "last_name": "Tester",
    },
}


def _store(settings: Settings) -> PostgresStore:
    return PostgresStore(
        settings.database_url,
        connect_timeout=settings.db_connect_timeout,
        statement_timeout_ms=settings.db_statement_timeout_ms,
    )


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    """Run the HTTP service under uvicorn."""
    import uvicorn

    uvicorn.run(
        "shoplens.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    _store(settings).init_schema()
    print("Schema ready")


def cmd_create_tenant(args: argparse.Namespace, settings: Settings) -> None:
    tenant = provisioning.create_tenant(_store(settings), args.name, args.slug)
    print(json.dumps({"id": tenant.id, "name": tenant.name, "slug": tenant.slug, "apiKey": tenant.api_key}))


def cmd_rotate_key(args: argparse.Namespace, settings: Settings) -> None:
    store = _store(settings)
    cache = TenantCache.from_url(settings.redis_url, settings.tenant_cache_ttl) if settings.redis_url else None
    resolver = TenantResolver(store, cache)
    tenant = resolver.by_credential(args.api_key)
    rotated = provisioning.rotate_credential(store, resolver, tenant)
    print(json.dumps({"id": rotated.id, "apiKey": rotated.api_key}))


def cmd_seed(args: argparse.Namespace, settings: Settings) -> None:
    """Create a demo tenant with products, customers and orders."""
    store = _store(settings)
    store.init_schema()
    tenant = store.get_tenant_by_api_key(SEED_API_KEY) or store.create_tenant(
        name="Acme Store",
        slug="acme-store",
        api_key=SEED_API_KEY,
        shop_domain="acme-store.myshopify.com",
    )

    with store.transaction() as tx:
        tx.upsert_product(tenant.id, "prod-1", title="Red Sneaker", sku="RSN-001", price=Decimal("79.99"))
        tx.upsert_product(tenant.id, "prod-2", title="Blue Hoodie", sku="BHD-001", price=Decimal("49.50"))

    reconciler = Reconciler(store)
    reconciler.apply(tenant.id, CustomerCreated("cust-1", "alice@example.com", "Alice", "Anderson"))
    reconciler.apply(tenant.id, CustomerCreated("cust-2", "bob@example.com", "Bob", "Brown"))
    reconciler.apply(tenant.id, OrderCreated("ord-1", Decimal("79.99"), customer_external_id="cust-1"))
    reconciler.apply(tenant.id, OrderCreated("ord-2", Decimal("49.50"), customer_external_id="cust-2"))
    print(f"Seed complete. Tenant id: {tenant.id} apiKey: {tenant.api_key}")


def cmd_send_webhook(args: argparse.Namespace, settings: Settings) -> None:
    """Sign a sample payload with the shared secret and deliver it."""
    if not settings.shopify_api_secret:
        print("ERROR: set SHOPLENS_SHOPIFY_API_SECRET to sign the delivery", file=sys.stderr)
        sys.exit(1)
    raw = json.dumps(SAMPLE_PAYLOADS[args.kind]).encode("utf-8")
    response = httpx.post(
        args.url,
        content=raw,
        headers={
            "Content-Type": "application/json",
            "X-Shopify-Hmac-Sha256": compute_signature(settings.shopify_api_secret, raw),
            "X-Shopify-Shop-Domain": args.shop,
            "X-Shopify-Topic": args.kind.replace("_", "/"),
        },
        timeout=10.0,
    )
    print(f"Webhook sent, status {response.status_code} {response.text}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shoplens",
        description="ShopLens ingestion and insights service",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP service")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=4000)
    p_serve.set_defaults(func=cmd_serve)

    p_init = sub.add_parser("init-db", help="Create tables if missing")
    p_init.set_defaults(func=cmd_init_db)

    p_tenant = sub.add_parser("create-tenant", help="Issue a tenant and its API key")
    p_tenant.add_argument("name")
    p_tenant.add_argument("--slug")
    p_tenant.set_defaults(func=cmd_create_tenant)

    p_rotate = sub.add_parser("rotate-key", help="Replace a tenant's API key")
    p_rotate.add_argument("--api-key", required=True, help="The tenant's current key")
    p_rotate.set_defaults(func=cmd_rotate_key)

    p_seed = sub.add_parser("seed", help="Load the demo tenant")
    p_seed.set_defaults(func=cmd_seed)

    p_send = sub.add_parser("send-webhook", help="Deliver a signed sample webhook")
    p_send.add_argument("kind", choices=sorted(SAMPLE_PAYLOADS))
    p_send.add_argument("--url", default="http://localhost:4000/webhook")
    p_send.add_argument("--shop", default="acme-store.myshopify.com")
    p_send.set_defaults(func=cmd_send_webhook)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args, settings)
    except ShoplensError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
