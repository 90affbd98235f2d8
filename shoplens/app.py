"""Application factory.

Builds the FastAPI app with explicitly constructed handles (store,
resolver, reconciler, HTTP client) attached to ``app.state``. Tests pass
their own store and HTTP client; production builds the Postgres store
from settings.

Run with:
    uvicorn shoplens.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shoplens import __version__
from shoplens.api import ingest, insights, tenants
from shoplens.config import Settings, get_settings
from shoplens.errors import ShoplensError
from shoplens.retry import RetryPolicy
from shoplens.security.middleware import install_security_middleware
from shoplens.storage import Store
from shoplens.storage.postgres import PostgresStore
from shoplens.tenancy.cache import TenantCache
from shoplens.tenancy.resolver import TenantResolver
from shoplens.webhooks import handlers as webhook_handlers
from shoplens.webhooks.forwarding import Forwarder
from shoplens.webhooks.reconcile import Reconciler

logger = logging.getLogger(__name__)


async def _shoplens_error_handler(request: Request, exc: ShoplensError) -> JSONResponse:
    """Render taxonomy errors without internal detail."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed: %s %s -> %d %s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.reason.value,
    )
    return JSONResponse({"error": exc.reason.value}, status_code=exc.status_code)


def create_app(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    cache: TenantCache | None = None,
    http_client: httpx.Client | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    if store is None:
        store = PostgresStore(
            settings.database_url,
            connect_timeout=settings.db_connect_timeout,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )
    if cache is None and settings.redis_url:
        cache = TenantCache.from_url(settings.redis_url, settings.tenant_cache_ttl)
    client = http_client or httpx.Client()
    policy = RetryPolicy(
        max_attempts=settings.forward_max_attempts,
        base_delay=settings.forward_base_delay,
        attempt_timeout=settings.forward_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_schema:
            store.init_schema()
        logger.info("ShopLens started (ingest_mode=%s)", settings.ingest_mode)
        yield
        client.close()
        store.close()

    app = FastAPI(title="ShopLens", version=__version__, lifespan=lifespan)

    app.state.settings = settings
    app.state.store = store
    app.state.resolver = TenantResolver(store, cache)
    app.state.reconciler = Reconciler(store)
    app.state.http_client = client
    app.state.retry_policy = policy
    app.state.forwarder = None
    if settings.ingest_mode == "forward":
        app.state.forwarder = Forwarder(client, settings.internal_api_url, policy)
    elif settings.ingest_mode != "direct":
        raise ValueError(f"unknown ingest_mode: {settings.ingest_mode!r}")

    app.add_exception_handler(ShoplensError, _shoplens_error_handler)

    app.include_router(webhook_handlers.router)
    app.include_router(insights.router)
    app.include_router(ingest.router)
    app.include_router(tenants.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    install_security_middleware(app, settings)
    return app
