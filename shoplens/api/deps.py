"""Request-scoped dependencies.

Handles are built once by the application factory and handed to route
functions through ``Depends``; nothing here reaches for module globals.
"""

from __future__ import annotations

import httpx
from fastapi import Depends, Request

from shoplens.config import Settings
from shoplens.retry import RetryPolicy
from shoplens.storage import Store, Tenant
from shoplens.tenancy.resolver import TenantResolver
from shoplens.webhooks.forwarding import Forwarder
from shoplens.webhooks.reconcile import Reconciler

# Credential headers, checked in order
CREDENTIAL_HEADERS = ("x-api-key", "authorization")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_resolver(request: Request) -> TenantResolver:
    return request.app.state.resolver


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_forwarder(request: Request) -> Forwarder | None:
    return request.app.state.forwarder


def get_http_client(request: Request) -> httpx.Client:
    return request.app.state.http_client


def get_retry_policy(request: Request) -> RetryPolicy:
    return request.app.state.retry_policy


def extract_credential(request: Request) -> str | None:
    """Read the tenant credential from ``x-api-key`` or ``Authorization``."""
    for header in CREDENTIAL_HEADERS:
        value = request.headers.get(header, "").strip()
        if header == "authorization" and value.lower().startswith("bearer "):
            value = value[len("bearer "):].strip()
        if value:
            return value
    return None


def require_tenant(
    request: Request, resolver: TenantResolver = Depends(get_resolver)
) -> Tenant:
    """Resolve the calling tenant or fail with 401."""
    tenant = resolver.by_credential(extract_credential(request))
    request.state.tenant_id = tenant.id
    return tenant
