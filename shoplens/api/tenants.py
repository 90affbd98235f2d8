"""Tenant provisioning and platform install routes.

These sit outside the steady-state ingestion path. Webhook subscription
setup is scheduled as a background task so the install response never
waits on, or fails because of, the platform's subscription API.
"""

from __future__ import annotations

import hmac
import logging
import secrets

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from shoplens.api.deps import (
    get_http_client,
    get_resolver,
    get_retry_policy,
    get_settings,
    get_store,
    require_tenant,
)
from shoplens.config import Settings
from shoplens.errors import AuthError, Reason, ValidationError
from shoplens.retry import RetryPolicy
from shoplens.storage import Store, Tenant
from shoplens.tenancy import provisioning
from shoplens.tenancy.resolver import TenantResolver

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tenants"])

_ADMIN_HEADER = "x-admin-token"


class TenantIn(BaseModel):
    name: str
    slug: str | None = None


def _require_admin(request: Request, settings: Settings) -> None:
    """Tenant creation is open unless an admin token is configured."""
    if not settings.admin_token:
        return
    supplied = request.headers.get(_ADMIN_HEADER, "")
    if not supplied:
        raise AuthError(Reason.MISSING_CREDENTIAL, "admin token required")
    if not hmac.compare_digest(supplied.encode("utf-8"), settings.admin_token.encode("utf-8")):
        raise AuthError(Reason.INVALID_CREDENTIAL, "admin token mismatch")


@router.post("/api/tenants", status_code=201)
def create_tenant(
    body: TenantIn,
    request: Request,
    settings: Settings = Depends(get_settings),
    store: Store = Depends(get_store),
):
    """Create a tenant and return its credential (shown once)."""
    _require_admin(request, settings)
    tenant = provisioning.create_tenant(store, body.name, body.slug)
    return {"id": tenant.id, "name": tenant.name, "slug": tenant.slug, "apiKey": tenant.api_key}


@router.post("/api/tenants/me/rotate-key")
def rotate_key(
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
    resolver: TenantResolver = Depends(get_resolver),
):
    rotated = provisioning.rotate_credential(store, resolver, tenant)
    return {"id": rotated.id, "apiKey": rotated.api_key}


@router.get("/shopify/install")
def shopify_install(
    shop: str | None = None,
    settings: Settings = Depends(get_settings),
):
    """Redirect the store admin to the platform's install page."""
    url = provisioning.install_url(settings, shop or "", secrets.token_hex(8))
    return RedirectResponse(url, status_code=302)


@router.get("/shopify/callback")
def shopify_callback(
    background_tasks: BackgroundTasks,
    shop: str | None = None,
    code: str | None = None,
    settings: Settings = Depends(get_settings),
    store: Store = Depends(get_store),
    resolver: TenantResolver = Depends(get_resolver),
    client: httpx.Client = Depends(get_http_client),
    policy: RetryPolicy = Depends(get_retry_policy),
):
    """Finish the install: token exchange, tenant upsert, webhook setup."""
    if not shop or not code:
        raise ValidationError(Reason.INVALID_QUERY, "shop and code required")
    access_token = provisioning.exchange_access_token(client, settings, shop, code)
    tenant = provisioning.install_tenant(store, resolver, shop, access_token)
    background_tasks.add_task(
        provisioning.register_webhooks,
        client,
        settings,
        tenant.shop_domain,
        access_token,
        policy,
    )
    return {"tenantId": tenant.id, "shop": tenant.shop_domain, "apiKey": tenant.api_key}
