"""Tenant provisioning: creation, platform install, credential rotation.

Provisioning sits outside the steady-state ingestion path. The pipeline
only consumes the resulting Tenant record (shop domain, access token,
credential).

Security contract:
- Credentials are 48 hex chars from ``secrets``; never logged
- Shop domains are validated against the platform's host pattern before
  any outbound call is made to them
- Cached mappings for a tenant's previous identity are invalidated on
  re-install and on rotation
- Webhook subscription setup is fire-and-forget: failures are logged per
  topic and never raised
"""

from __future__ import annotations

import logging
import re
import secrets
from urllib.parse import urlencode

import httpx

from shoplens.config import Settings
from shoplens.errors import Reason, TransientUpstreamError, ValidationError
from shoplens.retry import RetryPolicy
from shoplens.storage import Store, Tenant
from shoplens.tenancy.resolver import TenantResolver
from shoplens.webhooks.events import Topic

logger = logging.getLogger(__name__)

_SHOP_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")

# Topics every installed tenant is subscribed to
WEBHOOK_TOPICS = (Topic.ORDER_CREATED, Topic.CUSTOMER_CREATED, Topic.CHECKOUT_CREATED)


def generate_api_key() -> str:
    return secrets.token_hex(24)


def slugify(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


def validate_shop_domain(shop: str | None) -> str:
    domain = (shop or "").strip().lower()
    if not _SHOP_DOMAIN.fullmatch(domain):
        raise ValidationError(Reason.INVALID_SHOP, f"not a storefront domain: {shop!r}")
    return domain


def create_tenant(store: Store, name: str, slug: str | None = None) -> Tenant:
    """Issue a tenant with a freshly generated credential."""
    name = name.strip()
    if not name:
        raise ValidationError(Reason.MALFORMED_PAYLOAD, "name required")
    tenant = store.create_tenant(
        name=name,
        slug=slugify(slug or name),
        api_key=generate_api_key(),
    )
    logger.info("Tenant created: id=%s slug=%s", tenant.id, tenant.slug)
    return tenant


def rotate_credential(store: Store, resolver: TenantResolver, tenant: Tenant) -> Tenant:
    """Replace a tenant's credential; the old one stops resolving immediately.

    The cache is invalidated before the write, so an unreachable cache
    aborts the rotation with nothing changed, and again after it, which
    retires entries written by lookups that read the old row.
    """
    resolver.invalidate(tenant)
    rotated = store.rotate_api_key(tenant.id, generate_api_key())
    resolver.invalidate(tenant)
    logger.info("Credential rotated for tenant=%s", tenant.id)
    return rotated


# ---------------------------------------------------------------------------
# Platform install
# ---------------------------------------------------------------------------


def install_url(settings: Settings, shop: str, state: str) -> str:
    """Authorize URL the store admin is redirected to."""
    shop = validate_shop_domain(shop)
    query = urlencode(
        {
            "client_id": settings.shopify_api_key,
            "scope": settings.shopify_scopes,
            "redirect_uri": f"{settings.public_url.rstrip('/')}/shopify/callback",
            "state": state,
        }
    )
    return f"https://{shop}/admin/oauth/authorize?{query}"


def exchange_access_token(
    client: httpx.Client, settings: Settings, shop: str, code: str
) -> str:
    """Trade the temporary install code for a long-lived access token."""
    shop = validate_shop_domain(shop)
    try:
        response = client.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": settings.shopify_api_key,
                "client_secret": settings.shopify_api_secret,
                "code": code,
            },
            timeout=10.0,
        )
        response.raise_for_status()
        token = response.json().get("access_token")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Token exchange failed for shop=%s: %s", shop, type(e).__name__)
        raise TransientUpstreamError(f"token exchange failed for {shop}") from e
    if not token:
        raise TransientUpstreamError(f"token exchange for {shop} returned no token")
    return token


def install_tenant(
    store: Store, resolver: TenantResolver, shop: str, access_token: str
) -> Tenant:
    """Create or re-install the tenant for ``shop``, keyed by slug."""
    shop = validate_shop_domain(shop)
    slug = shop.split(".")[0]
    tenant, previous = store.upsert_installed_tenant(
        slug=slug,
        name=f"{slug} (Shopify)",
        shop_domain=shop,
        access_token=access_token,
        api_key=generate_api_key(),
    )
    if previous is not None:
        resolver.invalidate(previous)
    logger.info(
        "Tenant %s for shop=%s (id=%s)",
        "re-installed" if previous else "installed",
        shop,
        tenant.id,
    )
    return tenant


def register_webhooks(
    client: httpx.Client,
    settings: Settings,
    shop: str,
    access_token: str,
    policy: RetryPolicy,
) -> dict[str, bool]:
    """Subscribe the shop's webhooks to this receiver.

    Returns a map of topic -> subscribed. Never raises; an existing
    subscription is reported by the platform as a 422 and logged.
    """
    address = f"{settings.public_url.rstrip('/')}/webhook"
    url = f"https://{shop}/admin/api/{settings.shopify_api_version}/webhooks.json"
    results: dict[str, bool] = {}

    for topic in WEBHOOK_TOPICS:

        def _subscribe(topic: Topic = topic) -> httpx.Response:
            response = client.post(
                url,
                json={"webhook": {"topic": topic.value, "address": address, "format": "json"}},
                headers={
                    "X-Shopify-Access-Token": access_token,
                    "Accept": "application/json",
                },
                timeout=policy.attempt_timeout,
            )
            response.raise_for_status()
            return response

        try:
            policy.call(_subscribe, description=f"subscribe {topic.value}")
            results[topic.value] = True
            logger.info("Webhook subscribed: shop=%s topic=%s", shop, topic.value)
        except httpx.HTTPError as e:
            results[topic.value] = False
            logger.warning(
                "Could not subscribe webhook %s for shop=%s: %s",
                topic.value,
                shop,
                type(e).__name__,
                exc_info=True,
            )
    return results
