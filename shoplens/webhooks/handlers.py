"""Webhook HTTP handler: the public receiver the platform posts to.

Each delivery:
1. Raw body captured by SignedBodyRoute (needed for HMAC verification)
2. Verifies the HMAC signature                     -> 401 / 400
3. Decodes JSON                                    -> 400
4. Resolves the tenant by shop domain              -> 404
5. Normalizes into a typed event                   -> 200 if malformed (not retried)
6. Reconciles (or forwards) the event              -> 500 / 502 on failure
7. Returns 200, including absorbed duplicates and unrecognized topics

Security contract:
- Never return error details to webhook caller (info disclosure)
- Tenant lookup runs only after the signature check passes
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shoplens.api.deps import get_forwarder, get_reconciler, get_resolver, get_settings
from shoplens.config import Settings
from shoplens.errors import (
    AuthError,
    NotFound,
    PersistenceError,
    Reason,
    TransientUpstreamError,
    ValidationError,
)
from shoplens.tenancy.resolver import TenantResolver
from shoplens.webhooks.events import decode_payload, event_id, normalize
from shoplens.webhooks.forwarding import Forwarder
from shoplens.webhooks.reconcile import Reconciler
from shoplens.webhooks.routing import SignedBodyRoute, raw_body
from shoplens.webhooks.verification import verify_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-shopify-hmac-sha256"
SHOP_HEADER = "x-shopify-shop-domain"
TOPIC_HEADER = "x-shopify-topic"

router = APIRouter(route_class=SignedBodyRoute, tags=["webhooks"])


def _log_webhook(shop: str, topic: str, external_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT shop=%s topic=%s id=%s status=%s",
        shop or "-",
        topic or "-",
        external_id or "-",
        status,
    )


@router.post("/webhook")
def receive_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    resolver: TenantResolver = Depends(get_resolver),
    reconciler: Reconciler = Depends(get_reconciler),
    forwarder: Forwarder | None = Depends(get_forwarder),
) -> JSONResponse:
    """Receive a signed storefront webhook."""
    start = time.monotonic()
    shop = request.headers.get(SHOP_HEADER, "")
    topic = request.headers.get(TOPIC_HEADER, "")

    # 1. Verify signature over the untouched bytes
    body = raw_body(request)
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.shopify_api_secret)
    except AuthError as e:
        status = "missing_body" if e.reason is Reason.MISSING_BODY else "signature_failed"
        _log_webhook(shop, topic, "", status)
        raise

    # 2. Parse JSON payload
    try:
        payload = decode_payload(body)
    except ValidationError:
        _log_webhook(shop, topic, "", "invalid_json")
        raise

    # 3. Resolve tenant (only after the signature is known good)
    try:
        tenant = resolver.by_domain(shop)
    except NotFound:
        _log_webhook(shop, topic, "", "unknown_shop")
        raise

    # 4. Normalize; a malformed payload will not improve on redelivery
    try:
        event = normalize(topic, payload)
    except ValidationError as e:
        logger.warning("Malformed %s payload from shop=%s: %s", topic, shop, e.detail)
        _log_webhook(shop, topic, "", "malformed")
        return JSONResponse({"status": "ok"}, status_code=200)

    # 5. Apply
    if forwarder is not None:
        try:
            forwarded = forwarder.forward(tenant, event)
        except TransientUpstreamError:
            _log_webhook(shop, topic, event_id(event), "forward_failed")
            raise
        status = "forwarded" if forwarded else "acknowledged"
    else:
        try:
            status = reconciler.apply(tenant.id, event).outcome.value
        except PersistenceError:
            _log_webhook(shop, topic, event_id(event), "persistence_failed")
            raise

    _log_webhook(shop, topic, event_id(event), status)
    logger.debug("Webhook processed in %.1fms", (time.monotonic() - start) * 1000)
    return JSONResponse({"status": "ok"}, status_code=200)
