"""Event forwarding: receiver -> internal reconciliation API.

Used when ingestion runs decoupled from the public receiver
(``ingest_mode = "forward"``). The receiver validates the delivery,
normalizes it and posts the event to ``/api/data/*`` with the tenant's
credential.

Contract:
- Bounded retries via RetryPolicy (3 attempts, short increasing delay,
  each attempt time-bounded)
- Exhausted retries or a non-retryable rejection raise
  TransientUpstreamError; the receiver fails the delivery so the platform
  redelivers later. Duplicates are absorbed downstream by reconciliation.
- Checkout and unrecognized events are acknowledged without forwarding
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from shoplens.errors import TransientUpstreamError
from shoplens.retry import RetryPolicy
from shoplens.storage import Tenant
from shoplens.webhooks.events import CustomerCreated, Event, OrderCreated

logger = logging.getLogger(__name__)


def ingest_request(event: Event) -> tuple[str, dict[str, Any]] | None:
    """Map an event to its internal endpoint and body, or None if not forwarded."""
    if isinstance(event, OrderCreated):
        return "/api/data/orders", {
            "externalId": event.external_id,
            "totalPrice": str(event.total_price),
            "createdAt": event.created_at.isoformat() if event.created_at else None,
            "customerExternalId": event.customer_external_id,
            "customerEmail": event.customer_email,
            "customerFirstName": event.customer_first_name,
            "customerLastName": event.customer_last_name,
        }
    if isinstance(event, CustomerCreated):
        return "/api/data/customers", {
            "externalId": event.external_id,
            "email": event.email,
            "firstName": event.first_name,
            "lastName": event.last_name,
        }
    return None


class Forwarder:
    """Posts normalized events to the internal ingestion API."""

    def __init__(self, client: httpx.Client, base_url: str, policy: RetryPolicy):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._policy = policy

    def forward(self, tenant: Tenant, event: Event) -> bool:
        """Forward one event. Returns False when the event is not forwardable."""
        request = ingest_request(event)
        if request is None:
            return False
        path, body = request
        url = f"{self._base_url}{path}"

        def _post() -> httpx.Response:
            response = self._client.post(
                url,
                json=body,
                headers={"x-api-key": tenant.api_key},
                timeout=self._policy.attempt_timeout,
            )
            response.raise_for_status()
            return response

        try:
            self._policy.call(_post, description=f"forward {path}")
        except httpx.HTTPError as e:
            logger.warning(
                "Forwarding failed for tenant=%s path=%s: %s",
                tenant.id,
                path,
                type(e).__name__,
            )
            raise TransientUpstreamError(f"forward {path} failed") from e
        return True
