"""Idempotent reconciliation: applies normalized events to tenant tables.

The platform delivers every event at least once and redelivers on any
non-2xx or timeout. Redelivery of the same logical event must leave the
store exactly as the first successful application did.

Invariant maintained here:
    Customer.total_spend == sum(Order.total_price) over that customer's orders

Contract:
- OrderCreated: existing (tenant_id, external_id) -> duplicate, no writes.
  Otherwise find-or-create the customer, insert the order and increment
  spend, all in one transaction.
- A concurrent duplicate that loses the race on the orders uniqueness
  constraint rolls back its whole transaction (including any customer it
  created) and reports a duplicate, not a failure.
- CustomerCreated: create with zero spend, or overwrite only the supplied
  identity fields. Spend is never touched outside OrderCreated.
- Storage failures propagate as PersistenceError after rollback; the
  receiver answers 500 and upstream redelivery retries safely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from shoplens.errors import PersistenceError
from shoplens.storage import Store, StoreTransaction
from shoplens.webhooks.events import (
    CheckoutCreated,
    CustomerCreated,
    Event,
    OrderCreated,
    Unrecognized,
    event_id,
    event_kind,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """What applying an event did to the store."""

    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    ACKNOWLEDGED = "acknowledged"  # valid event with nothing to persist
    IGNORED = "ignored"  # unrecognized topic


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    order_id: int | None = None
    customer_id: int | None = None


class _LostOrderRace(Exception):
    """Raised inside the transaction to roll back a concurrent duplicate."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """Applies events for one store handle. Holds no per-request state."""

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = _utcnow):
        self._store = store
        self._clock = clock

    def apply(self, tenant_id: int, event: Event) -> ReconcileResult:
        if isinstance(event, OrderCreated):
            result = self._apply_order(tenant_id, event)
        elif isinstance(event, CustomerCreated):
            result = self._apply_customer(tenant_id, event)
        elif isinstance(event, CheckoutCreated):
            logger.info("Checkout started: tenant=%s checkout=%s", tenant_id, event.external_id)
            result = ReconcileResult(Outcome.ACKNOWLEDGED)
        elif isinstance(event, Unrecognized):
            result = ReconcileResult(Outcome.IGNORED)
        else:
            raise TypeError(f"unhandled event type: {type(event).__name__}")

        logger.info(
            "RECONCILE tenant=%s event=%s id=%s outcome=%s",
            tenant_id,
            event_kind(event),
            event_id(event),
            result.outcome.value,
        )
        return result

    # ── Orders ───────────────────────────────────────────────────────────

    def _apply_order(self, tenant_id: int, event: OrderCreated) -> ReconcileResult:
        try:
            with self._store.transaction() as tx:
                if tx.find_order_id(tenant_id, event.external_id) is not None:
                    return ReconcileResult(Outcome.DUPLICATE)

                customer_id = None
                if event.customer_external_id:
                    customer_id, _ = _find_or_create_customer(
                        tx,
                        tenant_id,
                        event.customer_external_id,
                        email=event.customer_email,
                        first_name=event.customer_first_name,
                        last_name=event.customer_last_name,
                        update_existing=False,
                    )

                order_id = tx.insert_order(
                    tenant_id,
                    event.external_id,
                    customer_id=customer_id,
                    total_price=event.total_price,
                    created_at=event.created_at or self._clock(),
                )
                if order_id is None:
                    raise _LostOrderRace()

                if customer_id is not None:
                    tx.increment_customer_spend(tenant_id, customer_id, event.total_price)
        except _LostOrderRace:
            logger.info(
                "Concurrent duplicate order absorbed: tenant=%s order=%s",
                tenant_id,
                event.external_id,
            )
            return ReconcileResult(Outcome.DUPLICATE)

        return ReconcileResult(Outcome.CREATED, order_id=order_id, customer_id=customer_id)

    # ── Customers ────────────────────────────────────────────────────────

    def _apply_customer(self, tenant_id: int, event: CustomerCreated) -> ReconcileResult:
        with self._store.transaction() as tx:
            customer_id, created = _find_or_create_customer(
                tx,
                tenant_id,
                event.external_id,
                email=event.email,
                first_name=event.first_name,
                last_name=event.last_name,
                update_existing=True,
            )
        outcome = Outcome.CREATED if created else Outcome.UPDATED
        return ReconcileResult(outcome, customer_id=customer_id)


def _find_or_create_customer(
    tx: StoreTransaction,
    tenant_id: int,
    external_id: str,
    *,
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    update_existing: bool,
) -> tuple[int, bool]:
    """Return ``(customer_id, created)``.

    A concurrent insert of the same customer is resolved by re-reading the
    winner's row.
    """
    existing = tx.find_customer(tenant_id, external_id)
    if existing is None:
        created = tx.insert_customer(
            tenant_id,
            external_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
        if created is not None:
            return created.id, True
        existing = tx.find_customer(tenant_id, external_id)
        if existing is None:
            raise PersistenceError(
                f"customer {external_id} neither insertable nor readable in tenant {tenant_id}"
            )

    if update_existing and any(v is not None for v in (email, first_name, last_name)):
        tx.update_customer_identity(
            tenant_id,
            existing.id,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
    return existing.id, False
