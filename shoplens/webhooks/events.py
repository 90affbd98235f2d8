"""Event normalization: topic label + untyped payload -> typed event.

The receiver never reads payload fields directly. Every delivery goes
through ``normalize()``, which returns exactly one of the closed event
variants below or raises ValidationError(MALFORMED_PAYLOAD).

Money arrives as decimal strings ("79.99"), JSON numbers or integers and
is always parsed into ``Decimal``; binary floats never reach an aggregate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

from shoplens.errors import Reason, ValidationError

logger = logging.getLogger(__name__)

# Identity fields longer than this are truncated
_MAX_FIELD_LENGTH = 255

# Amounts must be below 10**12 and carry at most 8 significant fractional digits
_MAX_AMOUNT_DIGITS = 12
_MAX_AMOUNT_SCALE = 8


class Topic(str, Enum):
    """Webhook topics the pipeline understands."""

    ORDER_CREATED = "orders/create"
    CUSTOMER_CREATED = "customers/create"
    CHECKOUT_CREATED = "checkouts/create"
    OTHER = "other"

    @classmethod
    def parse(cls, label: str | None) -> Topic:
        label = (label or "").strip().lower()
        for topic in cls:
            if topic is not cls.OTHER and topic.value == label:
                return topic
        return cls.OTHER


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderCreated:
    external_id: str
    total_price: Decimal
    created_at: datetime | None = None
    customer_external_id: str | None = None
    customer_email: str | None = None
    customer_first_name: str | None = None
    customer_last_name: str | None = None


@dataclass(frozen=True)
class CustomerCreated:
    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@dataclass(frozen=True)
class CheckoutCreated:
    """Informational only; acknowledged, never persisted."""

    external_id: str


@dataclass(frozen=True)
class Unrecognized:
    topic: str


Event = Union[OrderCreated, CustomerCreated, CheckoutCreated, Unrecognized]


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------


def _malformed(detail: str) -> ValidationError:
    return ValidationError(Reason.MALFORMED_PAYLOAD, detail)


def decode_payload(body: bytes) -> Any:
    """Decode a JSON body, keeping non-integer numbers as Decimal."""
    try:
        return json.loads(body, parse_float=Decimal)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(Reason.INVALID_JSON, str(e)) from e


def parse_money(value: Any, field: str = "amount") -> Decimal:
    """Parse a non-negative monetary amount with fixed-point semantics."""
    if isinstance(value, bool) or value is None:
        raise _malformed(f"{field} is required and must be numeric")
    if isinstance(value, float):
        # repr() is the shortest round-trip form: 79.99 -> "79.99"
        value = repr(value)
    if isinstance(value, str):
        value = value.strip()
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise _malformed(f"{field} is not numeric: {value!r}") from e
    if not amount.is_finite():
        raise _malformed(f"{field} is not finite")
    if amount < 0:
        raise _malformed(f"{field} is negative")
    if amount.adjusted() >= _MAX_AMOUNT_DIGITS:
        raise _malformed(f"{field} is out of range")
    quantized = amount.quantize(Decimal(1).scaleb(-_MAX_AMOUNT_SCALE))
    if quantized != amount:
        raise _malformed(f"{field} has too many decimal places")
    # Trailing zeros past the scale carry no value
    return amount if amount.as_tuple().exponent >= -_MAX_AMOUNT_SCALE else quantized


def parse_external_id(value: Any, field: str = "id") -> str:
    """Platform ids arrive as integers or strings; stored as strings."""
    if isinstance(value, bool) or value is None:
        raise _malformed(f"{field} is required")
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise _malformed(f"{field} must be an integer or string")
        value = int(value)
    if isinstance(value, (int, str)):
        ext = str(value).strip()
        if ext:
            return ext
    raise _malformed(f"{field} must be a non-empty integer or string")


def parse_optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list, bool)):
        raise _malformed(f"{field} must be a string")
    text = str(value).strip()
    return text[:_MAX_FIELD_LENGTH] or None


def parse_timestamp(value: Any, field: str = "created_at") -> datetime | None:
    """ISO-8601 timestamp normalized to UTC; naive values are read as UTC."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise _malformed(f"{field} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as e:
        raise _malformed(f"{field} is not ISO-8601: {value!r}") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_object(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise _malformed("payload must be a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Per-topic extractors
# ---------------------------------------------------------------------------


def _order_created(payload: dict[str, Any]) -> OrderCreated:
    customer = payload.get("customer")
    if customer is not None and not isinstance(customer, dict):
        raise _malformed("customer must be an object")
    customer = customer or {}

    customer_external_id = None
    if customer.get("id") is not None:
        customer_external_id = parse_external_id(customer["id"], "customer.id")

    return OrderCreated(
        external_id=parse_external_id(payload.get("id")),
        total_price=parse_money(payload.get("total_price"), "total_price"),
        created_at=parse_timestamp(payload.get("created_at")),
        customer_external_id=customer_external_id,
        customer_email=parse_optional_text(
            customer.get("email") or payload.get("email"), "customer.email"
        ),
        customer_first_name=parse_optional_text(customer.get("first_name"), "customer.first_name"),
        customer_last_name=parse_optional_text(customer.get("last_name"), "customer.last_name"),
    )


def _customer_created(payload: dict[str, Any]) -> CustomerCreated:
    return CustomerCreated(
        external_id=parse_external_id(payload.get("id")),
        email=parse_optional_text(payload.get("email"), "email"),
        first_name=parse_optional_text(payload.get("first_name"), "first_name"),
        last_name=parse_optional_text(payload.get("last_name"), "last_name"),
    )


def _checkout_created(payload: dict[str, Any]) -> CheckoutCreated:
    ext = payload.get("id")
    if ext is None:
        ext = payload.get("token")
    return CheckoutCreated(external_id=parse_external_id(ext))


def normalize(topic_label: str | None, payload: Any) -> Event:
    """Classify a delivery by topic and extract its typed event.

    Args:
        topic_label: Value of the topic header, e.g. "orders/create"
        payload: Decoded JSON body

    Returns:
        One of OrderCreated, CustomerCreated, CheckoutCreated, Unrecognized

    Raises:
        ValidationError(MALFORMED_PAYLOAD) when a recognized topic lacks a
        required field or carries a non-numeric amount
    """
    topic = Topic.parse(topic_label)
    if topic is Topic.ORDER_CREATED:
        return _order_created(_require_object(payload))
    if topic is Topic.CUSTOMER_CREATED:
        return _customer_created(_require_object(payload))
    if topic is Topic.CHECKOUT_CREATED:
        return _checkout_created(_require_object(payload))
    return Unrecognized(topic=(topic_label or "").strip())


def event_kind(event: Event) -> str:
    """Short label for logs and audit lines."""
    if isinstance(event, OrderCreated):
        return "order"
    if isinstance(event, CustomerCreated):
        return "customer"
    if isinstance(event, CheckoutCreated):
        return "checkout"
    return "unrecognized"


def event_id(event: Event) -> str:
    return "" if isinstance(event, Unrecognized) else event.external_id
