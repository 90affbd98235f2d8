"""Internal ingestion API: target of the forwarding topology.

Bodies are flat camelCase objects. Orders and customers go through the
same reconciliation engine as direct webhook ingestion, so a forwarded
redelivery is absorbed exactly like a direct one.

Responses: 201 when a row was created, 200 for duplicates and updates.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from shoplens.api.deps import get_reconciler, get_store, require_tenant
from shoplens.insights import money
from shoplens.storage import Store, Tenant
from shoplens.webhooks.events import (
    CustomerCreated,
    OrderCreated,
    parse_external_id,
    parse_money,
    parse_optional_text,
    parse_timestamp,
)
from shoplens.webhooks.reconcile import Outcome, Reconciler

router = APIRouter(prefix="/api/data", tags=["ingest"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CustomerIn(_CamelModel):
    external_id: str | int = Field(alias="externalId")
    email: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")


class OrderIn(_CamelModel):
    external_id: str | int = Field(alias="externalId")
    total_price: str | int | float = Field(alias="totalPrice")
    created_at: str | None = Field(default=None, alias="createdAt")
    customer_external_id: str | int | None = Field(default=None, alias="customerExternalId")
    customer_email: str | None = Field(default=None, alias="customerEmail")
    customer_first_name: str | None = Field(default=None, alias="customerFirstName")
    customer_last_name: str | None = Field(default=None, alias="customerLastName")


class ProductIn(_CamelModel):
    external_id: str | int = Field(alias="externalId")
    title: str = Field(min_length=1)
    sku: str | None = None
    price: str | int | float


def _status_code(outcome: Outcome) -> int:
    return 201 if outcome is Outcome.CREATED else 200


@router.post("/customers")
def ingest_customer(
    body: CustomerIn,
    tenant: Tenant = Depends(require_tenant),
    reconciler: Reconciler = Depends(get_reconciler),
) -> JSONResponse:
    event = CustomerCreated(
        external_id=parse_external_id(body.external_id, "externalId"),
        email=parse_optional_text(body.email, "email"),
        first_name=parse_optional_text(body.first_name, "firstName"),
        last_name=parse_optional_text(body.last_name, "lastName"),
    )
    result = reconciler.apply(tenant.id, event)
    return JSONResponse(
        {"status": result.outcome.value, "customerId": result.customer_id},
        status_code=_status_code(result.outcome),
    )


@router.post("/orders")
def ingest_order(
    body: OrderIn,
    tenant: Tenant = Depends(require_tenant),
    reconciler: Reconciler = Depends(get_reconciler),
) -> JSONResponse:
    customer_external_id = None
    if body.customer_external_id is not None:
        customer_external_id = parse_external_id(body.customer_external_id, "customerExternalId")
    event = OrderCreated(
        external_id=parse_external_id(body.external_id, "externalId"),
        total_price=parse_money(body.total_price, "totalPrice"),
        created_at=parse_timestamp(body.created_at, "createdAt"),
        customer_external_id=customer_external_id,
        customer_email=parse_optional_text(body.customer_email, "customerEmail"),
        customer_first_name=parse_optional_text(body.customer_first_name, "customerFirstName"),
        customer_last_name=parse_optional_text(body.customer_last_name, "customerLastName"),
    )
    result = reconciler.apply(tenant.id, event)
    return JSONResponse(
        {
            "status": result.outcome.value,
            "orderId": result.order_id,
            "customerId": result.customer_id,
        },
        status_code=_status_code(result.outcome),
    )


@router.post("/products", status_code=201)
def ingest_product(
    body: ProductIn,
    tenant: Tenant = Depends(require_tenant),
    store: Store = Depends(get_store),
):
    """Upsert a catalog product by external id."""
    with store.transaction() as tx:
        product = tx.upsert_product(
            tenant.id,
            parse_external_id(body.external_id, "externalId"),
            title=body.title.strip(),
            sku=parse_optional_text(body.sku, "sku"),
            price=parse_money(body.price, "price"),
        )
    return {
        "id": product.id,
        "externalId": product.external_id,
        "title": product.title,
        "sku": product.sku,
        "price": money(product.price),
    }
