from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.engine import Engine
from orderflow.models import NewLine, OrderEditChange
from orderflow.routes.deps import dump, get_engine
from orderflow.workflows import WorkflowKind

router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderBody(BaseModel):
    store_id: str
    items: list[NewLine] = Field(..., min_length=1)
    currency: str = "USD"
    email: str | None = None
    shipping_address: dict = Field(default_factory=dict)
    shipping_total: Decimal = Field(default=Decimal("0"), ge=0)
    discount_total: Decimal = Field(default=Decimal("0"), ge=0)
    number: str | None = None


class StatusBody(BaseModel):
    status: Literal["pending", "processing", "shipped", "delivered", "completed", "cancelled"]
    note: str | None = None


class CancelBody(BaseModel):
    reason: str | None = None


class PaymentFailedBody(BaseModel):
    error: str | None = None


class ItemQuantity(BaseModel):
    order_item_id: str
    quantity: int = Field(..., gt=0)


class RefundItem(BaseModel):
    order_item_id: str
    quantity: int = Field(..., ge=0)
    amount: Decimal | None = Field(default=None, ge=0)


class RefundBody(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None
    note: str | None = None
    items: list[RefundItem] = Field(default_factory=list)


class FulfillmentBody(BaseModel):
    items: list[ItemQuantity] = Field(..., min_length=1)
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None


class ShipBody(BaseModel):
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None


class ReturnLine(ItemQuantity):
    reason: str | None = None
    note: str | None = None


class ReturnBody(BaseModel):
    items: list[ReturnLine] = Field(..., min_length=1)
    note: str | None = None


class ReceiveBody(BaseModel):
    received: dict[str, int] = Field(..., description="return item id (or order item id) -> quantity received")


class CompleteReturnBody(BaseModel):
    refund_amount: Decimal | None = Field(default=None, ge=0)


class ClaimLine(ItemQuantity):
    reason: str
    note: str | None = None


class ClaimBody(BaseModel):
    type: Literal["refund", "replace"]
    items: list[ClaimLine] = Field(..., min_length=1)
    refund_amount: Decimal | None = Field(default=None, gt=0)
    note: str | None = None


class ClaimStatusBody(BaseModel):
    status: Literal["processing", "completed", "cancelled"]
    refund_amount: Decimal | None = Field(default=None, gt=0)


class ExchangeBody(BaseModel):
    return_items: list[ItemQuantity] = Field(..., min_length=1)
    new_items: list[NewLine] = Field(..., min_length=1)
    note: str | None = None


class OrderEditBody(BaseModel):
    changes: list[OrderEditChange] = Field(..., min_length=1)
    created_by: str | None = None
    internal_note: str | None = None


def _lines(items: list[BaseModel]) -> list[dict]:
    return [item.model_dump() for item in items]


# Order


@router.post("")
async def create_order(body: CreateOrderBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    order = await engine.orders.create_order(
        body.store_id,
        body.items,
        currency=body.currency,
        email=body.email,
        shipping_address=body.shipping_address,
        shipping_total=body.shipping_total,
        discount_total=body.discount_total,
        number=body.number,
    )
    return JSONResponse(status_code=201, content=dump(order))


@router.get("/{order_id}")
async def get_order(order_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.orders.get_order(order_id)))


@router.get("/{order_id}/ledger")
async def get_ledger(order_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=await engine.orders.ledger(order_id))


@router.post("/{order_id}/status")
async def update_status(order_id: str, body: StatusBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    order = await engine.orders.update_status(order_id, body.status, note=body.note)
    return JSONResponse(content=dump(order))


@router.post("/{order_id}/cancel")
async def cancel_order(order_id: str, body: CancelBody | None = None, engine: Engine = Depends(get_engine)) -> JSONResponse:
    order = await engine.orders.cancel(order_id, reason=body.reason if body else None)
    return JSONResponse(content=dump(order))


@router.post("/{order_id}/pay")
async def mark_paid(order_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.orders.mark_paid(order_id)))


@router.post("/{order_id}/payment-failed")
async def mark_payment_failed(
    order_id: str, body: PaymentFailedBody | None = None, engine: Engine = Depends(get_engine)
) -> JSONResponse:
    order = await engine.orders.mark_payment_failed(order_id, error=body.error if body else None)
    return JSONResponse(content=dump(order))


@router.post("/{order_id}/refunds")
async def create_refund(order_id: str, body: RefundBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    refund = await engine.orders.create_refund(
        order_id, amount=body.amount, reason=body.reason, note=body.note, items=_lines(body.items)
    )
    return JSONResponse(status_code=201, content=dump(refund))


# Fulfillment


@router.get("/{order_id}/fulfillments")
async def list_fulfillments(order_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=[dump(f) for f in await engine.fulfillments.list_fulfillments(order_id)])


@router.post("/{order_id}/fulfillments")
async def create_fulfillment(order_id: str, body: FulfillmentBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    fulfillment = await engine.fulfillments.create_fulfillment(
        order_id,
        _lines(body.items),
        carrier=body.carrier,
        tracking_number=body.tracking_number,
        tracking_url=body.tracking_url,
    )
    return JSONResponse(status_code=201, content=dump(fulfillment))


@router.post("/{order_id}/fulfillments/{fulfillment_id}/ship")
async def ship_fulfillment(
    order_id: str, fulfillment_id: str, body: ShipBody | None = None, engine: Engine = Depends(get_engine)
) -> JSONResponse:
    body = body or ShipBody()
    fulfillment = await engine.fulfillments.ship_fulfillment(
        order_id,
        fulfillment_id,
        carrier=body.carrier,
        tracking_number=body.tracking_number,
        tracking_url=body.tracking_url,
    )
    return JSONResponse(content=dump(fulfillment))


@router.post("/{order_id}/fulfillments/{fulfillment_id}/deliver")
async def deliver_fulfillment(order_id: str, fulfillment_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.fulfillments.deliver_fulfillment(order_id, fulfillment_id)))


@router.post("/{order_id}/fulfillments/{fulfillment_id}/cancel")
async def cancel_fulfillment(order_id: str, fulfillment_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.fulfillments.cancel_fulfillment(order_id, fulfillment_id)))


# Returns


@router.post("/{order_id}/returns")
async def request_return(order_id: str, body: ReturnBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    ret = await engine.workflows.request_return(order_id, _lines(body.items), note=body.note)
    return JSONResponse(status_code=201, content=dump(ret))


@router.post("/{order_id}/returns/{return_id}/receive")
async def receive_return(
    order_id: str, return_id: str, body: ReceiveBody, engine: Engine = Depends(get_engine)
) -> JSONResponse:
    return JSONResponse(content=dump(await engine.workflows.receive_return(order_id, return_id, body.received)))


@router.post("/{order_id}/returns/{return_id}/complete")
async def complete_return(
    order_id: str, return_id: str, body: CompleteReturnBody | None = None, engine: Engine = Depends(get_engine)
) -> JSONResponse:
    ret = await engine.workflows.complete_return(order_id, return_id, refund_amount=body.refund_amount if body else None)
    return JSONResponse(content=dump(ret))


@router.post("/{order_id}/returns/{return_id}/cancel")
async def cancel_return(order_id: str, return_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.workflows.cancel_return(order_id, return_id)))


# Claims


@router.post("/{order_id}/claims")
async def create_claim(order_id: str, body: ClaimBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    claim = await engine.workflows.create_claim(
        order_id, body.type, _lines(body.items), refund_amount=body.refund_amount, note=body.note
    )
    return JSONResponse(status_code=201, content=dump(claim))


@router.post("/{order_id}/claims/{claim_id}/status")
async def update_claim_status(
    order_id: str, claim_id: str, body: ClaimStatusBody, engine: Engine = Depends(get_engine)
) -> JSONResponse:
    claim = await engine.workflows.update_claim_status(
        order_id, claim_id, body.status, refund_amount=body.refund_amount
    )
    return JSONResponse(content=dump(claim))


# Exchanges


@router.post("/{order_id}/exchanges")
async def create_exchange(order_id: str, body: ExchangeBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    exchange = await engine.workflows.create_exchange(
        order_id, _lines(body.return_items), _lines(body.new_items), note=body.note
    )
    return JSONResponse(status_code=201, content=dump(exchange))


@router.post("/{order_id}/exchanges/{exchange_id}/pay")
async def mark_exchange_paid(order_id: str, exchange_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.workflows.mark_exchange_paid(order_id, exchange_id)))


@router.post("/{order_id}/exchanges/{exchange_id}/complete")
async def complete_exchange(order_id: str, exchange_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.workflows.complete_exchange(order_id, exchange_id)))


@router.post("/{order_id}/exchanges/{exchange_id}/cancel")
async def cancel_exchange(order_id: str, exchange_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=dump(await engine.workflows.cancel_exchange(order_id, exchange_id)))


# Order edits

EDIT_ACTIONS = {
    "request": "request_order_edit",
    "confirm": "confirm_order_edit",
    "decline": "decline_order_edit",
    "cancel": "cancel_order_edit",
}


@router.post("/{order_id}/edits")
async def create_order_edit(order_id: str, body: OrderEditBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    edit = await engine.workflows.create_order_edit(
        order_id, _lines(body.changes), created_by=body.created_by, internal_note=body.internal_note
    )
    return JSONResponse(status_code=201, content=dump(edit))


@router.post("/{order_id}/edits/{edit_id}/{action}")
async def advance_order_edit(
    order_id: str,
    edit_id: str,
    action: Literal["request", "confirm", "decline", "cancel"],
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    edit = await getattr(engine.workflows, EDIT_ACTIONS[action])(order_id, edit_id)
    return JSONResponse(content=dump(edit))


# Listings

COLLECTIONS = {
    "returns": WorkflowKind.RETURN,
    "claims": WorkflowKind.CLAIM,
    "exchanges": WorkflowKind.EXCHANGE,
    "edits": WorkflowKind.ORDER_EDIT,
}


@router.get("/{order_id}/{collection}")
async def list_workflow_entities(
    order_id: str,
    collection: Literal["returns", "claims", "exchanges", "edits"],
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    entities = await engine.workflows.list_entities(order_id, COLLECTIONS[collection])
    return JSONResponse(content=[dump(e) for e in entities])
