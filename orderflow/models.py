"""
Order aggregate and webhook records. The Order owns its items, fulfillments, refunds
and post-purchase sub-entities; it is persisted and locked as one unit.
"""
import fnmatch
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from orderflow.errors import NotFound

CENT = Decimal("0.01")

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "completed", "cancelled"]
PaymentStatus = Literal["pending", "authorized", "paid", "partially_refunded", "refunded", "failed"]
FulfillmentStatus = Literal["unfulfilled", "partial", "fulfilled"]


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    sku: str | None = None
    quantity: int = Field(ge=0)
    unit_price: Decimal
    fulfilled_quantity: int = 0
    returned_quantity: int = 0

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class Fulfillment(BaseModel):
    id: str = Field(default_factory=new_id)
    status: Literal["created", "shipped", "delivered", "cancelled"] = "created"
    items: dict[str, int]  # order_item_id -> quantity
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None


class RefundLine(BaseModel):
    order_item_id: str
    quantity: int = Field(ge=0)
    amount: Decimal


class Refund(BaseModel):
    id: str = Field(default_factory=new_id)
    amount: Decimal
    reason: str | None = None
    note: str | None = None
    status: Literal["pending", "processed", "failed"] = "pending"
    items: list[RefundLine] = Field(default_factory=list)
    source: str | None = None  # e.g. "return:<id>", "claim:<id>"
    gateway_reference: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ReturnItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_item_id: str
    quantity: int = Field(gt=0)
    received_quantity: int = 0
    reason: str | None = None
    note: str | None = None


class Return(BaseModel):
    id: str = Field(default_factory=new_id)
    status: Literal["requested", "received", "completed", "cancelled"] = "requested"
    items: list[ReturnItem]
    note: str | None = None
    refund_amount: Decimal | None = None
    refund_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    received_at: datetime | None = None
    completed_at: datetime | None = None


class ClaimItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_item_id: str
    quantity: int = Field(gt=0)
    reason: str
    note: str | None = None


class Claim(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["refund", "replace"]
    status: Literal["created", "processing", "completed", "cancelled"] = "created"
    items: list[ClaimItem]
    refund_amount: Decimal | None = None
    refund_id: str | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExchangeItem(BaseModel):
    """An ordered item being exchanged out."""

    order_item_id: str
    quantity: int = Field(gt=0)


class NewLine(BaseModel):
    """A line being added to the order (exchange in-item or edit addition)."""

    title: str
    sku: str | None = None
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class Exchange(BaseModel):
    id: str = Field(default_factory=new_id)
    status: Literal["pending", "completed", "cancelled"] = "pending"
    payment_status: Literal["not_paid", "paid", "refunded"] = "not_paid"
    difference_amount: Decimal  # positive: customer owes more, negative: refund due
    return_items: list[ExchangeItem]
    new_items: list[NewLine]
    note: str | None = None
    refund_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderEditChange(BaseModel):
    action: Literal["add_item", "update_quantity", "remove_item"]
    order_item_id: str | None = None
    title: str | None = None
    sku: str | None = None
    quantity: int | None = Field(default=None, ge=0)
    unit_price: Decimal | None = Field(default=None, ge=0)


class OrderEdit(BaseModel):
    id: str = Field(default_factory=new_id)
    status: Literal["created", "requested", "confirmed", "declined", "cancelled"] = "created"
    changes: list[OrderEditChange]
    difference_amount: Decimal
    created_by: str | None = None
    internal_note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    requested_at: datetime | None = None
    confirmed_at: datetime | None = None
    declined_at: datetime | None = None


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    store_id: str
    number: str
    currency: str = "USD"
    email: str | None = None
    shipping_address: dict[str, Any] = Field(default_factory=dict)

    subtotal: Decimal = Decimal("0.00")
    discount_total: Decimal = Decimal("0.00")
    shipping_total: Decimal = Decimal("0.00")
    tax_total: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")

    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    fulfillment_status: FulfillmentStatus = "unfulfilled"

    items: list[OrderItem] = Field(default_factory=list)
    fulfillments: list[Fulfillment] = Field(default_factory=list)
    refunds: list[Refund] = Field(default_factory=list)
    returns: list[Return] = Field(default_factory=list)
    claims: list[Claim] = Field(default_factory=list)
    exchanges: list[Exchange] = Field(default_factory=list)
    edits: list[OrderEdit] = Field(default_factory=list)

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    def item(self, order_item_id: str) -> OrderItem:
        for item in self.items:
            if item.id == order_item_id:
                return item
        raise NotFound("order_item", order_item_id)

    def find(self, collection: str, entity_id: str):
        for entity in getattr(self, collection):
            if entity.id == entity_id:
                return entity
        raise NotFound(collection.rstrip("s"), entity_id)

    def summary(self) -> dict[str, Any]:
        """Common webhook payload fields for order events."""
        return {
            "id": self.id,
            "orderNumber": self.number,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "fulfillmentStatus": self.fulfillment_status,
            "grandTotal": str(self.total),
            "currency": self.currency,
        }


class Webhook(BaseModel):
    id: str = Field(default_factory=new_id)
    store_id: str
    name: str | None = None
    url: str
    secret: str | None = Field(default=None, repr=False)
    events: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    retry_count: int = 0
    last_triggered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def subscribes_to(self, event: str) -> bool:
        """Exact names, "*" and family patterns such as "product.*" all match."""
        return any(fnmatch.fnmatchcase(event, pattern) for pattern in self.events)


class WebhookLog(BaseModel):
    """One delivery attempt. Append-only."""

    id: str = Field(default_factory=new_id)
    webhook_id: str
    delivery_id: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: Literal["success", "failed"]
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    attempts: int = 1
    exhausted: bool = False  # last allowed attempt failed; moved to dead letters
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)
