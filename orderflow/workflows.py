"""
Post-purchase workflows: return, claim, exchange and order edit.

All four share one shape: open (validate against the ledger) -> advance through the kind's
state table -> run the kind's side effect for the target state -> emit. Kind-specific behaviour
lives in the opener and hook functions registered on each WorkflowDefinition; the lock,
validation-before-mutation and event publication are handled once in PostPurchaseWorkflows.
"""
import enum
import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable

from orderflow.errors import InsufficientQuantity, InvalidRequest, InvalidTransition, OrderNotEditable
from orderflow.events import (
    CLAIM_COMPLETED,
    EXCHANGE_COMPLETED,
    ORDER_EDIT_CONFIRMED,
    ORDER_UPDATED,
    RETURN_COMPLETED,
)
from orderflow.ledger import (
    fulfillment_status,
    pending_return_quantity,
    refunded_amount,
    remaining_returnable,
    remaining_to_claim,
    remaining_to_return,
    require_refundable,
)
from orderflow.lifecycle import Emitter, OrderLifecycle
from orderflow.models import (
    Claim,
    ClaimItem,
    Exchange,
    ExchangeItem,
    NewLine,
    Order,
    OrderEdit,
    OrderEditChange,
    OrderItem,
    RefundLine,
    Return,
    ReturnItem,
    money,
)
from orderflow.order_state import (
    CLAIM_TRANSITIONS,
    EXCHANGE_TRANSITIONS,
    ORDER_EDIT_TRANSITIONS,
    RETURN_TRANSITIONS,
    require_transition,
)
from orderflow.payments import TaxCalculator

logger = logging.getLogger(__name__)


class WorkflowKind(str, enum.Enum):
    RETURN = "return"
    CLAIM = "claim"
    EXCHANGE = "exchange"
    ORDER_EDIT = "order_edit"


Opener = Callable[[OrderLifecycle, Order, dict[str, Any]], Any]
Hook = Callable[[OrderLifecycle, Order, Any, Emitter, dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class WorkflowDefinition:
    kind: WorkflowKind
    collection: str  # attribute on Order holding the entities
    transitions: dict[str, list[str]]
    opener: Opener
    hooks: dict[str, Hook] = field(default_factory=dict)  # target status -> side effect
    timestamps: dict[str, str] = field(default_factory=dict)  # target status -> attribute to stamp


def _require_not_cancelled(order: Order) -> None:
    if order.status == "cancelled":
        raise OrderNotEditable(order.id, order.status)


def _check_returnable(order: Order, lines: list[tuple[str, int]]) -> None:
    requested: Counter[str] = Counter()
    for order_item_id, quantity in lines:
        requested[order.item(order_item_id).id] += quantity
    for order_item_id, quantity in requested.items():
        remaining = remaining_returnable(order, order.item(order_item_id))
        if quantity > remaining:
            raise InsufficientQuantity(quantity, remaining, order_item_id, what="returnable")


# Return


def open_return(ctx: OrderLifecycle, order: Order, params: dict[str, Any]) -> Return:
    _require_not_cancelled(order)
    items = [ReturnItem.model_validate(line) for line in params.get("items") or []]
    if not items:
        raise InvalidRequest("A return needs at least one item")
    _check_returnable(order, [(ri.order_item_id, ri.quantity) for ri in items])
    return Return(items=items, note=params.get("note"))


async def receive_return(ctx: OrderLifecycle, order: Order, ret: Return, emit: Emitter, params: dict[str, Any]) -> None:
    """Record warehouse receipt quantities (return_item_id -> quantity); never above what was requested."""
    receipts: dict[str, int] = params.get("received") or {}
    by_id = {ri.id: ri for ri in ret.items}
    by_order_item = {ri.order_item_id: ri for ri in ret.items}
    resolved = []
    for key, quantity in receipts.items():
        item = by_id.get(key) or by_order_item.get(key)
        if item is None:
            raise InvalidRequest(f"Item {key} is not part of return {ret.id}")
        quantity = int(quantity)
        if quantity < 0:
            raise InvalidRequest("Received quantity cannot be negative")
        if quantity > item.quantity:
            raise InsufficientQuantity(quantity, item.quantity, item.order_item_id, what="receivable")
        resolved.append((item, quantity))
    for item, quantity in resolved:
        item.received_quantity = quantity


async def complete_return(ctx: OrderLifecycle, order: Order, ret: Return, emit: Emitter, params: dict[str, Any]) -> None:
    """Count the received quantities as returned and refund the supplied amount."""
    received: Counter[str] = Counter()
    for ri in ret.items:
        received[ri.order_item_id] += ri.received_quantity
    for order_item_id, quantity in received.items():
        remaining = remaining_to_return(order.item(order_item_id))
        if quantity > remaining:
            raise InsufficientQuantity(quantity, remaining, order_item_id, what="returnable")

    refund_amount = params.get("refund_amount")
    refund = None
    if refund_amount is not None and money(refund_amount) > 0:
        lines = [
            RefundLine(
                order_item_id=oid,
                quantity=qty,
                amount=money(order.item(oid).unit_price * qty),
            )
            for oid, qty in received.items()
            if qty
        ]
        refund = await ctx._issue_refund(
            order, emit, money(refund_amount), reason="return", items=lines, source=f"return:{ret.id}"
        )
        ret.refund_amount = refund.amount
        ret.refund_id = refund.id

    for order_item_id, quantity in received.items():
        order.item(order_item_id).returned_quantity += quantity
    emit(
        RETURN_COMPLETED,
        orderId=order.id,
        orderNumber=order.number,
        returnId=ret.id,
        items=[{"orderItemId": oid, "quantity": qty} for oid, qty in received.items()],
        refundAmount=str(refund.amount) if refund else None,
        refundId=refund.id if refund else None,
    )


# Claim


def open_claim(ctx: OrderLifecycle, order: Order, params: dict[str, Any]) -> Claim:
    _require_not_cancelled(order)
    claim_type = params.get("type")
    if claim_type not in ("refund", "replace"):
        raise InvalidRequest("Claim type must be 'refund' or 'replace'")
    items = [ClaimItem.model_validate(line) for line in params.get("items") or []]
    if not items:
        raise InvalidRequest("A claim needs at least one item")
    requested: Counter[str] = Counter()
    for ci in items:
        requested[order.item(ci.order_item_id).id] += ci.quantity
    for order_item_id, quantity in requested.items():
        remaining = remaining_to_claim(order, order.item(order_item_id))
        if quantity > remaining:
            raise InsufficientQuantity(quantity, remaining, order_item_id, what="claimable")
    refund_amount = params.get("refund_amount")
    if refund_amount is not None:
        refund_amount = money(refund_amount)
        if claim_type == "refund":
            require_refundable(order, refund_amount)
    return Claim(type=claim_type, items=items, refund_amount=refund_amount, note=params.get("note"))


async def complete_claim(ctx: OrderLifecycle, order: Order, claim: Claim, emit: Emitter, params: dict[str, Any]) -> None:
    refund = None
    if claim.type == "refund":
        amount = params.get("refund_amount") or claim.refund_amount
        if amount is None:
            raise InvalidRequest("A refund claim needs a refund amount to complete")
        refund = await ctx._issue_refund(
            order,
            emit,
            money(amount),
            reason="claim",
            items=[
                RefundLine(order_item_id=ci.order_item_id, quantity=ci.quantity, amount=Decimal("0.00"))
                for ci in claim.items
            ],
            source=f"claim:{claim.id}",
        )
        claim.refund_amount = refund.amount
        claim.refund_id = refund.id
    emit(
        CLAIM_COMPLETED,
        orderId=order.id,
        orderNumber=order.number,
        claimId=claim.id,
        type=claim.type,
        items=[{"orderItemId": ci.order_item_id, "quantity": ci.quantity, "reason": ci.reason} for ci in claim.items],
        refundAmount=str(refund.amount) if refund else None,
    )


# Exchange


def _outgoing_value(order: Order, lines: list[ExchangeItem]) -> Decimal:
    return money(sum((order.item(line.order_item_id).unit_price * line.quantity for line in lines), Decimal("0")))


def open_exchange(ctx: OrderLifecycle, order: Order, params: dict[str, Any]) -> Exchange:
    _require_not_cancelled(order)
    return_items = [ExchangeItem.model_validate(line) for line in params.get("return_items") or []]
    new_items = [NewLine.model_validate(line) for line in params.get("new_items") or []]
    if not return_items or not new_items:
        raise InvalidRequest("An exchange needs items to return and items to send")
    _check_returnable(order, [(line.order_item_id, line.quantity) for line in return_items])
    incoming = money(sum((line.unit_price * line.quantity for line in new_items), Decimal("0")))
    return Exchange(
        difference_amount=money(incoming - _outgoing_value(order, return_items)),
        return_items=return_items,
        new_items=new_items,
        note=params.get("note"),
    )


async def complete_exchange(
    ctx: OrderLifecycle, order: Order, exchange: Exchange, emit: Emitter, params: dict[str, Any]
) -> None:
    if exchange.difference_amount > 0 and exchange.payment_status != "paid":
        raise InvalidTransition("exchange_payment", exchange.payment_status, "completed")
    outgoing: Counter[str] = Counter()
    for line in exchange.return_items:
        outgoing[line.order_item_id] += line.quantity
    for order_item_id, quantity in outgoing.items():
        remaining = remaining_to_return(order.item(order_item_id))
        if quantity > remaining:
            raise InsufficientQuantity(quantity, remaining, order_item_id, what="returnable")

    if exchange.difference_amount < 0:
        refund = await ctx._issue_refund(
            order, emit, -exchange.difference_amount, reason="exchange", source=f"exchange:{exchange.id}"
        )
        exchange.refund_id = refund.id
        if refund.status == "processed":
            exchange.payment_status = "refunded"
    elif exchange.difference_amount > 0:
        order.subtotal = money(order.subtotal + exchange.difference_amount)
        order.total = money(order.total + exchange.difference_amount)

    for order_item_id, quantity in outgoing.items():
        order.item(order_item_id).returned_quantity += quantity
    for line in exchange.new_items:
        order.items.append(
            OrderItem(title=line.title, sku=line.sku, quantity=line.quantity, unit_price=money(line.unit_price))
        )
    order.fulfillment_status = fulfillment_status(order)
    emit(
        EXCHANGE_COMPLETED,
        orderId=order.id,
        orderNumber=order.number,
        exchangeId=exchange.id,
        differenceAmount=str(exchange.difference_amount),
        paymentStatus=exchange.payment_status,
    )


# Order edit


def apply_edit_changes(order: Order, changes: list[OrderEditChange], tax: TaxCalculator) -> Decimal:
    """Apply changes to the order in place and return the change in total. Raises before any effect
    is visible to others; callers run this on a working copy."""
    tax_before = money(tax(order.shipping_address, order.items))
    delta = Decimal("0")
    for change in changes:
        if change.action == "add_item":
            if not change.title or not change.quantity or change.unit_price is None:
                raise InvalidRequest("add_item needs title, quantity and unit_price")
            item = OrderItem(
                title=change.title, sku=change.sku, quantity=change.quantity, unit_price=money(change.unit_price)
            )
            order.items.append(item)
            delta += item.line_total
            continue
        if not change.order_item_id:
            raise InvalidRequest(f"{change.action} needs order_item_id")
        item = order.item(change.order_item_id)
        new_quantity = 0 if change.action == "remove_item" else change.quantity
        if new_quantity is None:
            raise InvalidRequest("update_quantity needs quantity")
        floor = max(item.fulfilled_quantity, item.returned_quantity + pending_return_quantity(order, item.id))
        if new_quantity < floor:
            raise InsufficientQuantity(item.quantity - new_quantity, item.quantity - floor, item.id, what="removable")
        delta += item.unit_price * (new_quantity - item.quantity)
        item.quantity = new_quantity

    tax_delta = money(tax(order.shipping_address, order.items)) - tax_before
    difference = money(delta + tax_delta)
    order.subtotal = money(order.subtotal + delta)
    order.tax_total = money(order.tax_total + tax_delta)
    order.total = money(order.total + difference)
    if order.total < refunded_amount(order):
        raise InvalidRequest("Edit would reduce the order total below the amount already refunded")
    order.fulfillment_status = fulfillment_status(order)
    return difference


def open_order_edit(ctx: OrderLifecycle, order: Order, params: dict[str, Any]) -> OrderEdit:
    if order.status in ("cancelled", "completed"):
        raise OrderNotEditable(order.id, order.status)
    for edit in order.edits:
        if edit.status in ("created", "requested"):
            raise InvalidTransition("order_edit", edit.status, "created")
    changes = [OrderEditChange.model_validate(c) for c in params.get("changes") or []]
    if not changes:
        raise InvalidRequest("An order edit needs at least one change")
    preview = order.model_copy(deep=True)
    difference = apply_edit_changes(preview, changes, ctx.tax)
    return OrderEdit(
        changes=changes,
        difference_amount=difference,
        created_by=params.get("created_by"),
        internal_note=params.get("internal_note"),
    )


async def confirm_order_edit(
    ctx: OrderLifecycle, order: Order, edit: OrderEdit, emit: Emitter, params: dict[str, Any]
) -> None:
    """The only point where an edit touches the order; re-validated against the current ledger."""
    if order.status in ("cancelled", "completed"):
        raise OrderNotEditable(order.id, order.status)
    edit.difference_amount = apply_edit_changes(order, edit.changes, ctx.tax)
    emit(
        ORDER_EDIT_CONFIRMED,
        orderId=order.id,
        orderNumber=order.number,
        orderEditId=edit.id,
        differenceAmount=str(edit.difference_amount),
        total=str(order.total),
    )
    emit(ORDER_UPDATED, **order.summary(), event="edited", orderEditId=edit.id)


WORKFLOWS: dict[WorkflowKind, WorkflowDefinition] = {
    WorkflowKind.RETURN: WorkflowDefinition(
        kind=WorkflowKind.RETURN,
        collection="returns",
        transitions=RETURN_TRANSITIONS,
        opener=open_return,
        hooks={"received": receive_return, "completed": complete_return},
        timestamps={"received": "received_at", "completed": "completed_at"},
    ),
    WorkflowKind.CLAIM: WorkflowDefinition(
        kind=WorkflowKind.CLAIM,
        collection="claims",
        transitions=CLAIM_TRANSITIONS,
        opener=open_claim,
        hooks={"completed": complete_claim},
    ),
    WorkflowKind.EXCHANGE: WorkflowDefinition(
        kind=WorkflowKind.EXCHANGE,
        collection="exchanges",
        transitions=EXCHANGE_TRANSITIONS,
        opener=open_exchange,
        hooks={"completed": complete_exchange},
    ),
    WorkflowKind.ORDER_EDIT: WorkflowDefinition(
        kind=WorkflowKind.ORDER_EDIT,
        collection="edits",
        transitions=ORDER_EDIT_TRANSITIONS,
        opener=open_order_edit,
        hooks={"confirmed": confirm_order_edit},
        timestamps={"requested": "requested_at", "confirmed": "confirmed_at", "declined": "declined_at"},
    ),
}


class PostPurchaseWorkflows(OrderLifecycle):
    async def open(self, order_id: str, kind: WorkflowKind, **params: Any):
        definition = WORKFLOWS[kind]

        async def mutation(order: Order, emit: Emitter):
            entity = definition.opener(self, order, params)
            getattr(order, definition.collection).append(entity)
            self._transitioned(kind.value, entity.status)
            logger.info("Opened %s_id=%s on order_id=%s", kind.value, entity.id, order.id)
            return entity

        return await self._mutate(order_id, mutation)

    async def advance(self, order_id: str, kind: WorkflowKind, entity_id: str, target: str, **params: Any):
        definition = WORKFLOWS[kind]

        async def mutation(order: Order, emit: Emitter):
            entity = order.find(definition.collection, entity_id)
            previous = entity.status
            require_transition(kind.value, definition.transitions, previous, target)
            hook = definition.hooks.get(target)
            if hook is not None:
                await hook(self, order, entity, emit, params)
            now = self.clock()
            entity.status = target
            entity.updated_at = now
            stamp = definition.timestamps.get(target)
            if stamp:
                setattr(entity, stamp, now)
            self._transitioned(kind.value, target)
            logger.info("%s_id=%s on order_id=%s %s -> %s", kind.value, entity.id, order.id, previous, target)
            return entity

        return await self._mutate(order_id, mutation)

    async def list_entities(self, order_id: str, kind: WorkflowKind) -> list:
        order = await self.store.get_order(order_id)
        return list(getattr(order, WORKFLOWS[kind].collection))

    # Return

    async def request_return(self, order_id: str, items: list[dict], note: str | None = None) -> Return:
        return await self.open(order_id, WorkflowKind.RETURN, items=items, note=note)

    async def receive_return(self, order_id: str, return_id: str, received: dict[str, int]) -> Return:
        return await self.advance(order_id, WorkflowKind.RETURN, return_id, "received", received=received)

    async def complete_return(
        self, order_id: str, return_id: str, refund_amount: Decimal | str | None = None
    ) -> Return:
        return await self.advance(order_id, WorkflowKind.RETURN, return_id, "completed", refund_amount=refund_amount)

    async def cancel_return(self, order_id: str, return_id: str) -> Return:
        return await self.advance(order_id, WorkflowKind.RETURN, return_id, "cancelled")

    # Claim

    async def create_claim(
        self,
        order_id: str,
        type: str,
        items: list[dict],
        refund_amount: Decimal | str | None = None,
        note: str | None = None,
    ) -> Claim:
        return await self.open(order_id, WorkflowKind.CLAIM, type=type, items=items, refund_amount=refund_amount, note=note)

    async def update_claim_status(self, order_id: str, claim_id: str, status: str, **params: Any) -> Claim:
        return await self.advance(order_id, WorkflowKind.CLAIM, claim_id, status, **params)

    # Exchange

    async def create_exchange(
        self, order_id: str, return_items: list[dict], new_items: list[dict], note: str | None = None
    ) -> Exchange:
        return await self.open(
            order_id, WorkflowKind.EXCHANGE, return_items=return_items, new_items=new_items, note=note
        )

    async def mark_exchange_paid(self, order_id: str, exchange_id: str) -> Exchange:
        """Record that the customer settled a positive difference."""

        async def mutation(order: Order, emit: Emitter) -> Exchange:
            exchange = order.find("exchanges", exchange_id)
            if exchange.status != "pending":
                raise InvalidTransition("exchange", exchange.status, "paid")
            if exchange.payment_status != "not_paid" or exchange.difference_amount <= 0:
                raise InvalidTransition("exchange_payment", exchange.payment_status, "paid")
            exchange.payment_status = "paid"
            exchange.updated_at = self.clock()
            self._transitioned("exchange_payment", "paid")
            return exchange

        return await self._mutate(order_id, mutation)

    async def complete_exchange(self, order_id: str, exchange_id: str) -> Exchange:
        return await self.advance(order_id, WorkflowKind.EXCHANGE, exchange_id, "completed")

    async def cancel_exchange(self, order_id: str, exchange_id: str) -> Exchange:
        return await self.advance(order_id, WorkflowKind.EXCHANGE, exchange_id, "cancelled")

    # Order edit

    async def create_order_edit(
        self,
        order_id: str,
        changes: list[dict],
        created_by: str | None = None,
        internal_note: str | None = None,
    ) -> OrderEdit:
        return await self.open(
            order_id, WorkflowKind.ORDER_EDIT, changes=changes, created_by=created_by, internal_note=internal_note
        )

    async def request_order_edit(self, order_id: str, edit_id: str) -> OrderEdit:
        return await self.advance(order_id, WorkflowKind.ORDER_EDIT, edit_id, "requested")

    async def confirm_order_edit(self, order_id: str, edit_id: str) -> OrderEdit:
        return await self.advance(order_id, WorkflowKind.ORDER_EDIT, edit_id, "confirmed")

    async def decline_order_edit(self, order_id: str, edit_id: str) -> OrderEdit:
        return await self.advance(order_id, WorkflowKind.ORDER_EDIT, edit_id, "declined")

    async def cancel_order_edit(self, order_id: str, edit_id: str) -> OrderEdit:
        return await self.advance(order_id, WorkflowKind.ORDER_EDIT, edit_id, "cancelled")
