"""
Quantity ledger: pure reads over an order and the sub-entities created against it.
Every workflow calls these before mutating, while holding the order lock.
"""
from decimal import Decimal

from orderflow.errors import InsufficientQuantity
from orderflow.models import Order, OrderItem, money

OPEN_RETURN_STATES = ("requested", "received")


def remaining_to_fulfill(item: OrderItem) -> int:
    return item.quantity - item.fulfilled_quantity


def remaining_to_return(item: OrderItem) -> int:
    return item.quantity - item.returned_quantity


def pending_return_quantity(order: Order, order_item_id: str) -> int:
    """Quantity already requested by open returns and exchanges, not yet counted in returned_quantity."""
    total = 0
    for ret in order.returns:
        if ret.status not in OPEN_RETURN_STATES:
            continue
        total += sum(ri.quantity for ri in ret.items if ri.order_item_id == order_item_id)
    for exchange in order.exchanges:
        if exchange.status != "pending":
            continue
        total += sum(ei.quantity for ei in exchange.return_items if ei.order_item_id == order_item_id)
    return total


def remaining_returnable(order: Order, item: OrderItem) -> int:
    """remaining_to_return less what open returns/exchanges have already reserved."""
    return remaining_to_return(item) - pending_return_quantity(order, item.id)


def remaining_to_claim(order: Order, item: OrderItem) -> int:
    claimed = 0
    for claim in order.claims:
        if claim.status == "cancelled":
            continue
        claimed += sum(ci.quantity for ci in claim.items if ci.order_item_id == item.id)
    return item.quantity - item.returned_quantity - claimed


def refunded_amount(order: Order) -> Decimal:
    return money(sum((r.amount for r in order.refunds if r.status != "failed"), Decimal("0")))


def remaining_refundable(order: Order) -> Decimal:
    return money(order.total - refunded_amount(order))


def fulfillment_status(order: Order) -> str:
    ordered = sum(item.quantity for item in order.items)
    fulfilled = sum(item.fulfilled_quantity for item in order.items)
    if fulfilled == 0:
        return "unfulfilled"
    if fulfilled >= ordered:
        return "fulfilled"
    return "partial"


def require_fulfillable(item: OrderItem, quantity: int) -> None:
    remaining = remaining_to_fulfill(item)
    if quantity > remaining:
        raise InsufficientQuantity(quantity, remaining, item.id, what="fulfillable")


def require_refundable(order: Order, amount: Decimal) -> None:
    remaining = remaining_refundable(order)
    if amount > remaining:
        raise InsufficientQuantity(amount, remaining, what="refundable")


def item_snapshot(order: Order) -> list[dict]:
    """Read-only view exposed to collaborators."""
    return [
        {
            "orderItemId": item.id,
            "quantity": item.quantity,
            "fulfilledQuantity": item.fulfilled_quantity,
            "returnedQuantity": item.returned_quantity,
            "remainingToFulfill": remaining_to_fulfill(item),
            "remainingToReturn": remaining_to_return(item),
            "remainingReturnable": remaining_returnable(order, item),
            "remainingClaimable": remaining_to_claim(order, item),
        }
        for item in order.items
    ]
