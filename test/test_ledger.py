from decimal import Decimal

import pytest

from orderflow.errors import InsufficientQuantity
from orderflow.ledger import (
    fulfillment_status,
    item_snapshot,
    remaining_refundable,
    remaining_returnable,
    remaining_to_claim,
    remaining_to_fulfill,
    require_fulfillable,
    require_refundable,
)
from orderflow.models import Claim, ClaimItem, Order, OrderItem, Refund, Return, ReturnItem


def make_order(quantity: int = 5, total: str = "100.00") -> Order:
    item = OrderItem(title="Mug", quantity=quantity, unit_price=Decimal("20.00"))
    return Order(store_id="s", number="ORD-1", items=[item], total=Decimal(total))


def test_remaining_to_fulfill_counts_down():
    order = make_order()
    item = order.items[0]
    item.fulfilled_quantity = 2
    assert remaining_to_fulfill(item) == 3
    require_fulfillable(item, 3)
    with pytest.raises(InsufficientQuantity) as exc:
        require_fulfillable(item, 4)
    assert exc.value.remaining == 3
    assert exc.value.requested == 4


@pytest.mark.parametrize("fulfilled,expected", [(0, "unfulfilled"), (2, "partial"), (5, "fulfilled")])
def test_fulfillment_status(fulfilled, expected):
    order = make_order()
    order.items[0].fulfilled_quantity = fulfilled
    assert fulfillment_status(order) == expected


def test_failed_refunds_do_not_consume_balance():
    order = make_order()
    order.refunds = [
        Refund(amount=Decimal("30.00"), status="processed"),
        Refund(amount=Decimal("50.00"), status="failed"),
    ]
    assert remaining_refundable(order) == Decimal("70.00")
    with pytest.raises(InsufficientQuantity):
        require_refundable(order, Decimal("70.01"))


def test_open_returns_reserve_quantity():
    order = make_order()
    item = order.items[0]
    item.returned_quantity = 1
    order.returns = [
        Return(items=[ReturnItem(order_item_id=item.id, quantity=2)]),
        Return(items=[ReturnItem(order_item_id=item.id, quantity=1)], status="cancelled"),
    ]
    assert remaining_returnable(order, item) == 2


def test_cancelled_claims_release_quantity():
    order = make_order(quantity=3)
    item = order.items[0]
    order.claims = [
        Claim(type="replace", items=[ClaimItem(order_item_id=item.id, quantity=1, reason="damaged")]),
        Claim(type="refund", status="cancelled", items=[ClaimItem(order_item_id=item.id, quantity=2, reason="missing")]),
    ]
    assert remaining_to_claim(order, item) == 2


def test_item_snapshot_uses_wire_names():
    order = make_order()
    order.items[0].fulfilled_quantity = 5
    (snapshot,) = item_snapshot(order)
    assert snapshot["remainingToFulfill"] == 0
    assert snapshot["remainingToReturn"] == 5
    assert snapshot["orderItemId"] == order.items[0].id
