from decimal import Decimal

import pytest

from _helper import paid_order, recorded_events
from orderflow.errors import InsufficientQuantity, InvalidTransition, OrderNotEditable


async def test_only_received_quantity_is_returned(engine):
    order = await paid_order(engine, ("Boots", 5, "10.00"))
    item_id = order.items[0].id
    events = recorded_events(engine, "return.completed")

    ret = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    assert ret.status == "requested"
    ret = await engine.workflows.receive_return(order.id, ret.id, {ret.items[0].id: 1})
    assert ret.status == "received"
    assert ret.received_at is not None
    ret = await engine.workflows.complete_return(order.id, ret.id, refund_amount="10.00")
    assert ret.status == "completed"

    order = await engine.orders.get_order(order.id)
    assert order.items[0].returned_quantity == 1
    assert len(order.refunds) == 1
    assert order.refunds[0].amount == Decimal("10.00")
    assert order.refunds[0].source == f"return:{ret.id}"
    assert ret.refund_id == order.refunds[0].id
    assert len(events) == 1
    assert events[0].payload["items"] == [{"orderItemId": item_id, "quantity": 1}]


async def test_receipt_keyed_by_order_item(engine):
    order = await paid_order(engine, ("Boots", 5, "10.00"))
    item_id = order.items[0].id
    ret = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    ret = await engine.workflows.receive_return(order.id, ret.id, {item_id: 2})
    assert ret.items[0].received_quantity == 2


async def test_cannot_receive_more_than_requested(engine):
    order = await paid_order(engine, ("Boots", 5, "10.00"))
    item_id = order.items[0].id
    ret = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    with pytest.raises(InsufficientQuantity):
        await engine.workflows.receive_return(order.id, ret.id, {ret.items[0].id: 3})


async def test_open_returns_reserve_quantity(engine):
    order = await paid_order(engine, ("Boots", 3, "10.00"))
    item_id = order.items[0].id
    first = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    with pytest.raises(InsufficientQuantity) as exc:
        await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    assert exc.value.remaining == 1

    await engine.workflows.cancel_return(order.id, first.id)
    await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 3}])


async def test_return_without_refund(engine):
    events = recorded_events(engine, "payment.refunded")
    order = await paid_order(engine, ("Boots", 2, "10.00"))
    item_id = order.items[0].id
    ret = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 2}])
    await engine.workflows.receive_return(order.id, ret.id, {item_id: 2})
    await engine.workflows.complete_return(order.id, ret.id)
    order = await engine.orders.get_order(order.id)
    assert order.items[0].returned_quantity == 2
    assert order.refunds == []
    assert events == []


async def test_return_refund_cannot_exceed_balance(engine):
    order = await paid_order(engine, ("Boots", 2, "10.00"))
    item_id = order.items[0].id
    ret = await engine.workflows.request_return(order.id, [{"order_item_id": item_id, "quantity": 1}])
    await engine.workflows.receive_return(order.id, ret.id, {item_id: 1})
    with pytest.raises(InsufficientQuantity):
        await engine.workflows.complete_return(order.id, ret.id, refund_amount="25.00")
    order = await engine.orders.get_order(order.id)
    assert order.items[0].returned_quantity == 0
    assert order.returns[0].status == "received"


async def test_return_must_be_received_first(engine):
    order = await paid_order(engine)
    ret = await engine.workflows.request_return(order.id, [{"order_item_id": order.items[0].id, "quantity": 1}])
    with pytest.raises(InvalidTransition):
        await engine.workflows.complete_return(order.id, ret.id)


async def test_cancelled_order_rejects_returns(engine):
    order = await paid_order(engine)
    await engine.orders.cancel(order.id)
    with pytest.raises(OrderNotEditable):
        await engine.workflows.request_return(order.id, [{"order_item_id": order.items[0].id, "quantity": 1}])
