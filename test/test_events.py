import logging

from orderflow.events import Event, EventBus, is_external_event


async def test_failing_subscriber_does_not_reach_publisher(caplog):
    bus = EventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("subscriber down")

    async def record(event):
        seen.append(event.name)

    bus.subscribe("*", broken)
    bus.subscribe("order.*", record)
    with caplog.at_level(logging.ERROR, logger="orderflow.events"):
        await bus.publish(Event(name="order.updated", store_id="s", payload={}))
    assert seen == ["order.updated"]
    assert "subscriber down" in caplog.text


async def test_patterns_filter_subscribers():
    bus = EventBus()
    seen = []

    async def record(event):
        seen.append(event.name)

    bus.subscribe("payment.*", record)
    await bus.publish_all(
        [Event(name=name, store_id="s", payload={}) for name in ("order.created", "payment.refunded")]
    )
    assert seen == ["payment.refunded"]


def test_external_events():
    assert is_external_event("product.updated")
    assert is_external_event("inventory.low")
    assert not is_external_event("order.cancelled")
    assert not is_external_event("test.ping")
