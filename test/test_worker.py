import asyncio

import pytest
from fakeredis import FakeAsyncRedis

from _helper import STORE_ID, paid_order, place_order
from orderflow.errors import InsufficientQuantity
from orderflow.queue import (
    DELIVERY_PROCESSING_KEY,
    DELIVERY_QUEUE_KEY,
    DeliveryJob,
    MemoryDeliveryQueue,
    RedisDeliveryQueue,
)
from orderflow.worker import DeliveryWorker


@pytest.fixture
def settings(settings):
    # keep retries scheduled, not executed, while a test inspects the first round
    return settings.model_copy(update={"webhook_backoff_base_seconds": 60})


async def test_one_event_two_independent_deliveries(engine, receiver):
    receiver.unreachable.add("down.example")
    ok = await engine.webhooks.create(STORE_ID, "https://up.example/hook", ["order.cancelled"])
    down = await engine.webhooks.create(STORE_ID, "https://down.example/hook", ["order.cancelled"])
    order = await place_order(engine)
    await engine.worker.drain()  # order.created has no subscribers

    await engine.orders.cancel(order.id)
    assert await engine.worker.drain() == 2  # order.updated, order.cancelled

    (ok_log,) = await engine.webhooks.logs(ok.id)
    (down_log,) = await engine.webhooks.logs(down.id)
    assert ok_log.event == down_log.event == "order.cancelled"
    assert ok_log.status == "success"
    assert down_log.status == "failed"
    assert ok_log.delivery_id != down_log.delivery_id
    assert len(receiver.to("up.example")) == 1
    assert (await engine.webhooks.get(ok.id)).retry_count == 0
    assert (await engine.webhooks.get(down.id)).retry_count == 1


async def test_business_call_returns_before_delivery(engine, receiver):
    await engine.webhooks.create(STORE_ID, "https://up.example/hook", ["*"])
    await place_order(engine)
    assert receiver.requests == []
    assert await engine.queue.depth() == 1
    await engine.worker.drain()
    assert len(receiver.requests) == 1


async def test_external_events_fan_out(engine, receiver):
    await engine.webhooks.create(STORE_ID, "https://catalog.example/hook", ["product.*"])
    await engine.queue.push(DeliveryJob.fan_out(STORE_ID, "product.updated", {"sku": "A-1"}))
    await engine.worker.drain()
    assert receiver.requests[0].headers["X-Webhook-Event"] == "product.updated"


async def test_retry_for_missing_webhook_is_dropped(engine, receiver):
    job = DeliveryJob.fan_out(STORE_ID, "order.updated", {}).model_copy(update={"webhook_id": "missing", "attempts": 1})
    await engine.queue.push(job)
    assert await engine.worker.drain() == 1
    assert receiver.requests == []
    assert await engine.queue.dead_letters() == []


async def test_run_stops_on_shutdown(engine, receiver):
    await engine.webhooks.create(STORE_ID, "https://up.example/hook", ["order.created"])
    shutdown = asyncio.Event()
    engine.worker.poll_timeout = 0.05
    runner = asyncio.create_task(engine.worker.run(shutdown))

    await place_order(engine)
    for _ in range(100):
        if receiver.requests:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(runner, timeout=2)
    assert len(receiver.requests) == 1


class StuckDispatcher:
    """Never finishes a delivery."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.calls = 0

    async def dispatch(self, *args, **kwargs):
        self.calls += 1
        self.started.set()
        await asyncio.Event().wait()

    redeliver = dispatch


async def start_stuck_worker(queue):
    for n in range(3):
        await queue.push(DeliveryJob.fan_out(STORE_ID, "order.updated", {"n": n}))
    dispatcher = StuckDispatcher()
    worker = DeliveryWorker(queue, dispatcher, concurrency=1, poll_timeout=1, shutdown_grace=0.05)
    shutdown = asyncio.Event()
    runner = asyncio.create_task(worker.run(shutdown))
    await asyncio.wait_for(dispatcher.started.wait(), timeout=2)
    await asyncio.sleep(0.05)
    return dispatcher, shutdown, runner


async def test_busy_worker_leaves_backlog_in_redis():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushdb()
    dispatcher, shutdown, runner = await start_stuck_worker(RedisDeliveryQueue(client))

    assert dispatcher.calls == 1
    assert await client.llen(DELIVERY_QUEUE_KEY) == 2
    assert await client.llen(DELIVERY_PROCESSING_KEY) == 1

    shutdown.set()
    await asyncio.wait_for(runner, timeout=2)
    assert await client.llen(DELIVERY_QUEUE_KEY) == 3
    assert await client.llen(DELIVERY_PROCESSING_KEY) == 0
    await client.flushdb()
    await client.aclose()


async def test_shutdown_requeues_unfinished_jobs():
    queue = MemoryDeliveryQueue()
    dispatcher, shutdown, runner = await start_stuck_worker(queue)
    assert await queue.depth() == 2

    shutdown.set()
    await asyncio.wait_for(runner, timeout=2)
    assert dispatcher.calls == 1
    assert await queue.depth() == 3


async def test_concurrent_fulfillments_never_overcommit(engine):
    order = await paid_order(engine, ("Widget", 3, "10.00"))
    item_id = order.items[0].id

    results = await asyncio.gather(
        *(
            engine.fulfillments.create_fulfillment(order.id, [{"order_item_id": item_id, "quantity": 2}])
            for _ in range(3)
        ),
        return_exceptions=True,
    )
    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientQuantity)]
    assert len(succeeded) == 1
    assert len(rejected) == 2

    order = await engine.orders.get_order(order.id)
    assert order.items[0].fulfilled_quantity == 2
    assert len(order.fulfillments) == 1
