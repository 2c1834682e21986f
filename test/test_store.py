import asyncio
from decimal import Decimal

import httpx
import pytest

from orderflow.engine import build_engine
from orderflow.errors import NotFound, PersistenceConflict
from orderflow.models import NewLine, Order, OrderItem, Webhook, utcnow
from orderflow.store import MemoryStore


def order() -> Order:
    return Order(store_id="s", number="ORD-1", items=[OrderItem(title="Cup", quantity=1, unit_price=Decimal("4.00"))])


async def test_changes_commit_only_on_clean_exit():
    store = MemoryStore()
    o = order()
    await store.add_order(o)

    with pytest.raises(RuntimeError):
        async with store.lock_order(o.id) as working:
            working.status = "processing"
            raise RuntimeError("boom")
    assert (await store.get_order(o.id)).status == "pending"

    async with store.lock_order(o.id) as working:
        working.status = "processing"
    saved = await store.get_order(o.id)
    assert saved.status == "processing"
    assert saved.version == 1


async def test_lock_timeout_raises_conflict():
    store = MemoryStore(lock_timeout=0.05)
    o = order()
    await store.add_order(o)
    async with store.lock_order(o.id):
        with pytest.raises(PersistenceConflict):
            async with store.lock_order(o.id):
                pass


async def test_different_orders_do_not_block():
    store = MemoryStore(lock_timeout=0.05)
    a, b = order(), order()
    await store.add_order(a)
    await store.add_order(b)
    async with store.lock_order(a.id):
        async with store.lock_order(b.id) as working:
            assert working.id == b.id


async def hold_lock(store: MemoryStore, order_id: str, seconds: float, held: asyncio.Event) -> None:
    async with store.lock_order(order_id):
        held.set()
        await asyncio.sleep(seconds)


@pytest.mark.parametrize("held_for,succeeds", [(0.07, True), (0.4, False)])
async def test_mutation_retries_once_after_conflict(settings, held_for, succeeds):
    store = MemoryStore(lock_timeout=0.05)
    engine = await build_engine(settings, store=store, http=httpx.AsyncClient())
    try:
        o = await engine.orders.create_order("s", [NewLine(title="Cup", quantity=1, unit_price=Decimal("4.00"))])
        held = asyncio.Event()
        holder = asyncio.create_task(hold_lock(store, o.id, held_for, held))
        await held.wait()
        if succeeds:
            assert (await engine.orders.update_status(o.id, "processing")).status == "processing"
        else:
            with pytest.raises(PersistenceConflict):
                await engine.orders.update_status(o.id, "processing")
        await holder
    finally:
        await engine.close()


async def test_save_webhook_keeps_delivery_counters():
    store = MemoryStore()
    webhook = Webhook(store_id="s", url="https://a.example", events=["*"])
    await store.add_webhook(webhook)
    now = utcnow()
    await store.record_delivery(webhook.id, False, now)
    await store.record_delivery(webhook.id, False, now)

    await store.save_webhook(webhook.model_copy(update={"name": "renamed"}))
    saved = await store.get_webhook(webhook.id)
    assert saved.name == "renamed"
    assert saved.retry_count == 2
    assert saved.last_triggered_at == now

    with pytest.raises(NotFound):
        await store.delete_webhook("missing")
