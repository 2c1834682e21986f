import asyncio
import time

import pytest
from fakeredis import FakeAsyncRedis

from orderflow.queue import (
    DELIVERY_DELAYED_KEY,
    DELIVERY_PROCESSING_KEY,
    DELIVERY_QUEUE_KEY,
    DeliveryJob,
    MemoryDeliveryQueue,
    RedisDeliveryQueue,
)


def job(event: str = "order.updated", **kwargs) -> DeliveryJob:
    return DeliveryJob.fan_out("store-1", event, {"id": "o1"}).model_copy(update=kwargs)


async def test_pop_is_fifo_and_empty_returns_none():
    queue = MemoryDeliveryQueue()
    await queue.push(job("order.created"))
    await queue.push(job("order.updated"))
    assert (await queue.pop(0)).event == "order.created"
    assert (await queue.pop(0.01)).event == "order.updated"
    assert await queue.pop(0) is None
    assert await queue.pop(0.01) is None


async def test_push_later_waits_for_delay():
    queue = MemoryDeliveryQueue()
    await queue.push_later(job(), 0.05)
    assert await queue.depth() == 1
    assert await queue.pop(0) is None
    await asyncio.sleep(0.1)
    assert (await queue.pop(0)).event == "order.updated"
    assert await queue.depth() == 0


async def test_replay_resets_attempts():
    queue = MemoryDeliveryQueue()
    await queue.dead_letter(job(webhook_id="w1", attempts=5, last_error="HTTP 500"))
    (dead,) = await queue.dead_letters()
    assert dead.attempts == 5

    assert await queue.replay_dead_letters() == 1
    assert await queue.dead_letters() == []
    replayed = await queue.pop(0)
    assert replayed.webhook_id == "w1"
    assert replayed.attempts == 0
    assert replayed.last_error is None


async def test_close_cancels_scheduled_jobs():
    queue = MemoryDeliveryQueue()
    await queue.push_later(job(), 0.01)
    await queue.close()
    await asyncio.sleep(0.03)
    assert await queue.pop(0) is None


def test_job_survives_json():
    original = job(webhook_id="w1", delivery_id="d1", attempts=2)
    assert DeliveryJob.model_validate_json(original.model_dump_json()) == original


# Redis backend


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def redis_queue(redis_client) -> RedisDeliveryQueue:
    return RedisDeliveryQueue(redis_client)


async def test_redis_pop_keeps_job_until_acked(redis_queue, redis_client):
    await redis_queue.push(job("order.created"))
    await redis_queue.push(job("order.updated"))

    first = await redis_queue.pop(0)
    assert first.event == "order.created"
    assert await redis_client.llen(DELIVERY_PROCESSING_KEY) == 1
    assert await redis_queue.depth() == 1

    await redis_queue.ack(first)
    assert await redis_client.llen(DELIVERY_PROCESSING_KEY) == 0
    assert (await redis_queue.pop(0)).event == "order.updated"
    assert await redis_queue.pop(0) is None


async def test_redis_requeue_puts_job_next_in_line(redis_queue, redis_client):
    await redis_queue.push(job("order.created"))
    await redis_queue.push(job("order.updated"))
    taken = await redis_queue.pop(0)

    await redis_queue.requeue(taken)
    assert await redis_client.llen(DELIVERY_PROCESSING_KEY) == 0
    assert (await redis_queue.pop(0)).event == "order.created"


async def test_redis_recover_returns_unacked_jobs(redis_client):
    crashed = RedisDeliveryQueue(redis_client)
    await crashed.push(job(webhook_id="w1", delivery_id="d1", attempts=2))
    assert await crashed.pop(0) is not None

    restarted = RedisDeliveryQueue(redis_client)
    assert await restarted.recover() == 1
    assert await redis_client.llen(DELIVERY_PROCESSING_KEY) == 0
    recovered = await restarted.pop(0)
    assert recovered.delivery_id == "d1"
    assert recovered.attempts == 2


async def test_redis_delayed_job_is_promoted_when_due(redis_queue, redis_client):
    await redis_queue.push_later(job("order.updated"), 60)
    await redis_queue.push_later(job("order.cancelled"), 0)

    assert (await redis_queue.pop(0)).event == "order.cancelled"
    assert await redis_queue.pop(0) is None
    assert await redis_client.zcard(DELIVERY_DELAYED_KEY) == 1
    assert await redis_queue.depth() == 1

    # move the remaining job's due time into the past
    (raw,) = await redis_client.zrange(DELIVERY_DELAYED_KEY, 0, -1)
    await redis_client.zadd(DELIVERY_DELAYED_KEY, {raw: time.time() - 1})
    assert (await redis_queue.pop(0)).event == "order.updated"
    assert await redis_client.zcard(DELIVERY_DELAYED_KEY) == 0


async def test_redis_replay_resets_attempts(redis_queue):
    await redis_queue.dead_letter(job(webhook_id="w1", attempts=5, last_error="HTTP 500"))
    (dead,) = await redis_queue.dead_letters()
    assert dead.attempts == 5

    assert await redis_queue.replay_dead_letters() == 1
    assert await redis_queue.dead_letters() == []
    replayed = await redis_queue.pop(0)
    assert replayed.webhook_id == "w1"
    assert replayed.attempts == 0
    assert replayed.last_error is None


async def test_redis_malformed_entry_is_discarded(redis_queue, redis_client):
    await redis_client.lpush(DELIVERY_QUEUE_KEY, "not json")
    await redis_queue.push(job("order.updated"))
    assert await redis_queue.pop(0) is None
    assert await redis_client.llen(DELIVERY_PROCESSING_KEY) == 0
    assert (await redis_queue.pop(0)).event == "order.updated"
