"""
Webhook delivery queue. Backend: in-memory (asyncio.Queue) or Redis (LPUSH/BLMOVE) when REDIS_URL is set.
A popped Redis job sits in a processing list until it is acked or requeued, so a crashed worker's
jobs are recovered on the next start.
Delayed retries wait in timers (memory) or a sorted set scored by due time (Redis).
Exhausted deliveries go to a dead-letter list and are only replayed on request.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, PrivateAttr
from redis.exceptions import WatchError

from orderflow.models import utcnow

logger = logging.getLogger(__name__)

DELIVERY_QUEUE_KEY = "queue:webhook_deliveries"
DELIVERY_DELAYED_KEY = "queue:webhook_deliveries:delayed"
DELIVERY_DLQ_KEY = "queue:webhook_deliveries:dlq"
DELIVERY_PROCESSING_KEY = "queue:webhook_deliveries:processing"


class DeliveryJob(BaseModel):
    store_id: str
    event: str
    payload: dict[str, Any]
    emitted_at: datetime
    webhook_id: str | None = None  # None: fan out to every matching webhook
    delivery_id: str | None = None
    attempts: int = 0  # attempts already made
    last_error: str | None = None

    # raw queue entry, used to ack the job once handled
    _receipt: bytes | str | None = PrivateAttr(default=None)

    @classmethod
    def fan_out(cls, store_id: str, event: str, payload: dict[str, Any], emitted_at: datetime | None = None):
        return cls(store_id=store_id, event=event, payload=payload, emitted_at=emitted_at or utcnow())


class DeliveryQueue(Protocol):
    async def push(self, job: DeliveryJob) -> None: ...

    async def push_later(self, job: DeliveryJob, delay: float) -> None: ...

    async def pop(self, timeout: float) -> DeliveryJob | None: ...

    async def ack(self, job: DeliveryJob) -> None: ...

    async def requeue(self, job: DeliveryJob) -> None: ...

    async def recover(self) -> int: ...

    async def dead_letter(self, job: DeliveryJob) -> None: ...

    async def dead_letters(self, limit: int = 100) -> list[DeliveryJob]: ...

    async def replay_dead_letters(self, limit: int = 100) -> int: ...

    async def depth(self) -> int: ...

    async def close(self) -> None: ...


class MemoryDeliveryQueue:
    def __init__(self) -> None:
        self._ready: asyncio.Queue[DeliveryJob] = asyncio.Queue()
        self._timers: set[asyncio.TimerHandle] = set()
        self._dead: list[DeliveryJob] = []

    async def push(self, job: DeliveryJob) -> None:
        self._ready.put_nowait(job)

    async def push_later(self, job: DeliveryJob, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def release() -> None:
            self._timers.discard(handle)
            self._ready.put_nowait(job)

        handle = loop.call_later(delay, release)
        self._timers.add(handle)

    async def pop(self, timeout: float) -> DeliveryJob | None:
        try:
            if timeout <= 0:
                return self._ready.get_nowait()
            return await asyncio.wait_for(self._ready.get(), timeout)
        except (asyncio.QueueEmpty, asyncio.TimeoutError):
            return None

    async def ack(self, job: DeliveryJob) -> None:
        return None

    async def requeue(self, job: DeliveryJob) -> None:
        self._ready.put_nowait(job)

    async def recover(self) -> int:
        return 0

    async def dead_letter(self, job: DeliveryJob) -> None:
        self._dead.append(job)

    async def dead_letters(self, limit: int = 100) -> list[DeliveryJob]:
        return self._dead[-limit:][::-1]

    async def replay_dead_letters(self, limit: int = 100) -> int:
        replayed = 0
        while self._dead and replayed < limit:
            job = self._dead.pop(0)
            self._ready.put_nowait(job.model_copy(update={"attempts": 0, "last_error": None}))
            replayed += 1
        return replayed

    async def depth(self) -> int:
        return self._ready.qsize() + len(self._timers)

    async def close(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()


class RedisDeliveryQueue:
    def __init__(self, client: redis.Redis):
        self._r = client

    async def push(self, job: DeliveryJob) -> None:
        await self._r.lpush(DELIVERY_QUEUE_KEY, job.model_dump_json())

    async def push_later(self, job: DeliveryJob, delay: float) -> None:
        await self._r.zadd(DELIVERY_DELAYED_KEY, {job.model_dump_json(): time.time() + delay})

    async def _promote_due(self) -> None:
        async with self._r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(DELIVERY_DELAYED_KEY)
                due = await pipe.zrangebyscore(DELIVERY_DELAYED_KEY, 0, time.time())
                if not due:
                    return
                pipe.multi()
                pipe.zrem(DELIVERY_DELAYED_KEY, *due)
                pipe.lpush(DELIVERY_QUEUE_KEY, *due)
                await pipe.execute()
            except WatchError:
                # another worker promoted them first
                return

    async def pop(self, timeout: float) -> DeliveryJob | None:
        """Move the next job into the processing list. It stays there until ack() or requeue()."""
        await self._promote_due()
        if timeout <= 0:
            raw = await self._r.lmove(DELIVERY_QUEUE_KEY, DELIVERY_PROCESSING_KEY, "RIGHT", "LEFT")
        else:
            raw = await self._r.blmove(DELIVERY_QUEUE_KEY, DELIVERY_PROCESSING_KEY, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        try:
            job = DeliveryJob.model_validate_json(raw)
        except ValueError:
            logger.warning("Discarding malformed delivery job: %r", raw[:200])
            await self._r.lrem(DELIVERY_PROCESSING_KEY, 1, raw)
            return None
        job._receipt = raw
        return job

    async def ack(self, job: DeliveryJob) -> None:
        if job._receipt is not None:
            await self._r.lrem(DELIVERY_PROCESSING_KEY, 1, job._receipt)

    async def requeue(self, job: DeliveryJob) -> None:
        """Put an unfinished job back at the consuming end of the queue."""
        raw = job._receipt if job._receipt is not None else job.model_dump_json()
        async with self._r.pipeline(transaction=True) as pipe:
            if job._receipt is not None:
                pipe.lrem(DELIVERY_PROCESSING_KEY, 1, raw)
            pipe.rpush(DELIVERY_QUEUE_KEY, raw)
            await pipe.execute()

    async def recover(self) -> int:
        """Return jobs left in the processing list by a stopped worker to the queue."""
        recovered = 0
        while await self._r.lmove(DELIVERY_PROCESSING_KEY, DELIVERY_QUEUE_KEY, "LEFT", "RIGHT") is not None:
            recovered += 1
        return recovered

    async def dead_letter(self, job: DeliveryJob) -> None:
        await self._r.lpush(DELIVERY_DLQ_KEY, job.model_dump_json())

    async def dead_letters(self, limit: int = 100) -> list[DeliveryJob]:
        rows = await self._r.lrange(DELIVERY_DLQ_KEY, 0, limit - 1)
        return [DeliveryJob.model_validate_json(raw) for raw in rows]

    async def replay_dead_letters(self, limit: int = 100) -> int:
        """Re-send dead letters to the main queue with a fresh attempt budget."""
        replayed = 0
        while replayed < limit:
            raw = await self._r.rpop(DELIVERY_DLQ_KEY)
            if raw is None:
                break
            try:
                job = DeliveryJob.model_validate_json(raw)
            except ValueError:
                replayed += 1
                continue
            await self.push(job.model_copy(update={"attempts": 0, "last_error": None}))
            replayed += 1
        return replayed

    async def depth(self) -> int:
        waiting = await self._r.llen(DELIVERY_QUEUE_KEY)
        delayed = await self._r.zcard(DELIVERY_DELAYED_KEY)
        return int(waiting) + int(delayed)

    async def close(self) -> None:
        return None
