"""
Record store interfaces and the in-memory implementation.

lock_order() is the single-writer discipline: it yields a working copy of the order while
holding the order-scoped lock, commits the copy only if the block exits cleanly, and
discards it otherwise.
"""
import asyncio
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Protocol

from orderflow.errors import NotFound, PersistenceConflict
from orderflow.models import Order, Webhook, WebhookLog, utcnow


class OrderStore(Protocol):
    async def add_order(self, order: Order) -> None: ...

    async def get_order(self, order_id: str) -> Order: ...

    def lock_order(self, order_id: str) -> AbstractAsyncContextManager[Order]: ...


class WebhookStore(Protocol):
    async def add_webhook(self, webhook: Webhook) -> None: ...

    async def save_webhook(self, webhook: Webhook) -> None: ...

    async def delete_webhook(self, webhook_id: str) -> None: ...

    async def get_webhook(self, webhook_id: str) -> Webhook: ...

    async def list_webhooks(self, store_id: str) -> list[Webhook]: ...

    async def matching_webhooks(self, store_id: str, event: str) -> list[Webhook]: ...

    async def record_delivery(self, webhook_id: str, success: bool, at: datetime) -> None: ...

    async def append_log(self, log: WebhookLog) -> None: ...

    async def get_log(self, log_id: str) -> WebhookLog: ...

    async def list_logs(self, webhook_id: str, limit: int = 20, offset: int = 0) -> list[WebhookLog]: ...


class MemoryStore:
    """Process-local store. Per-order asyncio locks; no global lock."""

    def __init__(self, lock_timeout: float = 5.0):
        self._lock_timeout = lock_timeout
        self._orders: dict[str, Order] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._webhooks: dict[str, Webhook] = {}
        self._logs: dict[str, WebhookLog] = {}
        self._logs_by_webhook: dict[str, list[str]] = {}

    # Orders

    async def add_order(self, order: Order) -> None:
        self._orders[order.id] = order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound("order", order_id)
        return order.model_copy(deep=True)

    @asynccontextmanager
    async def lock_order(self, order_id: str) -> AsyncIterator[Order]:
        if order_id not in self._orders:
            raise NotFound("order", order_id)
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), self._lock_timeout)
        except asyncio.TimeoutError:
            raise PersistenceConflict(order_id) from None
        try:
            working = self._orders[order_id].model_copy(deep=True)
            yield working
            working.version += 1
            working.updated_at = utcnow()
            self._orders[order_id] = working
        finally:
            lock.release()

    # Webhooks

    async def add_webhook(self, webhook: Webhook) -> None:
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)

    async def save_webhook(self, webhook: Webhook) -> None:
        if webhook.id not in self._webhooks:
            raise NotFound("webhook", webhook.id)
        # counters are owned by record_delivery
        current = self._webhooks[webhook.id]
        self._webhooks[webhook.id] = webhook.model_copy(
            deep=True,
            update={"retry_count": current.retry_count, "last_triggered_at": current.last_triggered_at},
        )

    async def delete_webhook(self, webhook_id: str) -> None:
        if self._webhooks.pop(webhook_id, None) is None:
            raise NotFound("webhook", webhook_id)

    async def get_webhook(self, webhook_id: str) -> Webhook:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            raise NotFound("webhook", webhook_id)
        return webhook.model_copy(deep=True)

    async def list_webhooks(self, store_id: str) -> list[Webhook]:
        return [w.model_copy(deep=True) for w in self._webhooks.values() if w.store_id == store_id]

    async def matching_webhooks(self, store_id: str, event: str) -> list[Webhook]:
        return [w for w in await self.list_webhooks(store_id) if w.is_active and w.subscribes_to(event)]

    async def record_delivery(self, webhook_id: str, success: bool, at: datetime) -> None:
        # no await between read and write: atomic on the event loop
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            return
        webhook.last_triggered_at = at
        webhook.retry_count = 0 if success else webhook.retry_count + 1

    async def append_log(self, log: WebhookLog) -> None:
        self._logs[log.id] = log.model_copy(deep=True)
        self._logs_by_webhook.setdefault(log.webhook_id, []).append(log.id)

    async def get_log(self, log_id: str) -> WebhookLog:
        log = self._logs.get(log_id)
        if log is None:
            raise NotFound("webhook_log", log_id)
        return log.model_copy(deep=True)

    async def list_logs(self, webhook_id: str, limit: int = 20, offset: int = 0) -> list[WebhookLog]:
        ids = self._logs_by_webhook.get(webhook_id, [])[::-1]
        return [self._logs[i].model_copy(deep=True) for i in ids[offset:offset + limit]]

    async def close(self) -> None:
        return None
