"""
Wires the store, queue, bus and services together. Backends follow the settings:
Postgres when DATABASE_URL is set, Redis queue when REDIS_URL is set, in-memory otherwise.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx

from orderflow.config import Settings
from orderflow.db import PostgresStore
from orderflow.dispatcher import WebhookDispatcher
from orderflow.events import EventBus
from orderflow.fulfillment import FulfillmentManager
from orderflow.models import utcnow
from orderflow.orders import OrderService
from orderflow.payments import ManualPaymentGateway, PaymentGateway, TaxCalculator, no_tax
from orderflow.queue import DeliveryQueue, MemoryDeliveryQueue, RedisDeliveryQueue
from orderflow.redis_client import close_redis, get_redis
from orderflow.store import MemoryStore
from orderflow.webhooks import WebhookListener, WebhookSettings
from orderflow.worker import DeliveryWorker
from orderflow.workflows import PostPurchaseWorkflows

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    store: MemoryStore | PostgresStore
    queue: DeliveryQueue
    bus: EventBus
    http: httpx.AsyncClient
    orders: OrderService
    fulfillments: FulfillmentManager
    workflows: PostPurchaseWorkflows
    webhooks: WebhookSettings
    dispatcher: WebhookDispatcher
    worker: DeliveryWorker

    async def close(self) -> None:
        await self.queue.close()
        await self.http.aclose()
        await self.store.close()
        if isinstance(self.queue, RedisDeliveryQueue):
            await close_redis()


async def build_engine(
    settings: Settings,
    store: MemoryStore | PostgresStore | None = None,
    queue: DeliveryQueue | None = None,
    http: httpx.AsyncClient | None = None,
    payments: PaymentGateway | None = None,
    tax: TaxCalculator | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Engine:
    clock = clock or utcnow
    if store is None:
        if settings.database_url:
            store = PostgresStore(settings.database_url, lock_timeout=settings.order_lock_timeout_seconds)
            await store.init_schema()
            logger.info("Using Postgres store")
        else:
            store = MemoryStore(lock_timeout=settings.order_lock_timeout_seconds)
            logger.info("Using in-memory store")
    if queue is None:
        if settings.redis_url:
            queue = RedisDeliveryQueue(await get_redis(settings.redis_url))
            logger.info("Using Redis delivery queue")
        else:
            queue = MemoryDeliveryQueue()
            logger.info("Using in-memory delivery queue")
    http = http or httpx.AsyncClient()
    payments = payments or ManualPaymentGateway()
    tax = tax or no_tax

    bus = EventBus()
    WebhookListener(queue).attach(bus)
    dispatcher = WebhookDispatcher(store, queue, http, settings, clock=clock)
    lifecycle_args = (store, bus, payments, tax, clock)
    return Engine(
        settings=settings,
        store=store,
        queue=queue,
        bus=bus,
        http=http,
        orders=OrderService(*lifecycle_args),
        fulfillments=FulfillmentManager(*lifecycle_args),
        workflows=PostPurchaseWorkflows(*lifecycle_args),
        webhooks=WebhookSettings(store),
        dispatcher=dispatcher,
        worker=DeliveryWorker(
            queue,
            dispatcher,
            concurrency=settings.worker_concurrency,
            poll_timeout=settings.worker_poll_timeout,
        ),
    )
