"""
In-process event bus. Publication returns once every subscriber has been handed the event;
subscribers that do real work (webhook delivery) only enqueue, so the caller is never held up.
A failing subscriber is logged and never propagates to the publisher.
"""
import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from orderflow.metrics import events_published_total
from orderflow.models import utcnow

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_CANCELLED = "order.cancelled"
ORDER_FULFILLED = "order.fulfilled"
FULFILLMENT_CREATED = "fulfillment.created"
RETURN_COMPLETED = "return.completed"
CLAIM_COMPLETED = "claim.completed"
EXCHANGE_COMPLETED = "exchange.completed"
ORDER_EDIT_CONFIRMED = "order_edit.confirmed"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
TEST_PING = "test.ping"

# Events that external collaborators may publish through the API.
EXTERNAL_EVENT_PATTERNS = ("product.*", "customer.*", "inventory.*")


@dataclass(frozen=True)
class Event:
    name: str
    store_id: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)


Handler = Callable[[Event], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[tuple[str, Handler]] = []

    def subscribe(self, pattern: str, handler: Handler) -> None:
        self._subscriptions.append((pattern, handler))

    async def publish(self, event: Event) -> None:
        events_published_total.labels(event=event.name).inc()
        for pattern, handler in self._subscriptions:
            if not fnmatch.fnmatchcase(event.name, pattern):
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("Subscriber %r failed for event=%s", handler, event.name)

    async def publish_all(self, events: list[Event]) -> None:
        for event in events:
            await self.publish(event)


def is_external_event(name: str) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in EXTERNAL_EVENT_PATTERNS)
