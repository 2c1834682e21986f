"""
Webhook subscriptions per store, and the bus listener that turns lifecycle events into delivery jobs.
"""
import logging
import secrets

import httpx

from orderflow.errors import InvalidRequest
from orderflow.events import Event, EventBus
from orderflow.models import Webhook, WebhookLog, utcnow
from orderflow.queue import DeliveryJob, DeliveryQueue
from orderflow.store import WebhookStore

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "url", "secret", "events", "headers", "is_active")
NULLABLE_FIELDS = ("name",)


def _require_target(url: str, events: list[str]) -> None:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise InvalidRequest(f"Invalid webhook url {url}: {e}") from None
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidRequest(f"Webhook url must be http(s): {url}")
    if not events:
        raise InvalidRequest("Webhook must subscribe to at least one event")


class WebhookSettings:
    def __init__(self, store: WebhookStore):
        self.store = store

    async def create(
        self,
        store_id: str,
        url: str,
        events: list[str],
        name: str | None = None,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        is_active: bool = True,
    ) -> Webhook:
        """Register a subscription. A signing secret is generated when none is given."""
        _require_target(url, events)
        webhook = Webhook(
            store_id=store_id,
            name=name,
            url=url,
            secret=secret or secrets.token_hex(32),
            events=events,
            headers=headers or {},
            is_active=is_active,
        )
        await self.store.add_webhook(webhook)
        logger.info("Created webhook_id=%s for store_id=%s events=%s", webhook.id, store_id, events)
        return webhook

    async def update(self, webhook_id: str, **changes) -> Webhook:
        webhook = await self.store.get_webhook(webhook_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Cannot update webhook fields: {', '.join(sorted(unknown))}")
        not_nullable = sorted(k for k, v in changes.items() if v is None and k not in NULLABLE_FIELDS)
        if not_nullable:
            raise InvalidRequest(f"Webhook fields cannot be null: {', '.join(not_nullable)}")
        updated = webhook.model_copy(update={**changes, "updated_at": utcnow()})
        _require_target(updated.url, updated.events)
        await self.store.save_webhook(updated)
        logger.info("Updated webhook_id=%s (%s)", webhook_id, ", ".join(sorted(changes)))
        return updated

    async def delete(self, webhook_id: str) -> None:
        await self.store.delete_webhook(webhook_id)
        logger.info("Deleted webhook_id=%s", webhook_id)

    async def get(self, webhook_id: str) -> Webhook:
        return await self.store.get_webhook(webhook_id)

    async def list_for_store(self, store_id: str) -> list[Webhook]:
        return await self.store.list_webhooks(store_id)

    async def logs(self, webhook_id: str, page: int = 1, limit: int = 20) -> list[WebhookLog]:
        """Most recent first."""
        await self.store.get_webhook(webhook_id)
        return await self.store.list_logs(webhook_id, limit=limit, offset=(page - 1) * limit)


class WebhookListener:
    """Subscribes to every bus event and enqueues a fan-out job; delivery happens in the worker."""

    def __init__(self, queue: DeliveryQueue):
        self.queue = queue

    def attach(self, bus: EventBus) -> None:
        bus.subscribe("*", self.on_event)

    async def on_event(self, event: Event) -> None:
        job = DeliveryJob.fan_out(event.store_id, event.name, event.payload, emitted_at=event.occurred_at)
        await self.queue.push(job)
        logger.debug("Queued %s for store_id=%s", event.name, event.store_id)
