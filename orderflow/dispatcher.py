"""
Webhook dispatcher: resolve a store's subscriptions for an event, sign and POST the payload,
log every attempt, and schedule bounded exponential-backoff retries for failures.

Delivery errors are contained here. Nothing in this module raises into the code path that
emitted the event; a target that keeps failing ends up in the dead-letter queue and its log.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import BaseModel

from orderflow.config import Settings
from orderflow.errors import DeliveryFailed, NotFound
from orderflow.events import TEST_PING
from orderflow.metrics import webhook_dead_letters_total, webhook_deliveries_total, webhook_delivery_seconds
from orderflow.models import Webhook, WebhookLog, new_id, utcnow
from orderflow.queue import DeliveryJob, DeliveryQueue
from orderflow.store import WebhookStore

logger = logging.getLogger(__name__)

MAX_RESPONSE_BODY = 5000


class DeliveryResult(BaseModel):
    webhook_id: str
    success: bool
    status_code: int | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    log_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "webhookId": self.webhook_id,
            "success": self.success,
            "statusCode": self.status_code,
            "durationMs": self.duration_ms,
            "errorMessage": self.error_message,
        }


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str | None) -> bool:
    """Receiver-side check, constant time."""
    if not signature:
        return False
    return hmac.compare_digest(sign(body, secret), signature)


def build_body(webhook_id: str, event: str, payload: dict[str, Any], timestamp: datetime) -> bytes:
    envelope = {
        "type": event,
        "webhookId": webhook_id,
        "timestamp": timestamp.isoformat(),
        "payload": payload,
    }
    return json.dumps(envelope, default=str, separators=(",", ":")).encode()


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before the attempt following `attempt` (1-based)."""
    return min(base * 2 ** (attempt - 1), cap)


class WebhookDispatcher:
    def __init__(
        self,
        store: WebhookStore,
        queue: DeliveryQueue,
        http: httpx.AsyncClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.http = http
        self.settings = settings
        self.clock = clock

    async def dispatch(
        self,
        store_id: str,
        event: str,
        payload: dict[str, Any],
        emitted_at: datetime | None = None,
    ) -> list[DeliveryResult]:
        """Deliver to every active webhook of the store subscribed to the event, concurrently."""
        webhooks = await self.store.matching_webhooks(store_id, event)
        if not webhooks:
            logger.debug("No webhooks for store_id=%s event=%s", store_id, event)
            return []
        outcomes = await asyncio.gather(
            *(self._deliver(w, event, payload, attempt=1, delivery_id=new_id(), emitted_at=emitted_at) for w in webhooks),
            return_exceptions=True,
        )
        results = []
        for webhook, outcome in zip(webhooks, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Delivery to webhook_id=%s crashed: %s", webhook.id, outcome)
                outcome = DeliveryResult(webhook_id=webhook.id, success=False, duration_ms=0, error_message=str(outcome))
            results.append(outcome)
        return results

    async def redeliver(self, job: DeliveryJob) -> DeliveryResult | None:
        """Next attempt of a scheduled retry. Skipped if the webhook was removed or disabled since."""
        try:
            webhook = await self.store.get_webhook(job.webhook_id)
        except NotFound:
            logger.info("Dropping retry for deleted webhook_id=%s", job.webhook_id)
            return None
        if not webhook.is_active:
            logger.info("Dropping retry for inactive webhook_id=%s", webhook.id)
            return None
        return await self._deliver(
            webhook,
            job.event,
            job.payload,
            attempt=job.attempts + 1,
            delivery_id=job.delivery_id or new_id(),
            emitted_at=job.emitted_at,
        )

    async def test(self, webhook_id: str) -> DeliveryResult:
        """Manual test: one test.ping attempt through the normal delivery path, without retries."""
        webhook = await self.store.get_webhook(webhook_id)
        payload = {
            "message": "Test webhook delivery",
            "webhookId": webhook.id,
            "storeId": webhook.store_id,
        }
        return await self._deliver(webhook, TEST_PING, payload, attempt=1, delivery_id=new_id(), retry=False)

    async def retry_log(self, log_id: str) -> DeliveryResult:
        """Operator-triggered single re-send of a logged delivery."""
        log = await self.store.get_log(log_id)
        webhook = await self.store.get_webhook(log.webhook_id)
        return await self._deliver(webhook, log.event, log.payload, attempt=1, delivery_id=log.delivery_id, retry=False)

    async def _send(self, url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
        try:
            response = await self.http.post(
                url, content=body, headers=headers, timeout=self.settings.webhook_timeout_seconds
            )
        except httpx.InvalidURL as e:
            raise DeliveryFailed(f"Invalid URL: {e}") from None
        except httpx.TimeoutException:
            raise DeliveryFailed(f"Timed out after {self.settings.webhook_timeout_seconds}s") from None
        except httpx.HTTPError as e:
            raise DeliveryFailed(str(e) or e.__class__.__name__) from None
        text = response.text[:MAX_RESPONSE_BODY]
        if not response.is_success:
            raise DeliveryFailed(f"HTTP {response.status_code}: {text[:200]}", status_code=response.status_code)
        return response.status_code, text

    async def _deliver(
        self,
        webhook: Webhook,
        event: str,
        payload: dict[str, Any],
        attempt: int,
        delivery_id: str,
        emitted_at: datetime | None = None,
        retry: bool = True,
    ) -> DeliveryResult:
        timestamp = self.clock()
        body = build_body(webhook.id, event, payload, timestamp)
        headers = {
            **webhook.headers,
            "Content-Type": "application/json",
            "User-Agent": self.settings.webhook_user_agent,
            "X-Webhook-Event": event,
            "X-Webhook-Id": webhook.id,
            "X-Delivery-Id": delivery_id,
        }
        if webhook.secret:
            headers["X-Signature"] = sign(body, webhook.secret)

        status_code: int | None = None
        response_body: str | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            status_code, response_body = await self._send(webhook.url, body, headers)
        except DeliveryFailed as e:
            status_code = e.status_code
            error = str(e)
        elapsed = time.monotonic() - started
        duration_ms = int(elapsed * 1000)
        success = error is None
        exhausted = not success and retry and attempt >= self.settings.webhook_max_attempts

        webhook_delivery_seconds.observe(elapsed)
        webhook_deliveries_total.labels(event=event, outcome="success" if success else "failed").inc()
        if success:
            logger.info("Delivered %s to webhook_id=%s (%s) in %dms", event, webhook.id, status_code, duration_ms)
        else:
            logger.warning(
                "Delivery of %s to webhook_id=%s failed (attempt %d/%d): %s",
                event,
                webhook.id,
                attempt,
                self.settings.webhook_max_attempts,
                error,
            )

        log = WebhookLog(
            webhook_id=webhook.id,
            delivery_id=delivery_id,
            event=event,
            payload=payload,
            status="success" if success else "failed",
            response_status=status_code,
            response_body=response_body,
            error=error,
            attempts=attempt,
            exhausted=exhausted,
            duration_ms=duration_ms,
            created_at=timestamp,
        )
        try:
            await self.store.append_log(log)
            await self.store.record_delivery(webhook.id, success, timestamp)
        except Exception:
            # delivery logging is best-effort; the attempt itself already happened
            logger.exception("Failed to record delivery log for webhook_id=%s", webhook.id)

        if not success and retry:
            job = DeliveryJob(
                store_id=webhook.store_id,
                event=event,
                payload=payload,
                emitted_at=emitted_at or timestamp,
                webhook_id=webhook.id,
                delivery_id=delivery_id,
                attempts=attempt,
                last_error=error,
            )
            await self._schedule_retry(job)

        return DeliveryResult(
            webhook_id=webhook.id,
            success=success,
            status_code=status_code,
            duration_ms=duration_ms,
            error_message=error,
            log_id=log.id,
        )

    async def _schedule_retry(self, job: DeliveryJob) -> None:
        if job.attempts >= self.settings.webhook_max_attempts:
            await self.queue.dead_letter(job)
            webhook_dead_letters_total.inc()
            logger.warning(
                "Moved delivery_id=%s (%s -> webhook_id=%s) to DLQ after %d attempts",
                job.delivery_id,
                job.event,
                job.webhook_id,
                job.attempts,
            )
            return
        delay = backoff_delay(
            job.attempts, self.settings.webhook_backoff_base_seconds, self.settings.webhook_backoff_max_seconds
        )
        logger.info(
            "Re-queuing delivery_id=%s in %.1fs (attempt %d/%d)",
            job.delivery_id,
            delay,
            job.attempts + 1,
            self.settings.webhook_max_attempts,
        )
        await self.queue.push_later(job, delay)
