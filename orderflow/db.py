"""
Async Postgres store: orders (aggregate document + version), webhooks, webhook_logs (append-only).
Order mutations run in a single transaction: lock order row (FOR UPDATE), validate, write back.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import asyncpg
from asyncpg.exceptions import LockNotAvailableError

from orderflow.errors import NotFound, PersistenceConflict
from orderflow.models import Order, Webhook, WebhookLog, utcnow

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        store_id VARCHAR(64) NOT NULL,
        version INT NOT NULL DEFAULT 0,
        doc JSONB NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS webhooks (
        id VARCHAR(64) PRIMARY KEY,
        store_id VARCHAR(64) NOT NULL,
        name VARCHAR(255),
        url TEXT NOT NULL,
        secret TEXT,
        events JSONB NOT NULL DEFAULT '[]',
        headers JSONB NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        retry_count INT NOT NULL DEFAULT 0,
        last_triggered_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhooks_store_id ON webhooks(store_id);",
    """
    CREATE TABLE IF NOT EXISTS webhook_logs (
        id VARCHAR(64) PRIMARY KEY,
        webhook_id VARCHAR(64) NOT NULL,
        delivery_id VARCHAR(64) NOT NULL,
        event VARCHAR(100) NOT NULL,
        payload JSONB,
        status VARCHAR(20) NOT NULL,
        response_status INT,
        response_body TEXT,
        error TEXT,
        attempts INT NOT NULL DEFAULT 1,
        exhausted BOOLEAN NOT NULL DEFAULT FALSE,
        duration_ms INT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_webhook_logs_webhook_id
    ON webhook_logs(webhook_id, created_at DESC);
    """,
]

WEBHOOK_COLUMNS = (
    "id, store_id, name, url, secret, events, headers, is_active, retry_count, "
    "last_triggered_at, created_at, updated_at"
)


def _webhook_from_row(row: asyncpg.Record) -> Webhook:
    data = dict(row)
    data["events"] = json.loads(data["events"])
    data["headers"] = json.loads(data["headers"])
    return Webhook.model_validate(data)


def _log_from_row(row: asyncpg.Record) -> WebhookLog:
    data = dict(row)
    data["payload"] = json.loads(data["payload"]) if data["payload"] else {}
    return WebhookLog.model_validate(data)


class PostgresStore:
    def __init__(self, database_url: str, lock_timeout: float = 5.0):
        self._database_url = database_url
        self._lock_timeout_ms = int(lock_timeout * 1000)
        self._pool: asyncpg.Pool | None = None

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=1,
                max_size=5,
                command_timeout=60,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def init_schema(self) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    # Orders

    async def add_order(self, order: Order) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            INSERT INTO orders (id, store_id, version, doc, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, NOW());
            """,
            order.id,
            order.store_id,
            order.version,
            order.model_dump_json(),
        )

    async def get_order(self, order_id: str) -> Order:
        pool = await self.get_pool()
        doc = await pool.fetchval("SELECT doc FROM orders WHERE id = $1;", order_id)
        if doc is None:
            raise NotFound("order", order_id)
        return Order.model_validate_json(doc)

    @asynccontextmanager
    async def lock_order(self, order_id: str) -> AsyncIterator[Order]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms';")
                try:
                    doc = await conn.fetchval("SELECT doc FROM orders WHERE id = $1 FOR UPDATE;", order_id)
                except LockNotAvailableError:
                    raise PersistenceConflict(order_id) from None
                if doc is None:
                    raise NotFound("order", order_id)
                working = Order.model_validate_json(doc)
                yield working
                working.version += 1
                working.updated_at = utcnow()
                await conn.execute(
                    """
                    UPDATE orders SET doc = $1::jsonb, version = $2, updated_at = NOW() WHERE id = $3;
                    """,
                    working.model_dump_json(),
                    working.version,
                    order_id,
                )

    # Webhooks

    async def add_webhook(self, webhook: Webhook) -> None:
        pool = await self.get_pool()
        await pool.execute(
            f"""
            INSERT INTO webhooks ({WEBHOOK_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12);
            """,
            webhook.id,
            webhook.store_id,
            webhook.name,
            webhook.url,
            webhook.secret,
            json.dumps(webhook.events),
            json.dumps(webhook.headers),
            webhook.is_active,
            webhook.retry_count,
            webhook.last_triggered_at,
            webhook.created_at,
            webhook.updated_at,
        )

    async def save_webhook(self, webhook: Webhook) -> None:
        # retry_count / last_triggered_at are owned by record_delivery
        pool = await self.get_pool()
        result = await pool.execute(
            """
            UPDATE webhooks
            SET name = $2, url = $3, secret = $4, events = $5::jsonb, headers = $6::jsonb,
                is_active = $7, updated_at = NOW()
            WHERE id = $1;
            """,
            webhook.id,
            webhook.name,
            webhook.url,
            webhook.secret,
            json.dumps(webhook.events),
            json.dumps(webhook.headers),
            webhook.is_active,
        )
        if result == "UPDATE 0":
            raise NotFound("webhook", webhook.id)

    async def delete_webhook(self, webhook_id: str) -> None:
        pool = await self.get_pool()
        result = await pool.execute("DELETE FROM webhooks WHERE id = $1;", webhook_id)
        if result == "DELETE 0":
            raise NotFound("webhook", webhook_id)

    async def get_webhook(self, webhook_id: str) -> Webhook:
        pool = await self.get_pool()
        row = await pool.fetchrow(f"SELECT {WEBHOOK_COLUMNS} FROM webhooks WHERE id = $1;", webhook_id)
        if row is None:
            raise NotFound("webhook", webhook_id)
        return _webhook_from_row(row)

    async def list_webhooks(self, store_id: str) -> list[Webhook]:
        pool = await self.get_pool()
        rows = await pool.fetch(
            f"SELECT {WEBHOOK_COLUMNS} FROM webhooks WHERE store_id = $1 ORDER BY created_at;",
            store_id,
        )
        return [_webhook_from_row(r) for r in rows]

    async def matching_webhooks(self, store_id: str, event: str) -> list[Webhook]:
        pool = await self.get_pool()
        rows = await pool.fetch(
            f"SELECT {WEBHOOK_COLUMNS} FROM webhooks WHERE store_id = $1 AND is_active = TRUE;",
            store_id,
        )
        webhooks = [_webhook_from_row(r) for r in rows]
        return [w for w in webhooks if w.subscribes_to(event)]

    async def record_delivery(self, webhook_id: str, success: bool, at: datetime) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            UPDATE webhooks
            SET retry_count = CASE WHEN $2 THEN 0 ELSE retry_count + 1 END,
                last_triggered_at = $3
            WHERE id = $1;
            """,
            webhook_id,
            success,
            at,
        )

    async def append_log(self, log: WebhookLog) -> None:
        pool = await self.get_pool()
        await pool.execute(
            """
            INSERT INTO webhook_logs (id, webhook_id, delivery_id, event, payload, status, response_status,
                                      response_body, error, attempts, exhausted, duration_ms, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13);
            """,
            log.id,
            log.webhook_id,
            log.delivery_id,
            log.event,
            json.dumps(log.payload, default=str),
            log.status,
            log.response_status,
            log.response_body,
            log.error,
            log.attempts,
            log.exhausted,
            log.duration_ms,
            log.created_at,
        )

    async def get_log(self, log_id: str) -> WebhookLog:
        pool = await self.get_pool()
        row = await pool.fetchrow("SELECT * FROM webhook_logs WHERE id = $1;", log_id)
        if row is None:
            raise NotFound("webhook_log", log_id)
        return _log_from_row(row)

    async def list_logs(self, webhook_id: str, limit: int = 20, offset: int = 0) -> list[WebhookLog]:
        pool = await self.get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM webhook_logs WHERE webhook_id = $1
            ORDER BY created_at DESC LIMIT $2 OFFSET $3;
            """,
            webhook_id,
            limit,
            offset,
        )
        return [_log_from_row(r) for r in rows]
