"""
Delivery worker: pull jobs from the delivery queue and POST them to subscribed webhooks.
- Fan-out jobs resolve matching webhooks at delivery time; retry jobs target one webhook.
- Failed attempts are re-queued with exponential backoff; exhausted ones go to the DLQ.
- Prometheus /metrics on port 9090 (worker metrics).
- A job is only taken off the queue once a pool slot is free; it is acked when handled and
  put back when shutdown cancels it.
- Graceful shutdown on SIGTERM.
Run: python -m orderflow.worker
"""
import asyncio
import logging
import signal
import sys
import threading

from orderflow.config import LOG_FORMAT, Settings, settings
from orderflow.dispatcher import WebhookDispatcher
from orderflow.metrics import webhook_queue_depth
from orderflow.queue import DeliveryJob, DeliveryQueue

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


class DeliveryWorker:
    def __init__(
        self,
        queue: DeliveryQueue,
        dispatcher: WebhookDispatcher,
        concurrency: int = 10,
        poll_timeout: float = 5.0,
        shutdown_grace: float = GRACEFUL_SHUTDOWN_WAIT_SEC,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.poll_timeout = poll_timeout
        self.shutdown_grace = shutdown_grace
        self._sem = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()

    async def process_one(self, job: DeliveryJob) -> None:
        async with self._sem:
            await self._handle(job)

    async def _handle(self, job: DeliveryJob) -> None:
        try:
            if job.webhook_id is None:
                await self.dispatcher.dispatch(job.store_id, job.event, job.payload, emitted_at=job.emitted_at)
            else:
                await self.dispatcher.redeliver(job)
        except asyncio.CancelledError:
            await self.queue.requeue(job)
            logger.info("Returned unfinished %s job for store_id=%s to the queue", job.event, job.store_id)
            raise
        except Exception:
            logger.exception("Failed to process %s job for store_id=%s", job.event, job.store_id)
        await self.queue.ack(job)

    async def _run_job(self, job: DeliveryJob) -> None:
        try:
            await self._handle(job)
        finally:
            self._sem.release()

    async def _wait_for_slot(self, shutdown_event: asyncio.Event) -> bool:
        """Hold a pool slot, or return False (holding none) once shutdown is requested."""
        acquire = asyncio.ensure_future(self._sem.acquire())
        stop = asyncio.ensure_future(shutdown_event.wait())
        await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        stop.cancel()
        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        if shutdown_event.is_set():
            self._sem.release()
            return False
        return True

    async def drain(self) -> int:
        """Process everything currently ready, without waiting. Returns the number of jobs handled."""
        handled = 0
        while (job := await self.queue.pop(0)) is not None:
            await self.process_one(job)
            handled += 1
        return handled

    async def run(self, shutdown_event: asyncio.Event) -> None:
        recovered = await self.queue.recover()
        if recovered:
            logger.warning("Recovered %d unfinished delivery job(s) from a previous run", recovered)
        logger.info("Delivery worker listening (poll_timeout=%.1fs) ...", self.poll_timeout)
        try:
            while not shutdown_event.is_set():
                if not await self._wait_for_slot(shutdown_event):
                    break
                try:
                    job = await self.queue.pop(self.poll_timeout)
                    webhook_queue_depth.set(await self.queue.depth())
                except BaseException:
                    self._sem.release()
                    raise
                if job is None:
                    self._sem.release()
                    continue
                t = asyncio.create_task(self._run_job(job))
                self._tasks.add(t)
                t.add_done_callback(self._tasks.discard)
        finally:
            await self._finish_in_flight()
            logger.info("Worker stopped.")

    async def _finish_in_flight(self) -> None:
        if not self._tasks:
            return
        logger.info(
            "Graceful shutdown: waiting for %d in-flight task(s) (max %.0fs) ...",
            len(self._tasks),
            self.shutdown_grace,
        )
        _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def run_worker(shutdown_event: asyncio.Event, config: Settings = settings) -> None:
    from orderflow.engine import build_engine

    engine = await build_engine(config)
    logger.info(
        "Backend ready. Queue=%s (concurrency=%d, max_attempts=%d) ...",
        type(engine.queue).__name__,
        config.worker_concurrency,
        config.webhook_max_attempts,
    )
    try:
        await engine.worker.run(shutdown_event)
    finally:
        await engine.close()


def main() -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, stream=sys.stdout)
    if not settings.redis_url:
        logger.error("REDIS_URL is required for a standalone worker; the in-memory queue only lives inside the API process")
        sys.exit(1)

    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
