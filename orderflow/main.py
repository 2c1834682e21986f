import asyncio
import logging
import sys
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from orderflow.config import LOG_FORMAT, Settings, settings as default_settings
from orderflow.engine import Engine, build_engine
from orderflow.errors import (
    InsufficientQuantity,
    InvalidRequest,
    InvalidTransition,
    LifecycleError,
    NotFound,
    OrderNotEditable,
    PersistenceConflict,
)
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type, webhook_queue_depth
from orderflow.routes import admin, events, orders, webhooks

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[LifecycleError], int] = {
    NotFound: 404,
    InvalidTransition: 409,
    OrderNotEditable: 409,
    PersistenceConflict: 409,
    InsufficientQuantity: 422,
    InvalidRequest: 422,
}


def status_for(error: LifecycleError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    http: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the API. An engine (or just the outbound HTTP client) can be injected; otherwise one is built from settings."""
    settings = settings or (engine.settings if engine else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        app.state.engine = engine or await build_engine(settings, http=http)
        shutdown_event = asyncio.Event()
        worker_task = None
        if settings.worker_in_process:
            worker_task = asyncio.create_task(app.state.engine.worker.run(shutdown_event))
            logger.info("Delivery worker running in-process")
        yield
        shutdown_event.set()
        if worker_task is not None:
            await worker_task
        if owned:
            await app.state.engine.close()

    app = FastAPI(title="Order Lifecycle Engine", lifespan=lifespan)
    app.include_router(orders.router)
    app.include_router(webhooks.router)
    app.include_router(events.router)
    app.include_router(admin.router)

    @app.exception_handler(LifecycleError)
    async def lifecycle_error(request: Request, exc: LifecycleError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": InvalidRequest.code, "message": str(exc)},
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: lifecycle transitions, deliveries, queue depth."""
        try:
            webhook_queue_depth.set(await request.app.state.engine.queue.depth())
        except Exception:
            logger.warning("Could not read delivery queue depth", exc_info=True)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


logging.basicConfig(level=default_settings.log_level, format=LOG_FORMAT, stream=sys.stdout)
app = create_app()
