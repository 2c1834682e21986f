from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.engine import Engine
from orderflow.errors import InvalidRequest
from orderflow.events import EXTERNAL_EVENT_PATTERNS, Event, is_external_event
from orderflow.routes.deps import get_engine

router = APIRouter(prefix="/events", tags=["events"])


class PublishEventBody(BaseModel):
    store_id: str = Field(..., description="Store whose webhooks receive the event")
    event: str = Field(..., description="Event name, e.g. product.updated")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event payload")


@router.post("/publish")
async def publish_event(body: PublishEventBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    """
    Publish a catalog/customer/inventory event for webhook fan-out.
    Order lifecycle events are only emitted by the engine itself.
    Accepted -> 202; delivery happens in the worker.
    """
    if not is_external_event(body.event):
        raise InvalidRequest(
            f"Event {body.event} cannot be published externally (allowed: {', '.join(EXTERNAL_EVENT_PATTERNS)})"
        )
    await engine.bus.publish(Event(name=body.event, store_id=body.store_id, payload=body.payload))
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "event": body.event},
    )
