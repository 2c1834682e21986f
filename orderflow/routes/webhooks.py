from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from orderflow.engine import Engine
from orderflow.models import Webhook
from orderflow.routes.deps import dump, get_engine

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class CreateWebhookBody(BaseModel):
    store_id: str
    url: str
    events: list[str] = Field(..., min_length=1, description='Event names or patterns, e.g. "order.*" or "*"')
    name: str | None = None
    secret: str | None = Field(default=None, description="Generated when omitted")
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True


class UpdateWebhookBody(BaseModel):
    url: str | None = None
    events: list[str] | None = None
    name: str | None = None
    secret: str | None = None
    headers: dict[str, str] | None = None
    is_active: bool | None = None


def _public(webhook: Webhook) -> dict:
    return webhook.model_dump(mode="json", exclude={"secret"})


@router.post("")
async def create_webhook(body: CreateWebhookBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    """The signing secret is only returned here."""
    webhook = await engine.webhooks.create(**body.model_dump())
    return JSONResponse(status_code=201, content=dump(webhook))


@router.get("")
async def list_webhooks(store_id: str = Query(...), engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=[_public(w) for w in await engine.webhooks.list_for_store(store_id)])


@router.get("/{webhook_id}")
async def get_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=_public(await engine.webhooks.get(webhook_id)))


@router.patch("/{webhook_id}")
async def update_webhook(webhook_id: str, body: UpdateWebhookBody, engine: Engine = Depends(get_engine)) -> JSONResponse:
    webhook = await engine.webhooks.update(webhook_id, **body.model_dump(exclude_unset=True))
    return JSONResponse(content=_public(webhook))


@router.delete("/{webhook_id}")
async def delete_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> Response:
    await engine.webhooks.delete(webhook_id)
    return Response(status_code=204)


@router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    """Send a test.ping to the endpoint once, synchronously."""
    result = await engine.dispatcher.test(webhook_id)
    if not result.success:
        return JSONResponse(content={"success": False, "error": result.error_message})
    return JSONResponse(
        content={"success": True, "statusCode": result.status_code, "durationMs": result.duration_ms}
    )


@router.get("/{webhook_id}/logs")
async def webhook_logs(
    webhook_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    logs = await engine.webhooks.logs(webhook_id, page=page, limit=limit)
    return JSONResponse(content={"page": page, "limit": limit, "logs": [dump(log) for log in logs]})


@router.post("/logs/{log_id}/retry")
async def retry_log(log_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    result = await engine.dispatcher.retry_log(log_id)
    return JSONResponse(content=result.to_wire())
