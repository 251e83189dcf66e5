"""Internal endpoints for the tenant-management collaborator: broadcast runs, webhook test sends, cache busting."""

import hmac
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from flowrouter.container import ServiceContainer
from flowrouter.logging_config import get_logger
from flowrouter.routers.deps import get_container
from flowrouter.schemas.dialogue import WebhookConfig
from flowrouter.services.broadcast_pipeline import BroadcastPipeline
from flowrouter.services.webhook_sender import build_state_payload, send_webhook

logger = get_logger("internal")

router = APIRouter(prefix="/internal")

TEST_WEBHOOK_TIMEOUT_MS = 3000


class WebhookTestRequest(WebhookConfig):
    payload: Optional[dict[str, Any]] = None
    bot_id: str = Field(default="test", alias="botId")
    state_key: str = Field(default="test", alias="stateKey")


class WebhookTestResponse(BaseModel):
    success: bool
    status: Optional[int] = None
    response: Optional[Any] = None
    error: Optional[str] = None


def _require_internal_secret(container: ServiceContainer, provided: Optional[str]) -> None:
    expected = container.settings.internal_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="INTERNAL_SECRET not configured",
        )
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal secret")


async def _run_broadcast_in_background(pipeline: BroadcastPipeline, broadcast_id: str) -> None:
    try:
        await pipeline.run(broadcast_id)
    except Exception as exc:
        logger.error(
            "Background broadcast run failed",
            extra={"context": {"broadcast_id": broadcast_id, "error": f"{type(exc).__name__}: {exc}"}},
        )


@router.post("/broadcasts/{broadcast_id}/process")
async def process_broadcast(
    broadcast_id: str,
    background_tasks: BackgroundTasks,
    wait: bool = False,
    container: ServiceContainer = Depends(get_container),
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
):
    _require_internal_secret(container, x_internal_secret)

    if wait:
        summary = await container.broadcast_pipeline.run(broadcast_id)
        return summary.to_dict()

    background_tasks.add_task(_run_broadcast_in_background, container.broadcast_pipeline, broadcast_id)
    logger.info("Broadcast run accepted", extra={"context": {"broadcast_id": broadcast_id}})
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"accepted": True, "broadcast_id": broadcast_id},
    )


@router.post("/test-webhook", response_model=WebhookTestResponse)
async def test_webhook(
    request: WebhookTestRequest,
    container: ServiceContainer = Depends(get_container),
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
):
    """Single capped delivery; nothing is persisted."""
    _require_internal_secret(container, x_internal_secret)

    payload = request.payload or build_state_payload(request.bot_id, 0, request.state_key)
    config = WebhookConfig.model_validate(request.model_dump(exclude={"payload", "bot_id", "state_key"}))
    result = await send_webhook(
        container.http_client,
        config,
        payload,
        timeout_ms=min(config.timeout, TEST_WEBHOOK_TIMEOUT_MS),
    )
    logger.info(
        "Test webhook sent",
        extra={"context": {"url": config.url, "success": result.ok, "status": result.status}},
    )
    return WebhookTestResponse(success=result.ok, status=result.status, response=result.value, error=result.error)


@router.post("/bots/{bot_id}/schema/invalidate")
async def invalidate_schema(
    bot_id: str,
    container: ServiceContainer = Depends(get_container),
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
):
    _require_internal_secret(container, x_internal_secret)
    invalidated = await container.schema_cache.invalidate(bot_id)
    return {"bot_id": bot_id, "invalidated": invalidated}
