"""Public inbound webhook: one Telegram update per request, routed to the tenant's dialogue."""

import hmac
import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from flowrouter.container import ServiceContainer
from flowrouter.exceptions import (
    AuthorizationError,
    DefinitionError,
    DependencyUnavailableError,
    NotFoundError,
    PayloadTooLargeError,
    RateLimitExceededError,
    ValidationError,
    classify_error,
)
from flowrouter.logging_config import LoggerAdapter, get_logger
from flowrouter.routers.deps import get_container
from flowrouter.schemas.telegram import TelegramUpdate, WebhookAck
from flowrouter.services.bot_service import BotRecord
from flowrouter.services.dialogue_engine import BotContext
from flowrouter.services.rate_limiter import is_valid_bot_id

logger = get_logger("webhook")

router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def _reject(exc: ValidationError | AuthorizationError | NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.code, "detail": str(exc)})


def _rate_limited(exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.code, "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


async def _read_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError(f"Body exceeds {max_bytes} bytes")
    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise PayloadTooLargeError(f"Body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_update(body: bytes) -> TelegramUpdate:
    try:
        return TelegramUpdate.model_validate(json.loads(body))
    except ValueError as exc:
        raise ValidationError(f"Invalid update payload: {exc}") from exc


async def _admit(
    container: ServiceContainer,
    request: Request,
    bot_id: str,
    secret_token: Optional[str],
) -> tuple[BotRecord, TelegramUpdate]:
    """Rate limits, input checks and tenant authentication, in that order."""
    await container.rate_limiter.check_global()
    await container.rate_limiter.check_bot(bot_id)
    if not is_valid_bot_id(bot_id):
        raise ValidationError("Malformed bot id")

    body = await _read_body(request, container.settings.max_payload_bytes)
    update = _parse_update(body)

    if not secret_token:
        raise AuthorizationError("Missing secret token")
    bot = await container.bots.get_bot(bot_id)
    if bot is None:
        raise NotFoundError(f"Bot {bot_id} not found")
    if not bot.webhook_secret or not hmac.compare_digest(
        secret_token.encode("utf-8"), bot.webhook_secret.encode("utf-8")
    ):
        raise AuthorizationError("Invalid secret token")
    return bot, update


async def _process(container: ServiceContainer, bot: BotRecord, update: TelegramUpdate, log: LoggerAdapter) -> str:
    token = container.decrypt_token(bot.token)
    definition = None
    try:
        cached = await container.schema_cache.get(bot.id)
        definition = cached.definition if cached is not None else None
    except DefinitionError as exc:
        log.error("Stored dialogue definition is invalid", context={"error": str(exc)})

    ctx = BotContext(
        bot_id=bot.id,
        bot_token=token,
        telegram=container.telegram(token),
        definition=definition,
        request_id=log.extra.get("request_id", ""),
    )
    outcome = await container.engine.handle_update(ctx, update)
    return outcome.value


@router.post("/webhook/{bot_id}", response_model=WebhookAck)
async def handle_webhook(
    bot_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
    secret_token: Optional[str] = Header(default=None, alias=SECRET_HEADER),
):
    log = LoggerAdapter(logger, {"bot_id": bot_id, "request_id": uuid.uuid4().hex[:12]})

    try:
        bot, update = await _admit(container, request, bot_id, secret_token)
    except RateLimitExceededError as exc:
        return _rate_limited(exc)
    except (ValidationError, AuthorizationError, NotFoundError) as exc:
        log.warning("Webhook rejected", context={"error": exc.code, "detail": str(exc)})
        return _reject(exc)
    except DependencyUnavailableError as exc:
        log.error("Webhook admission failed, dependency unavailable", context={"error": str(exc)})
        return WebhookAck(ok=False, error=DependencyUnavailableError.code)
    except Exception as exc:
        code, _ = classify_error(exc)
        log.error("Webhook admission failed", context={"error": str(exc), "category": code}, exc_info=True)
        return WebhookAck(ok=False, error=code)

    log = log.bind(update_id=update.update_id)
    try:
        outcome = await _process(container, bot, update, log)
    except DependencyUnavailableError as exc:
        log.error("Update processing failed, dependency unavailable", context={"error": str(exc)})
        return WebhookAck(ok=False, error=DependencyUnavailableError.code)
    except Exception as exc:
        code, status_code = classify_error(exc)
        log.error(
            "Update processing failed",
            context={"error": str(exc), "category": code, "status": status_code},
            exc_info=True,
        )
        return WebhookAck(ok=False, error=code)

    return WebhookAck(ok=True, detail=outcome)


@router.get("/webhook/{bot_id}")
async def webhook_status(bot_id: str):
    return {"ok": True, "bot_id": bot_id, "valid": is_valid_bot_id(bot_id)}
