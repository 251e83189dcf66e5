"""Outbound tenant webhooks fired when a user enters a state."""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from flowrouter.logging_config import get_logger
from flowrouter.schemas.dialogue import MAX_WEBHOOK_TIMEOUT_MS, WebhookConfig
from flowrouter.services.result import Result

logger = get_logger("webhook_sender")

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
MAX_RESPONSE_BODY = 2000
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 8.0


def build_state_payload(
    bot_id: str,
    user_id: int,
    state_key: str,
    previous_state: Optional[str] = None,
    profile: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    return {
        "event": "state_entered",
        "bot_id": bot_id,
        "user_id": user_id,
        "state": state_key,
        "previous_state": previous_state,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "user": profile or {},
    }


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _decode_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:MAX_RESPONSE_BODY]


def _is_retryable(result: Result) -> bool:
    if result.ok:
        return False
    if result.status is None:
        return True
    return result.status == 429 or result.status >= 500


async def send_webhook(
    client: httpx.AsyncClient,
    config: WebhookConfig,
    payload: dict[str, Any],
    timeout_ms: Optional[int] = None,
) -> Result[Any]:
    """Single delivery attempt; never raises for transport or HTTP errors."""
    timeout_ms = min(timeout_ms or config.timeout, MAX_WEBHOOK_TIMEOUT_MS)
    headers = {**config.headers, "User-Agent": "flowrouter-webhook/1.0"}
    body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    if config.signing_secret:
        headers[SIGNATURE_HEADER] = sign_body(body, config.signing_secret)
        headers[TIMESTAMP_HEADER] = str(int(time.time()))

    try:
        if config.method == "GET":
            params = {
                key: value if isinstance(value, str) else json.dumps(value, default=str)
                for key, value in payload.items()
                if value is not None
            }
            response = await client.get(config.url, params=params, headers=headers, timeout=timeout_ms / 1000)
        else:
            headers["Content-Type"] = "application/json"
            response = await client.post(config.url, content=body, headers=headers, timeout=timeout_ms / 1000)
    except httpx.TimeoutException:
        return Result.failure(f"Webhook timed out after {timeout_ms}ms", code="timeout")
    except httpx.HTTPError as exc:
        return Result.failure(f"{type(exc).__name__}: {exc}", code="transport_error")

    data = _decode_response(response)
    if 200 <= response.status_code < 300:
        return Result.success(data, status=response.status_code)
    return Result.failure(f"HTTP {response.status_code}", code="http_error", status=response.status_code, value=data)


async def send_webhook_with_retry(
    client: httpx.AsyncClient,
    config: WebhookConfig,
    payload: dict[str, Any],
    retry_count: Optional[int] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Result[Any]:
    """Deliver with exponential backoff; 4xx answers other than 429 are not retried."""
    retries = config.retry_count if retry_count is None else retry_count

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.info(
            "Webhook delivery failed, retrying",
            extra={
                "context": {
                    "url": config.url,
                    "attempt": retry_state.attempt_number,
                    "delay": retry_state.next_action.sleep,
                    "error": retry_state.outcome.result().error,
                }
            },
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=RETRY_BASE_DELAY_SECONDS, max=RETRY_MAX_DELAY_SECONDS),
        retry=retry_if_result(_is_retryable),
        before_sleep=_log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        sleep=sleep,
    )

    result = await retrying(send_webhook, client, config, payload)
    result.attempts = retrying.statistics["attempt_number"]

    if not result.ok:
        logger.warning(
            "Webhook delivery failed",
            extra={"context": {"url": config.url, "attempts": result.attempts, "error": result.error}},
        )
    return result
