"""Provider integrations attached to dialogue states (Google Sheets, Telegram channel)."""

import json
import re
from typing import Any

import httpx

from flowrouter.exceptions import ProviderError
from flowrouter.logging_config import get_logger
from flowrouter.services.result import Result
from flowrouter.services.telegram_service import TelegramService

logger = get_logger("integrations")

DEFAULT_SHEET_COLUMNS = ["timestamp", "user_id", "state", "first_name", "username", "phone_number", "email"]
DEFAULT_CHANNEL_TEMPLATE = "New lead in state {{state}}\nUser: {{first_name}} (@{{username}})\nPhone: {{phone_number}}\nEmail: {{email}}"
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_]+)\s*\}\}")


def _flatten(payload: dict[str, Any]) -> dict[str, Any]:
    values = {key: value for key, value in payload.items() if key != "user"}
    values.update(payload.get("user") or {})
    return values


def render_template(template: str, payload: dict[str, Any]) -> str:
    values = _flatten(payload)

    def _replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def build_sheet_row(columns: list[str], payload: dict[str, Any]) -> list[Any]:
    values = _flatten(payload)
    return ["" if values.get(column) is None else values[column] for column in columns]


async def send_to_google_sheets(
    client: httpx.AsyncClient,
    config: dict[str, Any],
    payload: dict[str, Any],
    timeout_ms: int,
) -> Result[Any]:
    url = config.get("spreadsheetUrl")
    if not url:
        return Result.failure("Missing spreadsheetUrl in integration config", code="config_error")
    columns = config.get("columns") or DEFAULT_SHEET_COLUMNS
    body = {
        "sheetName": config.get("sheetName") or "Sheet1",
        "columns": columns,
        "row": build_sheet_row(columns, payload),
    }
    try:
        response = await client.post(
            url,
            content=json.dumps(body, ensure_ascii=False, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            timeout=timeout_ms / 1000,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        return Result.failure(f"{type(exc).__name__}: {exc}", code="transport_error")

    if 200 <= response.status_code < 300:
        return Result.success(response.text[:2000], status=response.status_code)
    return Result.failure(f"HTTP {response.status_code}", code="http_error", status=response.status_code)


async def send_to_telegram_channel(
    client: httpx.AsyncClient,
    bot_token: str,
    config: dict[str, Any],
    payload: dict[str, Any],
    timeout_ms: int,
) -> Result[Any]:
    channel_id = config.get("channelId")
    if not channel_id:
        return Result.failure("Missing channelId in integration config", code="config_error")
    text = render_template(config.get("messageTemplate") or DEFAULT_CHANNEL_TEMPLATE, payload)
    telegram = TelegramService(bot_token, client, timeout=timeout_ms / 1000)
    try:
        message = await telegram.send_message(channel_id, text, parse_mode=None)
    except ProviderError as exc:
        return Result.failure(exc.description, code="provider_error", status=exc.error_code)
    return Result.success({"message_id": (message or {}).get("message_id")}, status=200)
