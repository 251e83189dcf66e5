from typing import Any, Optional

import httpx

from flowrouter.exceptions import ProviderError
from flowrouter.logging_config import get_logger
from flowrouter.schemas.dialogue import MediaItem

logger = get_logger("telegram_service")

MEDIA_METHODS = {
    "photo": "sendPhoto",
    "video": "sendVideo",
    "document": "sendDocument",
    "audio": "sendAudio",
}


class TelegramService:
    """Async client for the Bot API methods used by the router and the broadcast pipeline."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, client: httpx.AsyncClient, timeout: float = 10.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.client = client
        self.timeout = timeout

    async def _make_request(self, method: str, data: Optional[dict] = None) -> Any:
        """Call a Bot API method and return its ``result``; raises ProviderError otherwise."""
        url = f"{self.base_url}/{method}"
        try:
            response = await self.client.post(url, json=data or {}, timeout=self.timeout)
            body = response.json()
        except httpx.HTTPError as exc:
            logger.error(
                "Telegram API transport error",
                extra={"context": {"method": method, "error": f"{type(exc).__name__}: {exc}"}},
            )
            raise ProviderError(method, f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(method, "invalid JSON response") from exc

        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description", "unknown error") if isinstance(body, dict) else "unknown error"
            error_code = body.get("error_code") if isinstance(body, dict) else None
            logger.warning(
                "Telegram API returned error",
                extra={"context": {"method": method, "error_code": error_code, "description": description}},
            )
            raise ProviderError(method, description, error_code)
        return body.get("result")

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> dict:
        """Send message to Telegram chat."""
        data: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup
        return await self._make_request("sendMessage", data)

    async def send_media(
        self,
        chat_id: int | str,
        media: MediaItem,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = "HTML",
        reply_markup: Optional[dict] = None,
    ) -> dict:
        """Send a single photo, video, document or audio by URL."""
        method = MEDIA_METHODS.get(media.type)
        if method is None:
            raise ValueError(f"Unsupported media type: {media.type}")
        data: dict[str, Any] = {"chat_id": chat_id, media.type: media.url}
        caption = caption if caption is not None else media.caption
        if caption:
            data["caption"] = caption
            if parse_mode:
                data["parse_mode"] = parse_mode
        if media.type == "video" and media.cover:
            data["cover"] = media.cover
        if reply_markup:
            data["reply_markup"] = reply_markup
        return await self._make_request(method, data)

    async def send_media_group(
        self,
        chat_id: int | str,
        items: list[MediaItem],
        parse_mode: Optional[str] = "HTML",
    ) -> list[dict]:
        media = []
        for item in items:
            entry: dict[str, Any] = {"type": item.type, "media": item.url}
            if item.caption:
                entry["caption"] = item.caption
                if parse_mode:
                    entry["parse_mode"] = parse_mode
            if item.type == "video" and item.cover:
                entry["cover"] = item.cover
            media.append(entry)
        return await self._make_request("sendMediaGroup", {"chat_id": chat_id, "media": media})

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> bool:
        data: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        if show_alert:
            data["show_alert"] = True
        return bool(await self._make_request("answerCallbackQuery", data))
