"""
Dialogue execution: one state-machine step per inbound update.

The user's current state key is read at most once and written at most once per
update. Rendering picks exactly one layout, by precedence: media group, single
media, contact request, email request, inline keyboard, plain text.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import httpx

from flowrouter.exceptions import ProviderError
from flowrouter.logging_config import LoggerAdapter, get_logger
from flowrouter.schemas.dialogue import (
    DialogueDefinition,
    NavigationButton,
    RequestContactButton,
    RequestEmailButton,
    State,
    UrlButton,
)
from flowrouter.schemas.telegram import TelegramUpdate, TelegramUser
from flowrouter.services.analytics_service import AnalyticsEventType, AnalyticsService
from flowrouter.services.bot_user_service import BotUserRepository
from flowrouter.services.broadcast_service import BroadcastRepository
from flowrouter.services.integrations import send_to_google_sheets, send_to_telegram_channel
from flowrouter.services.pending_input import PendingInput, PendingInputTracker, PendingKind
from flowrouter.services.result import Result
from flowrouter.services.side_effects import SideEffectRunner
from flowrouter.services.state_store import UpdateDeduplicator, UserStateStore
from flowrouter.services.telegram_service import TelegramService
from flowrouter.services.text_format import normalize_text
from flowrouter.services.webhook_log_service import WebhookLogService
from flowrouter.services.webhook_sender import build_state_payload, send_webhook, send_webhook_with_retry

logger = get_logger("dialogue_engine")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SKIP_COMMAND = "/skip"
BROADCAST_CALLBACK_PREFIX = "broadcast:"
BROADCAST_ENGAGEMENT_WINDOW_HOURS = 24
INLINE_BUTTONS_PER_ROW = 2

MSG_SESSION_EXPIRED = "Session expired, try again"
MSG_CONTACT_SAVED = "Thanks! Your number has been saved."
MSG_EMAIL_PROMPT = "Enter your email (or /skip)"
MSG_INVALID_EMAIL = "Please enter a valid email."
MSG_NOT_CONFIGURED = "This bot is not configured yet."


class UpdateOutcome(str, Enum):
    RENDERED = "rendered"
    EXPIRED = "expired"
    REJECTED = "rejected"
    REPROMPTED = "reprompted"
    IGNORED = "ignored"


@dataclass
class BotContext:
    bot_id: str
    bot_token: str
    telegram: TelegramService
    definition: Optional[DialogueDefinition] = None
    request_id: str = ""


def is_valid_email(value: str) -> bool:
    return EMAIL_PATTERN.match(value) is not None


def parse_callback_data(data: str) -> tuple[str, Optional[str]]:
    """``broadcast:<messageId>:<state>`` carries the broadcast message id ahead of the target state."""
    if data.startswith(BROADCAST_CALLBACK_PREFIX):
        parts = data.split(":")
        broadcast_message_id = (parts[1] or None) if len(parts) > 1 else None
        target = ":".join(parts[2:]) or data
        return target, broadcast_message_id
    return data, None


def build_inline_keyboard(buttons: list[Union[NavigationButton, UrlButton]]) -> Optional[dict[str, Any]]:
    if not buttons:
        return None
    keys = []
    for button in buttons:
        if isinstance(button, NavigationButton):
            keys.append({"text": button.text, "callback_data": button.next_state})
        elif isinstance(button, UrlButton):
            keys.append({"text": button.text, "url": button.url})
        else:
            raise TypeError(f"Unsupported inline button: {type(button).__name__}")
    rows = [keys[i:i + INLINE_BUTTONS_PER_ROW] for i in range(0, len(keys), INLINE_BUTTONS_PER_ROW)]
    return {"inline_keyboard": rows}


def build_contact_keyboard(button: RequestContactButton) -> dict[str, Any]:
    return {
        "keyboard": [[{"text": button.text, "request_contact": True}]],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


class DialogueEngine:
    def __init__(
        self,
        *,
        user_states: UserStateStore,
        pending: PendingInputTracker,
        deduplicator: UpdateDeduplicator,
        bot_users: BotUserRepository,
        analytics: AnalyticsService,
        broadcasts: BroadcastRepository,
        webhook_logs: WebhookLogService,
        side_effects: SideEffectRunner,
        http_client: httpx.AsyncClient,
        serverless: bool = False,
        webhook_timeout_ms: int = 10000,
        serverless_timeout_ms: int = 3000,
    ):
        self.user_states = user_states
        self.pending = pending
        self.deduplicator = deduplicator
        self.bot_users = bot_users
        self.analytics = analytics
        self.broadcasts = broadcasts
        self.webhook_logs = webhook_logs
        self.side_effects = side_effects
        self.http_client = http_client
        self.serverless = serverless
        self.webhook_timeout_ms = webhook_timeout_ms
        self.serverless_timeout_ms = serverless_timeout_ms

    def _log(self, ctx: BotContext, user_id: Optional[int]) -> LoggerAdapter:
        return LoggerAdapter(logger, {"bot_id": ctx.bot_id, "user_id": user_id, "request_id": ctx.request_id})

    async def handle_update(self, ctx: BotContext, update: TelegramUpdate) -> UpdateOutcome:
        if ctx.definition is None:
            return await self.handle_unconfigured(ctx, update)
        if update.callback_query is not None:
            return await self._handle_callback(ctx, update)
        if update.message is not None:
            return await self._handle_message(ctx, update)
        return UpdateOutcome.IGNORED

    async def handle_unconfigured(self, ctx: BotContext, update: TelegramUpdate) -> UpdateOutcome:
        if update.callback_query is not None:
            await self._answer_callback(ctx, update.callback_query.id, update.callback_query.from_user.id)
        elif update.message is not None:
            await ctx.telegram.send_message(update.message.chat.id, MSG_NOT_CONFIGURED, parse_mode=None)
        return UpdateOutcome.IGNORED

    async def _answer_callback(self, ctx: BotContext, callback_query_id: str, user_id: int, text: Optional[str] = None) -> None:
        try:
            await ctx.telegram.answer_callback_query(callback_query_id, text)
        except ProviderError as exc:
            self._log(ctx, user_id).warning("Failed to answer callback query", context={"error": str(exc)})

    async def _first_delivery(self, ctx: BotContext, update_id: int, user_id: int) -> bool:
        """Claim the update id; redeliveries are still rendered but not accounted again."""
        try:
            first = await self.deduplicator.mark_processed(ctx.bot_id, update_id)
        except Exception as exc:
            self._log(ctx, user_id).warning("Update dedup unavailable", context={"error": str(exc)})
            return True
        if not first:
            self._log(ctx, user_id).info("Duplicate update, skipping accounting", context={"update_id": update_id})
        return first

    async def _track_engagement(
        self,
        ctx: BotContext,
        user_id: int,
        *,
        telegram_message_id: Optional[int],
        broadcast_message_id: Optional[str] = None,
        click: bool,
    ) -> Optional[str]:
        """Attribute a click or reply to a broadcast message."""
        log = self._log(ctx, user_id)
        try:
            attributed = None
            if telegram_message_id:
                attributed = await self.broadcasts.find_by_telegram_message(ctx.bot_id, user_id, telegram_message_id)
            if not attributed and broadcast_message_id:
                attributed = broadcast_message_id
            if not attributed:
                attributed = await self.broadcasts.find_recent_sent(
                    ctx.bot_id, user_id, BROADCAST_ENGAGEMENT_WINDOW_HOURS
                )
                if attributed:
                    log.info("Broadcast engagement attributed via fallback window", context={"broadcast_message_id": attributed})
            if attributed:
                await self.broadcasts.record_engagement(attributed, click=click)
            return attributed
        except Exception as exc:
            log.warning("Failed to track broadcast engagement", context={"error": str(exc)})
            return None

    async def _upsert_user(self, ctx: BotContext, update_id: int, user: TelegramUser) -> None:
        try:
            interaction_count = await self.bot_users.upsert(ctx.bot_id, user)
        except Exception as exc:
            self._log(ctx, user.id).warning("Failed to upsert bot user", context={"error": str(exc)})
            return
        if interaction_count == 1:
            await self.analytics.log_event(ctx.bot_id, user.id, AnalyticsEventType.BOT_START, update_id=update_id)

    async def _save_contact(self, ctx: BotContext, user_id: int, **fields: Optional[str]) -> None:
        try:
            await self.bot_users.update_contact(ctx.bot_id, user_id, **fields)
        except Exception as exc:
            self._log(ctx, user_id).warning("Failed to save collected contact", context={"error": str(exc)})

    async def _handle_callback(self, ctx: BotContext, update: TelegramUpdate) -> UpdateOutcome:
        callback = update.callback_query
        user_id = callback.from_user.id
        chat_id = update.chat_id
        log = self._log(ctx, user_id)

        if not callback.data or chat_id is None:
            log.warning("Callback query without data or chat", context={"update_id": update.update_id})
            await self._answer_callback(ctx, callback.id, user_id)
            return UpdateOutcome.IGNORED

        target, broadcast_message_id = parse_callback_data(callback.data)
        first_delivery = await self._first_delivery(ctx, update.update_id, user_id)
        if first_delivery:
            await self._track_engagement(
                ctx,
                user_id,
                telegram_message_id=callback.message.message_id if callback.message else None,
                broadcast_message_id=broadcast_message_id,
                click=True,
            )

        definition = ctx.definition
        if target not in definition.states:
            log.warning("Button points to unknown state", context={"state": target})
            await self._answer_callback(ctx, callback.id, user_id, MSG_SESSION_EXPIRED)
            return UpdateOutcome.EXPIRED

        previous_state = await self.user_states.get(ctx.bot_id, user_id)
        button_text = target
        previous = definition.get_state(previous_state)
        if previous is not None:
            for button in previous.buttons:
                if getattr(button, "next_state", None) == target:
                    button_text = button.text
                    break

        if first_delivery:
            await self.analytics.log_event(
                ctx.bot_id,
                user_id,
                AnalyticsEventType.BUTTON_CLICK,
                update_id=update.update_id,
                state_from=previous_state,
                state_to=target,
                button_text=button_text,
            )
            if target != previous_state:
                await self.analytics.log_event(
                    ctx.bot_id,
                    user_id,
                    AnalyticsEventType.STATE_TRANSITION,
                    update_id=update.update_id,
                    state_from=previous_state,
                    state_to=target,
                    button_text=button_text,
                )

        await self.user_states.set(ctx.bot_id, user_id, target)
        await self.render_state(ctx, chat_id, user_id, target, previous_state)
        await self._answer_callback(ctx, callback.id, user_id)
        log.info("Button handled", context={"from": previous_state, "to": target})
        return UpdateOutcome.RENDERED

    async def _advance(self, ctx: BotContext, chat_id: int, user_id: int, pending: PendingInput) -> UpdateOutcome:
        if ctx.definition.get_state(pending.target_state) is None:
            self._log(ctx, user_id).warning("Pending target state no longer exists", context={"state": pending.target_state})
            return UpdateOutcome.IGNORED
        await self.user_states.set(ctx.bot_id, user_id, pending.target_state)
        await self.render_state(ctx, chat_id, user_id, pending.target_state, pending.origin_state)
        return UpdateOutcome.RENDERED

    async def _handle_message(self, ctx: BotContext, update: TelegramUpdate) -> UpdateOutcome:
        message = update.message
        user = message.from_user
        if user is None:
            logger.warning("Message without sender", extra={"context": {"bot_id": ctx.bot_id}})
            return UpdateOutcome.IGNORED
        chat_id = message.chat.id
        log = self._log(ctx, user.id)

        if await self._first_delivery(ctx, update.update_id, user.id):
            await self._track_engagement(
                ctx,
                user.id,
                telegram_message_id=message.reply_to_message.message_id if message.reply_to_message else None,
                click=False,
            )

        pending = await self.pending.get(ctx.bot_id, user.id)

        if message.contact is not None and pending is not None and pending.kind == PendingKind.CONTACT:
            await self._upsert_user(ctx, update.update_id, user)
            contact = message.contact
            if contact.user_id is not None and contact.user_id != user.id:
                log.warning("Contact belongs to another user, ignoring", context={"contact_user_id": contact.user_id})
                return UpdateOutcome.REJECTED

            await self._save_contact(ctx, user.id, phone_number=contact.phone_number)
            await self.pending.clear(ctx.bot_id, user.id)
            await self.analytics.log_event(
                ctx.bot_id,
                user.id,
                AnalyticsEventType.CONTACT_SHARED,
                update_id=update.update_id,
                state_from=pending.origin_state,
                state_to=pending.target_state,
            )
            await ctx.telegram.send_message(
                chat_id, MSG_CONTACT_SAVED, reply_markup={"remove_keyboard": True}, parse_mode=None
            )
            log.info("Contact collected", context={"target": pending.target_state})
            return await self._advance(ctx, chat_id, user.id, pending)

        if message.text is not None and pending is not None and pending.kind == PendingKind.EMAIL:
            await self._upsert_user(ctx, update.update_id, user)
            raw_email = message.text.strip()
            if raw_email.lower() == SKIP_COMMAND:
                await self.pending.clear(ctx.bot_id, user.id)
                return await self._advance(ctx, chat_id, user.id, pending)

            if not is_valid_email(raw_email):
                await ctx.telegram.send_message(chat_id, MSG_INVALID_EMAIL, parse_mode=None)
                return UpdateOutcome.REPROMPTED

            await self._save_contact(ctx, user.id, email=raw_email)
            await self.pending.clear(ctx.bot_id, user.id)
            await self.analytics.log_event(
                ctx.bot_id,
                user.id,
                AnalyticsEventType.EMAIL_SHARED,
                update_id=update.update_id,
                state_from=pending.origin_state,
                state_to=pending.target_state,
            )
            log.info("Email collected", context={"target": pending.target_state})
            return await self._advance(ctx, chat_id, user.id, pending)

        await self._upsert_user(ctx, update.update_id, user)
        current_state = await self.user_states.get(ctx.bot_id, user.id)
        if ctx.definition.get_state(current_state) is None:
            current_state = ctx.definition.initial_state
            await self.user_states.set(ctx.bot_id, user.id, current_state)
        await self.render_state(ctx, chat_id, user.id, current_state, None)
        return UpdateOutcome.RENDERED

    async def render_state(
        self,
        ctx: BotContext,
        chat_id: int,
        user_id: int,
        state_key: str,
        previous_state: Optional[str],
    ) -> None:
        state = ctx.definition.get_state(state_key)
        log = self._log(ctx, user_id)
        if state is None:
            log.error("State not found in definition", context={"state": state_key})
            return

        parse_mode = state.parse_mode.value
        text = normalize_text(state.message, parse_mode)
        request_button = state.request_button
        contact_markup = build_contact_keyboard(request_button) if isinstance(request_button, RequestContactButton) else None
        inline_markup = build_inline_keyboard(state.buttons) if request_button is None else None
        reply_markup = contact_markup or inline_markup

        if state.media_group:
            layout = "media_group"
            await ctx.telegram.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode)
            try:
                await ctx.telegram.send_media_group(chat_id, state.media_group, parse_mode=parse_mode)
            except ProviderError as exc:
                log.error("Failed to send media group", context={"state": state_key, "error": str(exc)})
        elif state.media is not None:
            layout = "media"
            caption = normalize_text(state.media.caption or state.message, parse_mode)
            try:
                await ctx.telegram.send_media(chat_id, state.media, caption, parse_mode=parse_mode, reply_markup=reply_markup)
            except ProviderError as exc:
                log.error("Failed to send media, falling back to text", context={"state": state_key, "error": str(exc)})
                await ctx.telegram.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode)
        elif isinstance(request_button, RequestContactButton):
            layout = "request_contact"
            await ctx.telegram.send_message(chat_id, text, reply_markup=contact_markup, parse_mode=parse_mode)
        elif isinstance(request_button, RequestEmailButton):
            layout = "request_email"
            await ctx.telegram.send_message(chat_id, text, parse_mode=parse_mode)
        elif inline_markup is not None:
            layout = "inline"
            await ctx.telegram.send_message(chat_id, text, reply_markup=inline_markup, parse_mode=parse_mode)
        else:
            layout = "text"
            await ctx.telegram.send_message(chat_id, text, parse_mode=parse_mode)

        if isinstance(request_button, RequestEmailButton):
            await ctx.telegram.send_message(chat_id, MSG_EMAIL_PROMPT, parse_mode=None)
            await self.pending.set(ctx.bot_id, user_id, PendingKind.EMAIL, request_button.next_state, state_key)
        elif isinstance(request_button, RequestContactButton):
            await self.pending.set(ctx.bot_id, user_id, PendingKind.CONTACT, request_button.next_state, state_key)

        log.info("State rendered", context={"state": state_key, "layout": layout})

        has_webhook = state.webhook is not None and state.webhook.enabled
        has_integration = state.integration is not None and state.integration.type != "custom"
        if has_webhook or has_integration:
            await self.side_effects.run(
                f"state:{state_key}",
                self.dispatch_side_effects(ctx, state_key, state, user_id, previous_state),
                context={"bot_id": ctx.bot_id, "user_id": user_id, "state": state_key},
            )

    async def dispatch_side_effects(
        self,
        ctx: BotContext,
        state_key: str,
        state: State,
        user_id: int,
        previous_state: Optional[str],
    ) -> None:
        profile = await self.bot_users.get_profile(ctx.bot_id, user_id)
        payload = build_state_payload(ctx.bot_id, user_id, state_key, previous_state, profile)

        deliveries = []
        if state.webhook is not None and state.webhook.enabled:
            deliveries.append(self._deliver_webhook(ctx, state_key, state, user_id, payload))
        if state.integration is not None and state.integration.type != "custom":
            deliveries.append(self._deliver_integration(ctx, state_key, state, user_id, payload))

        results = await asyncio.gather(*deliveries, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _deliver_webhook(
        self,
        ctx: BotContext,
        state_key: str,
        state: State,
        user_id: int,
        payload: dict[str, Any],
    ) -> Result:
        config = state.webhook
        try:
            if self.serverless:
                timeout_ms = min(config.timeout, self.serverless_timeout_ms)
                result = await send_webhook(self.http_client, config, payload, timeout_ms=timeout_ms)
            else:
                result = await send_webhook_with_retry(self.http_client, config, payload)
        except Exception as exc:
            await self.webhook_logs.record(
                ctx.bot_id, state_key, user_id, config.url, None, None, None, str(exc), config.retry_count
            )
            raise
        await self.webhook_logs.record(
            ctx.bot_id,
            state_key,
            user_id,
            config.url,
            payload,
            result.status,
            result.value,
            result.error,
            max(0, result.attempts - 1),
        )
        return result

    async def _deliver_integration(
        self,
        ctx: BotContext,
        state_key: str,
        state: State,
        user_id: int,
        payload: dict[str, Any],
    ) -> Result:
        integration = state.integration
        envelope = {"provider": integration.type, "data": payload}
        timeout_ms = self.serverless_timeout_ms if self.serverless else self.webhook_timeout_ms
        started = time.monotonic()
        target = f"integration:{integration.type}"
        try:
            if integration.type == "google_sheets":
                target = integration.config.get("spreadsheetUrl") or target
                result = await send_to_google_sheets(self.http_client, integration.config, payload, timeout_ms)
            elif integration.type == "telegram_channel":
                channel_id = integration.config.get("channelId")
                target = f"telegram_channel:{channel_id}" if channel_id else target
                result = await send_to_telegram_channel(
                    self.http_client, ctx.bot_token, integration.config, payload, timeout_ms
                )
            else:
                raise ValueError(f"Unsupported integration: {integration.type}")
        except Exception as exc:
            await self.webhook_logs.record(
                ctx.bot_id,
                state_key,
                user_id,
                target,
                None,
                None,
                {"duration_ms": int((time.monotonic() - started) * 1000)},
                str(exc),
                0,
            )
            raise

        await self.webhook_logs.record(
            ctx.bot_id,
            state_key,
            user_id,
            target,
            envelope,
            result.status,
            {"duration_ms": int((time.monotonic() - started) * 1000), "response": result.value},
            result.error,
            0,
        )
        if not result.ok:
            self._log(ctx, user_id).warning(
                "Integration delivery failed",
                context={"state": state_key, "integration": integration.type, "error": result.error},
            )
        return result
