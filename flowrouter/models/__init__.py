from flowrouter.models.analytics_event import AnalyticsEvent
from flowrouter.models.bot import Bot
from flowrouter.models.bot_user import BotUser
from flowrouter.models.broadcast import Broadcast, BroadcastMessage
from flowrouter.models.webhook_log import WebhookLog

__all__ = [
    "Bot",
    "BotUser",
    "Broadcast",
    "BroadcastMessage",
    "WebhookLog",
    "AnalyticsEvent",
]
