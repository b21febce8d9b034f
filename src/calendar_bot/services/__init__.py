"""Services package."""

from calendar_bot.services.account_store import AccountStore
from calendar_bot.services.commands import CommandHandler
from calendar_bot.services.connection_flow import ConnectionFlowController
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.macro_store import MacroStore
from calendar_bot.services.notification_dispatcher import (
    ChatSender,
    LoggingChatSender,
    NotificationDispatcher,
)
from calendar_bot.services.renewal_scheduler import RenewalScheduler
from calendar_bot.services.subscription_manager import SubscriptionManager
from calendar_bot.services.token_manager import TokenManager
from calendar_bot.services.webhook_ingress import WebhookIngress

__all__ = [
    "AccountStore",
    "TokenManager",
    "GoogleCalendarClient",
    "SubscriptionManager",
    "RenewalScheduler",
    "WebhookIngress",
    "ChatSender",
    "LoggingChatSender",
    "NotificationDispatcher",
    "ConnectionFlowController",
    "CommandHandler",
    "MacroStore",
]
