"""Service wiring.

Builds the service graph from settings with every collaborator injected, so
the web server, the Celery tasks and the tests each own their instances.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_bot.auth.google_oauth import GoogleOAuthClient
from calendar_bot.config import Settings
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
from calendar_bot.utils.async_helpers import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired service graph."""

    account_store: AccountStore
    token_manager: TokenManager
    calendar_client: GoogleCalendarClient
    subscription_manager: SubscriptionManager
    dispatcher: NotificationDispatcher
    ingress: WebhookIngress
    connection_flow: ConnectionFlowController
    scheduler: RenewalScheduler
    commands: CommandHandler
    macros: MacroStore

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.calendar_client.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    chat_sender: Optional[ChatSender] = None,
    oauth_client: Optional[GoogleOAuthClient] = None,
    calendar_client: Optional[GoogleCalendarClient] = None,
) -> Services:
    """Wire the services for one process."""
    oauth_client = oauth_client or GoogleOAuthClient(
        settings.google,
        redirect_uri=settings.oauth_redirect_url,
        timeout=settings.provider_timeout_seconds,
    )
    calendar_client = calendar_client or GoogleCalendarClient(timeout=settings.provider_timeout_seconds)
    chat_sender = chat_sender or LoggingChatSender()

    account_store = AccountStore(
        session_factory,
        link_token_ttl=timedelta(minutes=settings.link_token_ttl_minutes),
    )
    token_manager = TokenManager(
        account_store,
        oauth_client,
        refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )
    subscription_manager = SubscriptionManager(
        session_factory,
        account_store,
        token_manager,
        calendar_client,
        webhook_url=settings.webhook_url,
        channel_ttl=timedelta(days=settings.renewal.channel_ttl_days),
        account_locks=KeyedLock(),
    )
    dispatcher = NotificationDispatcher(chat_sender, token_manager, calendar_client)
    ingress = WebhookIngress(session_factory, subscription_manager, token_manager, calendar_client, dispatcher)
    connection_flow = ConnectionFlowController(
        account_store,
        oauth_client,
        calendar_client,
        subscription_manager,
        dispatcher,
    )
    scheduler = RenewalScheduler(
        subscription_manager,
        dispatcher,
        account_store=account_store,
        window=timedelta(hours=settings.renewal.window_hours),
        interval=timedelta(minutes=settings.renewal.interval_minutes),
        max_failures=settings.renewal.max_failures,
    )
    commands = CommandHandler(
        account_store,
        connection_flow,
        subscription_manager,
        token_manager,
        calendar_client,
        dispatcher,
    )

    logger.info(f"Services wired (webhook URL {settings.webhook_url})")
    return Services(
        account_store=account_store,
        token_manager=token_manager,
        calendar_client=calendar_client,
        subscription_manager=subscription_manager,
        dispatcher=dispatcher,
        ingress=ingress,
        connection_flow=connection_flow,
        scheduler=scheduler,
        commands=commands,
        macros=MacroStore(session_factory),
    )
