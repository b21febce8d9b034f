"""Connection flow: links Google accounts through the OAuth web-server flow."""

import logging

from calendar_bot.auth.google_oauth import GoogleOAuthClient
from calendar_bot.database.models import Account
from calendar_bot.services.account_store import AccountStore
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.notification_dispatcher import NotificationDispatcher
from calendar_bot.services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)


class ConnectionFlowController:
    """Starts and completes account links, and disconnects accounts."""

    def __init__(
        self,
        account_store: AccountStore,
        oauth_client: GoogleOAuthClient,
        calendar_client: GoogleCalendarClient,
        subscription_manager: SubscriptionManager,
        dispatcher: NotificationDispatcher,
    ):
        self.account_store = account_store
        self.oauth_client = oauth_client
        self.calendar_client = calendar_client
        self.subscription_manager = subscription_manager
        self.dispatcher = dispatcher

    async def start_link(self, user_id: str, nickname: str) -> str:
        """
        Begin linking an account.

        Returns:
            Authorization URL to send to the user

        Raises:
            DuplicateNicknameError: The nickname is already connected
            InvalidNicknameError: The nickname is empty or too long
        """
        link_token = await self.account_store.create_pending_link(user_id, nickname)
        return self.oauth_client.authorization_url(state=link_token)

    async def handle_callback(self, link_token: str, authorization_code: str) -> Account:
        """
        Complete a link from the OAuth redirect.

        Raises:
            ExpiredLinkTokenError: The link token is unknown, used, or expired
            DuplicateNicknameError: The nickname was connected meanwhile
        """
        # Reject stale links before spending the authorization code
        link = await self.account_store.get_link(link_token)
        logger.info(f"OAuth callback for user {link.user_id} nickname {link.nickname!r}")

        credential = await self.oauth_client.exchange_code(authorization_code)
        calendar_id = await self.calendar_client.get_primary_calendar_id(credential.access_token)
        account = await self.account_store.complete_link(link_token, credential, calendar_id)

        try:
            await self.dispatcher.notify_connected(account)
        except Exception as e:
            logger.error(f"Failed to confirm connection to user {account.user_id}: {e}")
        return account

    async def disconnect(self, user_id: str, nickname: str) -> None:
        """
        Disconnect an account; its nickname becomes reusable.

        Raises:
            AccountNotFoundError: No such account
        """
        account = await self.account_store.get(user_id, nickname)
        await self.subscription_manager.disconnect(account)
