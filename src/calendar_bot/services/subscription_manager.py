"""Subscription manager: watch channel lifecycle per connected account.

The subscriptions table is the authoritative map from channel ID to account.
Renewal opens the replacement channel first, then swaps the rows in one
transaction, so an account always has exactly one active row and the old
channel keeps delivering until the swap commits.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_bot.database.models import Account, Subscription, SubscriptionStatus
from calendar_bot.database.repositories import (
    AccountRepository,
    SubscriptionRepository,
    TrackedEventRepository,
)
from calendar_bot.database.session import session_scope
from calendar_bot.models.calendar import WatchChannel
from calendar_bot.services.account_store import AccountStore
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.token_manager import TokenManager
from calendar_bot.utils.async_helpers import KeyedLock
from calendar_bot.utils.errors import (
    AccountNotConnectedError,
    AlreadySubscribedError,
    AuthRevokedError,
    CalendarBotError,
    UnknownChannelError,
)

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Creates, renews and tears down watch channels."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        account_store: AccountStore,
        token_manager: TokenManager,
        calendar_client: GoogleCalendarClient,
        webhook_url: str,
        channel_ttl: timedelta = timedelta(days=7),
        account_locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.account_store = account_store
        self.token_manager = token_manager
        self.calendar_client = calendar_client
        self.webhook_url = webhook_url
        self.channel_ttl = channel_ttl
        # Shared with the webhook ingress so renewal and notification handling
        # for one account never interleave
        self.account_locks = account_locks or KeyedLock()

    async def _open_channel(self, access_token: str, calendar_id: str) -> Tuple[WatchChannel, str]:
        verification_token = secrets.token_urlsafe(32)
        channel = await self.calendar_client.watch_events(
            access_token,
            calendar_id,
            channel_id=str(uuid.uuid4()),
            address=self.webhook_url,
            verification_token=verification_token,
            ttl_seconds=int(self.channel_ttl.total_seconds()),
        )
        return channel, verification_token

    async def _stop_quietly(self, access_token: Optional[str], channel_id: str, resource_id: Optional[str]) -> bool:
        """Stop a channel at the provider; failures are logged and the channel left to expire."""
        if access_token is None or resource_id is None:
            return False
        try:
            await self.calendar_client.stop_channel(access_token, channel_id, resource_id)
            return True
        except CalendarBotError as e:
            logger.warning(f"Failed to stop channel {channel_id}, it will expire on its own: {e.message}")
            return False

    async def subscribe(self, account: Account) -> Subscription:
        """
        Open a watch channel on the account's primary calendar.

        Invites already on the calendar are recorded as a baseline so only
        later changes are notified.

        Raises:
            AccountNotConnectedError: The account is pending or revoked
            AlreadySubscribedError: An active subscription exists
        """
        if not account.is_connected:
            raise AccountNotConnectedError(account.nickname)
        calendar_id = account.calendar_id or "primary"

        async with self.account_locks(account.id):
            async with session_scope(self.session_factory) as session:
                existing = await SubscriptionRepository(session).get_active_for_account(account.id, calendar_id)
            if existing is not None:
                raise AlreadySubscribedError(account.nickname)

            token = await self.token_manager.get_valid_token(account.id)
            channel, verification_token = await self._open_channel(token, calendar_id)
            try:
                # Listing after the watch starts means no change falls between the two
                events, sync_token = await self.calendar_client.list_events(token, calendar_id)
                async with session_scope(self.session_factory) as session:
                    stored = await AccountRepository(session).get_by_id(account.id, for_update=True)
                    subscription = await SubscriptionRepository(session).create(
                        channel_id=channel.id,
                        account_id=account.id,
                        calendar_id=calendar_id,
                        resource_id=channel.resource_id,
                        verification_token=verification_token,
                        expires_at=channel.expires_at,
                        status=SubscriptionStatus.ACTIVE,
                        sync_token=sync_token,
                    )
                    tracked = TrackedEventRepository(session)
                    for event in events:
                        if event.is_invite and not event.is_cancelled:
                            await tracked.upsert(account.id, event.id, event.updated, event.status)
                    if stored is not None:
                        stored.subscription_lapsed = False
            except IntegrityError as e:
                await self._stop_quietly(token, channel.id, channel.resource_id)
                raise AlreadySubscribedError(account.nickname) from e
            except Exception:
                await self._stop_quietly(token, channel.id, channel.resource_id)
                raise

        logger.info(
            f"Subscribed account {account.id} calendar {calendar_id} on channel {channel.id}, "
            f"expires {channel.expires_at.isoformat()}"
        )
        return subscription

    async def renew(self, subscription: Subscription) -> Subscription:
        """
        Replace a channel before it expires.

        Raises:
            UnknownChannelError: The subscription was superseded or torn down meanwhile
        """
        account_id = subscription.account_id
        async with self.account_locks(account_id):
            token = await self.token_manager.get_valid_token(account_id)
            channel, verification_token = await self._open_channel(token, subscription.calendar_id)

            try:
                async with session_scope(self.session_factory) as session:
                    # The account row lock orders this swap against a teardown in another process
                    await AccountRepository(session).get_by_id(account_id, for_update=True)
                    subscriptions = SubscriptionRepository(session)
                    current = await subscriptions.get(subscription.channel_id, for_update=True)
                    if current is None or not current.is_active:
                        raise UnknownChannelError(subscription.channel_id)
                    current.status = SubscriptionStatus.SUPERSEDED
                    # The partial unique index only admits the new row once the old one is superseded
                    await session.flush()
                    replacement = await subscriptions.create(
                        channel_id=channel.id,
                        account_id=account_id,
                        calendar_id=current.calendar_id,
                        resource_id=channel.resource_id,
                        verification_token=verification_token,
                        expires_at=channel.expires_at,
                        status=SubscriptionStatus.ACTIVE,
                        renewal_failures=0,
                        sync_token=current.sync_token,
                    )
                    old_resource_id = current.resource_id
            except Exception:
                await self._stop_quietly(token, channel.id, channel.resource_id)
                raise

            logger.info(
                f"Renewed channel {subscription.channel_id} -> {channel.id} for account {account_id}, "
                f"expires {channel.expires_at.isoformat()}"
            )

            if await self._stop_quietly(token, subscription.channel_id, old_resource_id):
                await self._delete_row(subscription.channel_id)

        return replacement

    async def _delete_row(self, channel_id: str) -> None:
        async with session_scope(self.session_factory) as session:
            subscriptions = SubscriptionRepository(session)
            row = await subscriptions.get(channel_id, for_update=True)
            if row is not None:
                await subscriptions.delete(row)

    async def unsubscribe(self, account: Account) -> None:
        """Stop every channel of the account and drop its rows. Idempotent."""
        async with self.account_locks(account.id):
            await self._teardown(account)

    async def disconnect(self, account: Account) -> None:
        """Tear down the account's channels, then delete the account."""
        async with self.account_locks(account.id):
            await self._teardown(account)
            await self.account_store.delete(account.id)
        logger.info(f"Disconnected account {account.id} ({account.nickname!r})")

    async def teardown_lapsed(self, subscription: Subscription) -> Optional[Account]:
        """
        Remove a subscription the scheduler gave up renewing and flag the account.

        Returns:
            The flagged account, or None if it no longer exists
        """
        async with self.account_locks(subscription.account_id):
            async with session_scope(self.session_factory) as session:
                account = await AccountRepository(session).get_by_id(subscription.account_id)
            if account is None:
                await self._delete_row(subscription.channel_id)
                return None
            await self._teardown(account)
            await self.account_store.set_subscription_lapsed(account.id, True)
            account.subscription_lapsed = True
        logger.warning(f"Subscription lapsed for account {account.id} ({account.nickname!r})")
        return account

    async def _teardown(self, account: Account) -> None:
        async with session_scope(self.session_factory) as session:
            rows = await SubscriptionRepository(session).list_for_account(account.id)
        if not rows:
            return

        token: Optional[str] = None
        try:
            token = await self.token_manager.get_valid_token(account.id)
        except (AuthRevokedError, AccountNotConnectedError):
            logger.info(f"Account {account.id} has no usable token, channels will expire on their own")
        except CalendarBotError as e:
            logger.warning(f"Could not get token to stop channels of account {account.id}: {e.message}")

        attempted = set()
        for row in rows:
            await self._stop_quietly(token, row.channel_id, row.resource_id)
            attempted.add(row.channel_id)

        async with session_scope(self.session_factory) as session:
            await AccountRepository(session).get_by_id(account.id, for_update=True)
            subscriptions = SubscriptionRepository(session)
            remaining = await subscriptions.list_for_account(account.id)
            for row in remaining:
                if row.channel_id not in attempted:
                    # Opened by a renewal in another process after the first listing
                    await self._stop_quietly(token, row.channel_id, row.resource_id)
                await subscriptions.delete(row)
            await TrackedEventRepository(session).delete_for_account(account.id)
        logger.info(f"Removed {len(remaining)} subscription(s) of account {account.id}")

    async def resolve_by_channel_id(self, channel_id: str) -> Tuple[Account, Subscription]:
        """
        Map an inbound channel ID to its account.

        Raises:
            UnknownChannelError: Unknown, superseded, or owned by an account that is gone
        """
        async with session_scope(self.session_factory) as session:
            subscription = await SubscriptionRepository(session).get(channel_id)
            if subscription is None or not subscription.is_active:
                raise UnknownChannelError(channel_id)
            account = await AccountRepository(session).get_by_id(subscription.account_id)
        if account is None:
            raise UnknownChannelError(channel_id)
        return account, subscription

    async def get_active(self, account: Account) -> Optional[Subscription]:
        async with session_scope(self.session_factory) as session:
            return await SubscriptionRepository(session).get_active_for_account(account.id)

    async def list_expiring(self, window: timedelta) -> List[Subscription]:
        """Active subscriptions expiring within ``window`` from now."""
        async with session_scope(self.session_factory) as session:
            return await SubscriptionRepository(session).list_expiring(datetime.now(timezone.utc) + window)

    async def record_renewal_failure(self, subscription: Subscription) -> int:
        """Count a failed renewal; returns the consecutive failure count."""
        async with session_scope(self.session_factory) as session:
            current = await SubscriptionRepository(session).get(subscription.channel_id, for_update=True)
            if current is None:
                return 0
            current.renewal_failures += 1
            failures = current.renewal_failures
        logger.warning(f"Renewal of channel {subscription.channel_id} failed ({failures} consecutive)")
        return failures

    async def reap_superseded(self) -> int:
        """
        Retry stopping superseded channels and drop their rows.

        Rows are dropped once the stop succeeds or the channel has expired.
        """
        async with session_scope(self.session_factory) as session:
            rows = await SubscriptionRepository(session).list_superseded()

        now = datetime.now(timezone.utc)
        reaped = 0
        for row in rows:
            stopped = False
            if row.expires_at > now:
                try:
                    token = await self.token_manager.get_valid_token(row.account_id)
                except CalendarBotError as e:
                    logger.info(f"Skipping stop of superseded channel {row.channel_id}: {e.message}")
                    continue
                stopped = await self._stop_quietly(token, row.channel_id, row.resource_id)
            if stopped or row.expires_at <= now:
                await self._delete_row(row.channel_id)
                reaped += 1
        if reaped:
            logger.info(f"Reaped {reaped} superseded channel(s)")
        return reaped
