"""Webhook ingress: turns push notifications into classified event deltas.

Google retries any non-2xx delivery indefinitely, so every outcome here is an
acknowledgement. Failures are logged and reported in the returned
``IngressResult``; nothing propagates to the HTTP layer.
"""

import hmac
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_bot.database.models import Account, TrackedEvent
from calendar_bot.database.repositories import SubscriptionRepository, TrackedEventRepository
from calendar_bot.database.session import session_scope
from calendar_bot.models.calendar import CalendarEvent, DeltaKind, EventDelta
from calendar_bot.models.results import IngressResult
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.notification_dispatcher import NotificationDispatcher
from calendar_bot.services.subscription_manager import SubscriptionManager
from calendar_bot.services.token_manager import TokenManager
from calendar_bot.utils.errors import CalendarBotError, SyncTokenExpiredError, UnknownChannelError

logger = logging.getLogger(__name__)

RESOURCE_STATE_SYNC = "sync"
CHANGE_STATES = {"exists", "not_exists"}


def classify(event: CalendarEvent, tracked: Optional[TrackedEvent]) -> Optional[DeltaKind]:
    """
    Classify one changed event against its last seen version.

    Only invites are tracked. Returns None when the change is not
    notification-worthy or was already seen.
    """
    if event.is_cancelled:
        if tracked is not None and tracked.status != "cancelled":
            return DeltaKind.CANCELLED
        return None
    if tracked is None or tracked.status == "cancelled":
        return DeltaKind.NEW_INVITE if event.is_invite else None
    if event.updated > tracked.updated:
        return DeltaKind.UPDATED
    return None


def _verification_matches(received: Optional[str], expected: str) -> bool:
    return hmac.compare_digest((received or "").encode("utf-8"), expected.encode("utf-8"))


class WebhookIngress:
    """Handles provider push notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscription_manager: SubscriptionManager,
        token_manager: TokenManager,
        calendar_client: GoogleCalendarClient,
        dispatcher: NotificationDispatcher,
    ):
        self.session_factory = session_factory
        self.subscription_manager = subscription_manager
        self.token_manager = token_manager
        self.calendar_client = calendar_client
        self.dispatcher = dispatcher
        self.account_locks = subscription_manager.account_locks

    async def handle_notification(
        self,
        channel_id: str,
        resource_state: str,
        verification_token: Optional[str],
    ) -> IngressResult:
        """
        Handle one notification.

        Args:
            channel_id: X-Goog-Channel-ID
            resource_state: X-Goog-Resource-State (sync, exists, not_exists)
            verification_token: X-Goog-Channel-Token

        Returns:
            IngressResult describing what was done; always acknowledged
        """
        result = IngressResult(channel_id=channel_id)

        try:
            account, subscription = await self.subscription_manager.resolve_by_channel_id(channel_id)
        except UnknownChannelError:
            logger.info(f"Notification for unknown or superseded channel {channel_id}, acknowledged")
            result.ignored_reason = "unknown_channel"
            return result
        except Exception as e:
            logger.error(f"Failed to resolve channel {channel_id}: {e}", exc_info=True)
            result.ignored_reason = "error"
            result.errors.append(str(e))
            return result

        result.account_id = account.id

        if not _verification_matches(verification_token, subscription.verification_token):
            logger.warning(f"Verification token mismatch on channel {channel_id}, dropped")
            result.ignored_reason = "token_mismatch"
            return result

        if resource_state == RESOURCE_STATE_SYNC:
            logger.info(f"Sync handshake on channel {channel_id}")
            result.ignored_reason = "sync"
            return result

        if resource_state not in CHANGE_STATES:
            logger.info(f"Ignoring resource state {resource_state!r} on channel {channel_id}")
            result.ignored_reason = "unsupported_state"
            return result

        try:
            async with self.account_locks(account.id):
                deltas, full_resync = await self._collect_deltas(account)
        except CalendarBotError as e:
            logger.warning(f"Could not fetch changes for account {account.id}: {e.message}")
            result.errors.append(e.message)
            return result
        except Exception as e:
            logger.error(f"Unexpected error fetching changes for account {account.id}: {e}", exc_info=True)
            result.errors.append(str(e))
            return result

        result.deltas = deltas
        result.full_resync = full_resync
        if deltas:
            try:
                result.dispatched = await self.dispatcher.dispatch(account, deltas)
            except Exception as e:
                logger.error(f"Dispatch failed for account {account.id}: {e}", exc_info=True)
                result.errors.append(str(e))

        logger.info(
            f"Channel {channel_id}: {len(deltas)} delta(s), {result.dispatched} dispatched"
            f"{' after full resync' if full_resync else ''}"
        )
        return result

    async def _collect_deltas(self, account: Account) -> Tuple[List[EventDelta], bool]:
        # Read under the account lock; a renewal may have moved the sync token to a new row
        async with session_scope(self.session_factory) as session:
            subscription = await SubscriptionRepository(session).get_active_for_account(account.id)
        if subscription is None:
            logger.info(f"Account {account.id} no longer subscribed, skipping fetch")
            return [], False

        token = await self.token_manager.get_valid_token(account.id)
        full_resync = False
        try:
            events, next_sync_token = await self.calendar_client.list_events(
                token, subscription.calendar_id, sync_token=subscription.sync_token
            )
        except SyncTokenExpiredError:
            logger.info(f"Sync token expired for account {account.id}, running full resync")
            events, next_sync_token = await self.calendar_client.list_events(token, subscription.calendar_id)
            full_resync = True

        deltas: List[EventDelta] = []
        async with session_scope(self.session_factory) as session:
            tracked_events = TrackedEventRepository(session)
            known: Dict[str, TrackedEvent] = await tracked_events.get_many(account.id, (e.id for e in events))
            for event in events:
                tracked = known.get(event.id)
                kind = classify(event, tracked)
                if kind is not None:
                    deltas.append(EventDelta(kind=kind, account_id=account.id, event=event))
                if kind is not None or (tracked is not None and event.updated > tracked.updated):
                    known[event.id] = await tracked_events.upsert(account.id, event.id, event.updated, event.status)

            current = await SubscriptionRepository(session).get(subscription.channel_id, for_update=True)
            if current is not None:
                current.sync_token = next_sync_token

        return deltas, full_resync
