"""Database repositories.

Repositories run queries against a caller-owned session; transaction
boundaries belong to the services.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_bot.database.models import (
    Account,
    LinkRequest,
    Macro,
    Subscription,
    SubscriptionStatus,
    TrackedEvent,
)

# Stays well under the bind parameter limits of SQLite and asyncpg
IN_CLAUSE_CHUNK_SIZE = 500


class AccountRepository:
    """Repository for account operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, account_id: str, for_update: bool = False) -> Optional[Account]:
        """Get account by ID."""
        query = select(Account).where(Account.id == account_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_user_and_nickname(
        self,
        user_id: str,
        nickname: str,
        for_update: bool = False,
    ) -> Optional[Account]:
        """Get account by its (user, nickname) identity."""
        query = (
            select(Account)
            .where(Account.user_id == user_id)
            .where(Account.nickname == nickname)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_user(self, user_id: str) -> List[Account]:
        """Get all accounts for a user ordered by nickname."""
        result = await self.session.execute(
            select(Account).where(Account.user_id == user_id).order_by(Account.nickname)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Account:
        """Create a new account."""
        account = Account(**kwargs)
        self.session.add(account)
        await self.session.flush()
        return account

    async def delete(self, account: Account) -> None:
        await self.session.delete(account)
        await self.session.flush()


class LinkRequestRepository:
    """Repository for pending OAuth link requests."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, token: str, for_update: bool = False) -> Optional[LinkRequest]:
        query = select(LinkRequest).where(LinkRequest.token == token)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> LinkRequest:
        link = LinkRequest(**kwargs)
        self.session.add(link)
        await self.session.flush()
        return link

    async def delete(self, link: LinkRequest) -> None:
        await self.session.delete(link)
        await self.session.flush()

    async def delete_created_before(self, threshold: datetime) -> int:
        """Drop abandoned link requests."""
        result = await self.session.execute(
            delete(LinkRequest).where(LinkRequest.created_at < threshold)
        )
        return result.rowcount or 0


class SubscriptionRepository:
    """Repository for watch channel subscriptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, channel_id: str, for_update: bool = False) -> Optional[Subscription]:
        """Get subscription by channel ID, whatever its status."""
        query = select(Subscription).where(Subscription.channel_id == channel_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_active_for_account(
        self,
        account_id: str,
        calendar_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """Get the active subscription of an account."""
        query = (
            select(Subscription)
            .where(Subscription.account_id == account_id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
        )
        if calendar_id is not None:
            query = query.where(Subscription.calendar_id == calendar_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalars().first()

    async def list_for_account(self, account_id: str) -> List[Subscription]:
        """All subscriptions of an account, active and superseded."""
        result = await self.session.execute(
            select(Subscription).where(Subscription.account_id == account_id)
        )
        return list(result.scalars().all())

    async def list_expiring(self, expiration_threshold: datetime) -> List[Subscription]:
        """
        Get active subscriptions expiring soon.

        Args:
            expiration_threshold: Get channels expiring at or before this datetime

        Returns:
            List of subscriptions ordered by expiry
        """
        result = await self.session.execute(
            select(Subscription)
            .where(and_(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.expires_at <= expiration_threshold,
            ))
            .order_by(Subscription.expires_at)
        )
        return list(result.scalars().all())

    async def list_superseded(self) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.status == SubscriptionStatus.SUPERSEDED)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Subscription:
        subscription = Subscription(**kwargs)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def delete(self, subscription: Subscription) -> None:
        await self.session.delete(subscription)
        await self.session.flush()


class TrackedEventRepository:
    """Repository for last-seen event versions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_many(self, account_id: str, event_ids: Iterable[str]) -> Dict[str, TrackedEvent]:
        ids = list(event_ids)
        found: Dict[str, TrackedEvent] = {}
        for start in range(0, len(ids), IN_CLAUSE_CHUNK_SIZE):
            result = await self.session.execute(
                select(TrackedEvent)
                .where(TrackedEvent.account_id == account_id)
                .where(TrackedEvent.event_id.in_(ids[start:start + IN_CLAUSE_CHUNK_SIZE]))
            )
            found.update((row.event_id, row) for row in result.scalars().all())
        return found

    async def upsert(self, account_id: str, event_id: str, updated: datetime, status: str) -> TrackedEvent:
        tracked = await self.session.get(TrackedEvent, (account_id, event_id))
        if tracked is None:
            tracked = TrackedEvent(
                account_id=account_id,
                event_id=event_id,
                updated=updated,
                status=status,
            )
            self.session.add(tracked)
        else:
            tracked.updated = updated
            tracked.status = status
        await self.session.flush()
        return tracked

    async def delete_for_account(self, account_id: str) -> None:
        await self.session.execute(delete(TrackedEvent).where(TrackedEvent.account_id == account_id))


class MacroRepository:
    """Repository for macros."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, channel_name: str, is_conv: bool, macro_name: str, for_update: bool = False) -> Optional[Macro]:
        query = (
            select(Macro)
            .where(Macro.channel_name == channel_name)
            .where(Macro.is_conv == is_conv)
            .where(Macro.macro_name == macro_name)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    def _scope_filter(self, channel_name: str, conv_id: str):
        return or_(
            and_(Macro.channel_name == channel_name, Macro.is_conv.is_(False)),
            and_(Macro.channel_name == conv_id, Macro.is_conv.is_(True)),
        )

    async def get_preferred(self, channel_name: str, conv_id: str, macro_name: str) -> Optional[Macro]:
        """Get a macro, preferring the conversation scope over the channel scope."""
        result = await self.session.execute(
            select(Macro)
            .where(self._scope_filter(channel_name, conv_id))
            .where(Macro.macro_name == macro_name)
            .order_by(Macro.is_conv.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list(self, channel_name: str, conv_id: str) -> List[Macro]:
        result = await self.session.execute(
            select(Macro)
            .where(self._scope_filter(channel_name, conv_id))
            .order_by(Macro.macro_name.asc(), Macro.is_conv.desc())
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Macro:
        macro = Macro(**kwargs)
        self.session.add(macro)
        await self.session.flush()
        return macro

    async def delete(self, channel_name: str, is_conv: bool, macro_name: str) -> int:
        result = await self.session.execute(
            delete(Macro)
            .where(Macro.channel_name == channel_name)
            .where(Macro.is_conv == is_conv)
            .where(Macro.macro_name == macro_name)
        )
        return result.rowcount or 0
