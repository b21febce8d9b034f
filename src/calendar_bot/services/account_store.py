"""Account store: linked accounts, their credentials and pending link requests.

Each public method runs in its own transaction and commits before returning.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calendar_bot.database.models import Account, AccountState, LinkRequest, TrackedEvent
from calendar_bot.database.repositories import AccountRepository, LinkRequestRepository
from calendar_bot.database.session import session_scope
from calendar_bot.models.calendar import Credential
from calendar_bot.utils.errors import (
    AccountNotFoundError,
    DuplicateNicknameError,
    ExpiredLinkTokenError,
    InvalidNicknameError,
)

logger = logging.getLogger(__name__)

MAX_NICKNAME_LENGTH = 64


def validate_nickname(nickname: str) -> str:
    if not nickname or len(nickname) > MAX_NICKNAME_LENGTH:
        raise InvalidNicknameError(nickname)
    return nickname


def apply_credential(account: Account, credential: Credential) -> None:
    account.access_token = credential.access_token
    if credential.refresh_token:
        account.refresh_token = credential.refresh_token
    account.token_expires_at = credential.expires_at
    account.scopes = " ".join(credential.scopes) if credential.scopes else account.scopes


def clear_credential(account: Account) -> None:
    """Mark an account revoked and drop its unusable tokens."""
    account.state = AccountState.REVOKED
    account.access_token = None
    account.refresh_token = None
    account.token_expires_at = None


def credential_of(account: Account) -> Credential:
    """Read the credential stored on an account."""
    return Credential(
        access_token=account.access_token or "",
        refresh_token=account.refresh_token,
        expires_at=account.token_expires_at,
        scopes=account.scopes.split() if account.scopes else [],
    )


class AccountStore:
    """Persistence for accounts and link requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        link_token_ttl: timedelta = timedelta(minutes=10),
    ):
        self.session_factory = session_factory
        self.link_token_ttl = link_token_ttl

    def _link_expired(self, link: LinkRequest) -> bool:
        return link.created_at + self.link_token_ttl <= datetime.now(timezone.utc)

    async def create_pending_link(self, user_id: str, nickname: str) -> str:
        """
        Start linking an account under ``nickname``.

        Creates the account in ``pending`` state if it does not exist yet and
        records a single-use link token.

        Returns:
            The link token to carry through the OAuth ``state`` parameter

        Raises:
            DuplicateNicknameError: The user already has a connected account with this nickname
        """
        validate_nickname(nickname)
        token = secrets.token_urlsafe(32)

        # A concurrent first link for the same nickname can lose the insert race once
        for attempt in range(2):
            try:
                async with session_scope(self.session_factory) as session:
                    accounts = AccountRepository(session)
                    account = await accounts.get_by_user_and_nickname(user_id, nickname, for_update=True)
                    if account is not None and account.is_connected:
                        raise DuplicateNicknameError(nickname)
                    if account is None:
                        await accounts.create(
                            user_id=user_id,
                            nickname=nickname,
                            state=AccountState.PENDING,
                        )
                    await LinkRequestRepository(session).create(
                        token=token,
                        user_id=user_id,
                        nickname=nickname,
                    )
                break
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.info(f"Concurrent link start for user {user_id} nickname {nickname!r}, retrying")

        logger.info(f"Created link request for user {user_id} nickname {nickname!r}")
        return token

    async def get_link(self, link_token: str) -> LinkRequest:
        """
        Look up a pending link request.

        Raises:
            ExpiredLinkTokenError: Unknown, already used, or past its TTL
        """
        async with session_scope(self.session_factory) as session:
            link = await LinkRequestRepository(session).get(link_token)
        if link is None or self._link_expired(link):
            raise ExpiredLinkTokenError("Link token unknown or expired")
        return link

    async def complete_link(
        self,
        link_token: str,
        credential: Credential,
        primary_calendar_id: str,
    ) -> Account:
        """
        Attach a credential to the account named by a link request.

        The link token is consumed. The nickname uniqueness check and the
        write happen under row locks in one transaction.

        Raises:
            ExpiredLinkTokenError: Unknown, already used, or past its TTL
            DuplicateNicknameError: The nickname is already connected for this user
        """
        try:
            async with session_scope(self.session_factory) as session:
                links = LinkRequestRepository(session)
                accounts = AccountRepository(session)

                link = await links.get(link_token, for_update=True)
                if link is None or self._link_expired(link):
                    raise ExpiredLinkTokenError("Link token unknown or expired")

                account = await accounts.get_by_user_and_nickname(
                    link.user_id, link.nickname, for_update=True
                )
                if account is not None and account.is_connected:
                    raise DuplicateNicknameError(link.nickname)
                if account is None:
                    account = await accounts.create(user_id=link.user_id, nickname=link.nickname)

                apply_credential(account, credential)
                account.calendar_id = primary_calendar_id
                account.state = AccountState.CONNECTED
                account.subscription_lapsed = False
                await links.delete(link)
                await session.flush()
        except IntegrityError as e:
            raise DuplicateNicknameError(link.nickname) from e

        logger.info(f"Connected account {account.id} ({account.nickname!r}) for user {account.user_id}")
        return account

    async def get(self, user_id: str, nickname: str) -> Account:
        """
        Get an account by (user, nickname).

        Raises:
            AccountNotFoundError: No such account
        """
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_user_and_nickname(user_id, nickname)
        if account is None:
            raise AccountNotFoundError(nickname)
        return account

    async def get_by_id(self, account_id: str) -> Account:
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    @asynccontextmanager
    async def locked(self, account_id: str) -> AsyncIterator[Account]:
        """
        Hold the account row lock for the duration of the block.

        Changes made to the yielded account commit when the block exits
        normally. Other processes taking the same lock wait until then.

        Raises:
            AccountNotFoundError: No such account
        """
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_id(account_id, for_update=True)
            if account is None:
                raise AccountNotFoundError(account_id)
            yield account

    async def list(self, user_id: str) -> List[Account]:
        """All accounts of a user, ordered by nickname."""
        async with session_scope(self.session_factory) as session:
            return await AccountRepository(session).list_by_user(user_id)

    async def save_credential(self, account_id: str, credential: Credential) -> Account:
        """Persist a rotated credential."""
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_id(account_id, for_update=True)
            if account is None:
                raise AccountNotFoundError(account_id)
            apply_credential(account, credential)
            await session.flush()
        return account

    async def mark_revoked(self, account_id: str) -> None:
        """Mark an account revoked and drop its unusable tokens."""
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_id(account_id, for_update=True)
            if account is None:
                return
            clear_credential(account)
        logger.warning(f"Account {account_id} marked revoked")

    async def set_subscription_lapsed(self, account_id: str, lapsed: bool) -> None:
        async with session_scope(self.session_factory) as session:
            account = await AccountRepository(session).get_by_id(account_id, for_update=True)
            if account is not None:
                account.subscription_lapsed = lapsed

    async def delete(self, account_id: str) -> None:
        """
        Physically delete an account and its tracked events.

        Callers must tear down the account's subscriptions first.
        """
        async with session_scope(self.session_factory) as session:
            await session.execute(delete(TrackedEvent).where(TrackedEvent.account_id == account_id))
            accounts = AccountRepository(session)
            account = await accounts.get_by_id(account_id, for_update=True)
            if account is not None:
                await accounts.delete(account)
        logger.info(f"Deleted account {account_id}")

    async def purge_abandoned_links(self) -> int:
        """Delete expired link requests and pending accounts nobody finished linking."""
        threshold = datetime.now(timezone.utc) - self.link_token_ttl
        async with session_scope(self.session_factory) as session:
            await LinkRequestRepository(session).delete_created_before(threshold)
            still_linking = select(LinkRequest.user_id).where(
                LinkRequest.user_id == Account.user_id,
                LinkRequest.nickname == Account.nickname,
            ).correlate(Account)
            result = await session.execute(
                delete(Account)
                .where(Account.state == AccountState.PENDING)
                .where(Account.created_at < threshold)
                .where(~still_linking.exists())
                .execution_options(synchronize_session=False)
            )
            purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} abandoned pending accounts")
        return purged
