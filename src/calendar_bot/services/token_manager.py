"""Token manager: hands out valid access tokens and refreshes them on demand."""

import logging
from datetime import datetime, timedelta, timezone

from calendar_bot.auth.google_oauth import GoogleOAuthClient
from calendar_bot.database.models import Account, AccountState
from calendar_bot.services.account_store import (
    AccountStore,
    apply_credential,
    clear_credential,
    credential_of,
)
from calendar_bot.utils.async_helpers import SingleFlight
from calendar_bot.utils.errors import AccountNotConnectedError, AuthRevokedError

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Per-account access token cache backed by the account store.

    Refreshes are single-flight per account: concurrent callers in this
    process share one refresh exchange, and the exchange runs under the
    account row lock so a refresh in another process waits for it and then
    reuses the rotated token. Reads of a token that is not near expiry never
    wait on a refresh.
    """

    def __init__(
        self,
        account_store: AccountStore,
        oauth_client: GoogleOAuthClient,
        refresh_margin: timedelta = timedelta(seconds=120),
    ):
        self.account_store = account_store
        self.oauth_client = oauth_client
        self.refresh_margin = refresh_margin
        self._refreshes = SingleFlight()

    def _is_fresh(self, account: Account) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return False
        return account.token_expires_at - self.refresh_margin > datetime.now(timezone.utc)

    def _require_usable(self, account: Account) -> None:
        if account.state == AccountState.REVOKED:
            raise AuthRevokedError(f"Account {account.id} is revoked", nickname=account.nickname)
        if account.state != AccountState.CONNECTED:
            raise AccountNotConnectedError(account.nickname)

    async def get_valid_token(self, account_id: str) -> str:
        """
        Get an access token valid for at least the refresh margin.

        Raises:
            AuthRevokedError: The refresh token was rejected; the account is now revoked
            TransientProviderError: The refresh failed for a retryable reason
            AccountNotConnectedError: The account never finished linking
        """
        account = await self.account_store.get_by_id(account_id)
        self._require_usable(account)
        if self._is_fresh(account):
            return account.access_token

        return await self._refreshes.do(account_id, lambda: self._refresh(account_id))

    async def _refresh(self, account_id: str) -> str:
        rejected = None
        async with self.account_store.locked(account_id) as account:
            # Another process may have refreshed while we waited for the lock
            self._require_usable(account)
            if self._is_fresh(account):
                return account.access_token

            logger.info(f"Refreshing access token for account {account_id}")
            try:
                refreshed = await self.oauth_client.refresh(credential_of(account))
            except AuthRevokedError as e:
                clear_credential(account)
                rejected = e
            else:
                apply_credential(account, refreshed)
                logger.info(f"Access token refreshed for account {account_id}, expires at {refreshed.expires_at}")
                return refreshed.access_token

        logger.warning(f"Refresh token rejected for account {account_id}, marked revoked: {rejected.message}")
        raise AuthRevokedError(rejected.message, nickname=account.nickname) from rejected
