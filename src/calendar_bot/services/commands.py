"""Chat command adapter.

Maps the chat command surface onto the core services and renders replies.
Errors become their short user-facing message; internal detail only goes to
the log.
"""

import logging
from typing import List, Optional

from calendar_bot.database.models import Account, AccountState
from calendar_bot.models.results import ChatAction
from calendar_bot.services.account_store import AccountStore
from calendar_bot.services.connection_flow import ConnectionFlowController
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.notification_dispatcher import NotificationDispatcher
from calendar_bot.services.subscription_manager import SubscriptionManager
from calendar_bot.services.token_manager import TokenManager
from calendar_bot.utils.errors import AccountNotFoundError, CalendarBotError

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "!gcal"
GENERIC_ERROR_REPLY = "Something went wrong, please try again later."

HELP_TEXT = "\n".join(
    [
        "Available commands:",
        "`accounts connect <nickname>` - connect a Google account under a nickname",
        "`accounts disconnect <nickname>` - disconnect an account",
        "`accounts list` - list your connected accounts",
        "`list-calendars <nickname>` - list the calendars of an account",
        "`subscribe invites <nickname>` - get notified about invites on the primary calendar",
        "`unsubscribe invites <nickname>` - stop invite notifications",
    ]
)


class CommandHandler:
    """Executes chat commands for one user at a time."""

    def __init__(
        self,
        account_store: AccountStore,
        connection_flow: ConnectionFlowController,
        subscription_manager: SubscriptionManager,
        token_manager: TokenManager,
        calendar_client: GoogleCalendarClient,
        dispatcher: NotificationDispatcher,
    ):
        self.account_store = account_store
        self.connection_flow = connection_flow
        self.subscription_manager = subscription_manager
        self.token_manager = token_manager
        self.calendar_client = calendar_client
        self.dispatcher = dispatcher

    async def handle(self, user_id: str, text: str) -> str:
        """Run a command and return the reply text."""
        words = text.split()
        if words and words[0] == COMMAND_PREFIX:
            words = words[1:]

        try:
            return await self._route(user_id, words)
        except CalendarBotError as e:
            logger.info(f"Command {' '.join(words[:2])!r} from {user_id} rejected: {e.message}")
            return e.user_message
        except Exception as e:
            logger.error(f"Command {' '.join(words[:2])!r} from {user_id} failed: {e}", exc_info=True)
            return GENERIC_ERROR_REPLY

    async def _route(self, user_id: str, words: List[str]) -> str:
        command = tuple(words[:2])
        nickname = _nickname(words[2:]) if len(words) > 2 else None

        if command == ("accounts", "connect") and nickname:
            return await self.connect(user_id, nickname)
        if command == ("accounts", "disconnect") and nickname:
            return await self.disconnect(user_id, nickname)
        if command == ("accounts", "list") and len(words) == 2:
            return await self.list_accounts(user_id)
        if words[:1] == ["list-calendars"] and len(words) > 1:
            return await self.list_calendars(user_id, _nickname(words[1:]))
        if command == ("subscribe", "invites") and nickname:
            return await self.subscribe_invites(user_id, nickname)
        if command == ("unsubscribe", "invites") and nickname:
            return await self.unsubscribe_invites(user_id, nickname)
        return HELP_TEXT

    async def connect(self, user_id: str, nickname: str) -> str:
        url = await self.connection_flow.start_link(user_id, nickname)
        return f"Open this link to connect your Google account as '{nickname}': {url}"

    async def disconnect(self, user_id: str, nickname: str) -> str:
        await self.connection_flow.disconnect(user_id, nickname)
        return f"Account '{nickname}' has been disconnected."

    async def list_accounts(self, user_id: str) -> str:
        accounts = [a for a in await self.account_store.list(user_id) if a.state != AccountState.PENDING]
        if not accounts:
            return "You have no connected accounts. Use `accounts connect <nickname>` to connect one."
        lines = ["Here are your connected accounts:"]
        lines.extend(_describe(account) for account in accounts)
        return "\n".join(lines)

    async def list_calendars(self, user_id: str, nickname: str) -> str:
        account = await self._connected(user_id, nickname)
        token = await self.token_manager.get_valid_token(account.id)
        calendars = await self.calendar_client.list_calendars(token)
        if not calendars:
            return f"No calendars found for '{nickname}'."
        lines = [f"Here are the calendars for '{nickname}':"]
        for calendar in calendars:
            suffix = " (primary)" if calendar.primary else ""
            lines.append(f"- {calendar.summary}{suffix}")
        return "\n".join(lines)

    async def subscribe_invites(self, user_id: str, nickname: str) -> str:
        account = await self._connected(user_id, nickname)
        await self.subscription_manager.subscribe(account)
        return f"OK, you will be notified of event invites for the primary calendar of '{nickname}'."

    async def unsubscribe_invites(self, user_id: str, nickname: str) -> str:
        account = await self.account_store.get(user_id, nickname)
        await self.subscription_manager.unsubscribe(account)
        return f"OK, you will no longer be notified of event invites for '{nickname}'."

    async def handle_action(self, user_id: str, action: ChatAction) -> str:
        """Apply an invite response chosen from a notification."""
        try:
            account = await self.account_store.get_by_id(action.account_id)
            if account.user_id != user_id:
                raise AccountNotFoundError(action.account_id)
            applied = await self.dispatcher.record_response(account, action.event_id, action.response)
        except AccountNotFoundError:
            return "That account is no longer connected."
        except CalendarBotError as e:
            logger.info(f"Invite response from {user_id} rejected: {e.message}")
            return e.user_message
        except Exception as e:
            logger.error(f"Invite response from {user_id} failed: {e}", exc_info=True)
            return GENERIC_ERROR_REPLY
        if not applied:
            return "That event no longer exists."
        return f"Response recorded: {action.response.value}."

    async def _connected(self, user_id: str, nickname: str) -> Account:
        account = await self.account_store.get(user_id, nickname)
        if account.state == AccountState.PENDING:
            raise AccountNotFoundError(nickname)
        return account


def _nickname(words: List[str]) -> Optional[str]:
    return " ".join(words) or None


def _describe(account: Account) -> str:
    if account.state == AccountState.REVOKED:
        return f"- {account.nickname} (disconnected, run `accounts connect {account.nickname}` to reconnect)"
    if account.subscription_lapsed:
        return f"- {account.nickname} (invite notifications stopped, run `subscribe invites {account.nickname}`)"
    return f"- {account.nickname}"
