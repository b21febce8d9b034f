"""Notification dispatcher: turns event deltas into chat messages and applies invite responses."""

import logging
from typing import List, Protocol, Sequence

from calendar_bot.database.models import Account
from calendar_bot.models.calendar import CalendarEvent, DeltaKind, EventDelta, ResponseStatus
from calendar_bot.models.results import ChatAction, ChatMessage
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.services.token_manager import TokenManager
from calendar_bot.utils.errors import EventNotFoundError, InvalidResponseStatusError

logger = logging.getLogger(__name__)

RESPONSE_LABELS = {
    ResponseStatus.ACCEPTED: "Yes",
    ResponseStatus.DECLINED: "No",
    ResponseStatus.TENTATIVE: "Maybe",
}


class ChatSender(Protocol):
    """Outbound side of the chat transport."""

    async def send(self, user_id: str, message: ChatMessage) -> None:
        ...


class LoggingChatSender:
    """Chat sender that only logs; used when no chat transport is wired in."""

    async def send(self, user_id: str, message: ChatMessage) -> None:
        logger.info(f"Chat message to {user_id}: {message.text!r} ({len(message.actions)} action(s))")


def _when(event: CalendarEvent) -> str:
    if event.start and event.end:
        return f"{event.start} to {event.end}"
    return event.start or "unscheduled"


def _details(event: CalendarEvent) -> List[str]:
    lines = [f"What: *{event.summary}*", f"When: {_when(event)}"]
    if event.location:
        lines.append(f"Where: {event.location}")
    if event.organizer_email:
        lines.append(f"Organizer: {event.organizer_email}")
    if event.html_link:
        lines.append(event.html_link)
    return lines


def parse_response_status(value: str) -> ResponseStatus:
    """Parse a user-supplied response; accepts yes/no/maybe as aliases."""
    aliases = {"yes": "accepted", "accept": "accepted", "no": "declined", "decline": "declined", "maybe": "tentative"}
    normalized = aliases.get(value.strip().lower(), value.strip().lower())
    try:
        return ResponseStatus(normalized)
    except ValueError as e:
        raise InvalidResponseStatusError(value) from e


class NotificationDispatcher:
    """Sends one chat message per delta to the account owner."""

    def __init__(
        self,
        chat_sender: ChatSender,
        token_manager: TokenManager,
        calendar_client: GoogleCalendarClient,
    ):
        self.chat_sender = chat_sender
        self.token_manager = token_manager
        self.calendar_client = calendar_client

    def format(self, account: Account, delta: EventDelta) -> ChatMessage:
        """Render a delta as a chat message."""
        event = delta.event
        if delta.kind is DeltaKind.NEW_INVITE:
            header = f"You've been invited to an event on your '{account.nickname}' calendar:"
            actions = [
                ChatAction(label=label, account_id=account.id, event_id=event.id, response=status)
                for status, label in RESPONSE_LABELS.items()
            ]
            return ChatMessage(text="\n".join([header, *_details(event), "Awaiting your response."]), actions=actions)
        if delta.kind is DeltaKind.UPDATED:
            header = f"An event on your '{account.nickname}' calendar was updated:"
            lines = [header, *_details(event)]
            if event.self_response_status:
                lines.append(f"Your response: {event.self_response_status}")
            return ChatMessage(text="\n".join(lines))
        if delta.kind is DeltaKind.CANCELLED:
            header = f"An event on your '{account.nickname}' calendar was cancelled:"
            return ChatMessage(text="\n".join([header, f"What: *{event.summary}*"]))
        raise ValueError(f"Unhandled delta kind {delta.kind!r}")

    async def dispatch(self, account: Account, deltas: Sequence[EventDelta]) -> int:
        """
        Send one message per delta.

        A failing send is logged and does not stop the rest.

        Returns:
            Number of messages sent
        """
        sent = 0
        for delta in deltas:
            message = self.format(account, delta)
            try:
                await self.chat_sender.send(account.user_id, message)
                sent += 1
            except Exception as e:
                logger.error(
                    f"Failed to send {delta.kind.value} notification for event {delta.event.id} "
                    f"to user {account.user_id}: {e}",
                    exc_info=True,
                )
        return sent

    async def record_response(self, account: Account, event_id: str, response_status: ResponseStatus) -> bool:
        """
        Apply an invite response chosen in chat.

        Returns:
            True if applied, False if the event is already gone
        """
        token = await self.token_manager.get_valid_token(account.id)
        try:
            await self.calendar_client.respond_to_event(
                token,
                account.calendar_id or "primary",
                event_id,
                response_status,
            )
        except EventNotFoundError:
            logger.info(f"Event {event_id} of account {account.id} is gone, response {response_status.value} dropped")
            return False
        logger.info(f"Recorded {response_status.value} for event {event_id} of account {account.id}")
        return True

    async def notify_connected(self, account: Account) -> None:
        await self.chat_sender.send(
            account.user_id,
            ChatMessage(
                text=(
                    f"Your Google account is now connected as '{account.nickname}'. "
                    f"Run `subscribe invites {account.nickname}` to get notified about invites."
                )
            ),
        )

    async def notify_subscription_lapsed(self, account: Account) -> None:
        await self.chat_sender.send(
            account.user_id,
            ChatMessage(
                text=(
                    f"Invite notifications for '{account.nickname}' stopped because the subscription "
                    f"could not be renewed. Run `subscribe invites {account.nickname}` to turn them back on."
                )
            ),
        )
