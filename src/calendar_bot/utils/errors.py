"""Custom exceptions for the calendar bot.

Every error carries a ``user_message`` that is safe to show in chat; the
``message`` may contain internal detail and is only logged.
"""

from typing import Optional


class CalendarBotError(Exception):
    """Base exception for calendar bot errors."""

    default_user_message = "Something went wrong, please try again later."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        self.message = message or self.__class__.__name__
        self.user_message = user_message or self.default_user_message
        super().__init__(self.message)


class ConfigurationError(CalendarBotError):
    """Error in service configuration."""


# Permanent auth


class AuthRevokedError(CalendarBotError):
    """The refresh token was rejected; the account must be reconnected."""

    def __init__(self, message: str = "", nickname: Optional[str] = None):
        if nickname:
            user_message = f"Account '{nickname}' is disconnected, please reconnect it with `accounts connect {nickname}`."
        else:
            user_message = "This account is disconnected, please reconnect it."
        super().__init__(message, user_message)


# Transient provider


class TransientProviderError(CalendarBotError):
    """Network failure, timeout, rate limit or 5xx from the provider."""

    default_user_message = "Google Calendar is not responding right now, please retry in a minute."


class ProviderError(CalendarBotError):
    """Non-retriable, unexpected response from the provider."""

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SyncTokenExpiredError(ProviderError):
    """The incremental sync token is no longer valid; a full listing is required."""


# Conflict


class ConflictError(CalendarBotError):
    """Request conflicts with existing state."""


class DuplicateNicknameError(ConflictError):
    """The user already has a connected account with this nickname."""

    def __init__(self, nickname: str):
        self.nickname = nickname
        super().__init__(
            f"Nickname {nickname!r} already connected",
            f"You already have an account connected as '{nickname}'. "
            f"Pick another nickname or run `accounts disconnect {nickname}` first.",
        )


class AlreadySubscribedError(ConflictError):
    """The account already has an active watch channel."""

    def __init__(self, nickname: str):
        self.nickname = nickname
        super().__init__(
            f"Account {nickname!r} already subscribed",
            f"You are already subscribed to invites for '{nickname}'.",
        )


# Not found


class NotFoundError(CalendarBotError):
    """A referenced resource does not exist."""


class AccountNotFoundError(NotFoundError):
    """No account with this nickname for the user."""

    def __init__(self, nickname: str):
        self.nickname = nickname
        super().__init__(
            f"Account {nickname!r} not found",
            f"No account connected as '{nickname}'. See `accounts list` for your connected accounts.",
        )


class UnknownChannelError(NotFoundError):
    """Webhook channel id is not (or no longer) mapped to an active subscription."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Unknown channel {channel_id}")


class EventNotFoundError(NotFoundError):
    """The event was deleted or cancelled."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(
            f"Event {event_id} not found",
            "That event no longer exists.",
        )


class MacroNotFoundError(NotFoundError):
    """No macro with this name in the channel or conversation."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Macro {name!r} not found", f"No macro named '{name}'.")


# Validation


class ValidationError(CalendarBotError):
    """Malformed input."""


class InvalidNicknameError(ValidationError):
    """Nickname is empty or longer than allowed."""

    def __init__(self, nickname: str):
        super().__init__(
            f"Invalid nickname {nickname!r}",
            "Nicknames must be between 1 and 64 characters.",
        )


class InvalidResponseStatusError(ValidationError):
    """Unsupported invite response."""

    def __init__(self, status: str):
        super().__init__(
            f"Invalid response status {status!r}",
            "You can respond with accepted, declined or tentative.",
        )


class AccountNotConnectedError(CalendarBotError):
    """The account exists but is pending or revoked."""

    def __init__(self, nickname: str):
        self.nickname = nickname
        super().__init__(
            f"Account {nickname!r} is not connected",
            f"Account '{nickname}' is not connected, please run `accounts connect {nickname}`.",
        )


class ExpiredLinkTokenError(CalendarBotError):
    """The link token is unknown, already used, or past its TTL."""

    default_user_message = "This link has expired, please run `accounts connect` again."
