"""Pydantic models."""

from calendar_bot.models.calendar import (
    CalendarEvent,
    CalendarInfo,
    Credential,
    DeltaKind,
    EventDelta,
    ResponseStatus,
    WatchChannel,
)
from calendar_bot.models.results import ChatAction, ChatMessage, IngressResult, RenewalReport

__all__ = [
    "Credential",
    "CalendarInfo",
    "WatchChannel",
    "CalendarEvent",
    "DeltaKind",
    "EventDelta",
    "ResponseStatus",
    "ChatAction",
    "ChatMessage",
    "IngressResult",
    "RenewalReport",
]
