"""Pydantic models for operation results and chat messages."""

from typing import List, Optional

from pydantic import BaseModel, Field

from calendar_bot.models.calendar import EventDelta, ResponseStatus


class ChatAction(BaseModel):
    """Interactive response affordance attached to an invite message."""

    label: str = Field(..., description="Button text")
    account_id: str = Field(..., description="Account the invite belongs to")
    event_id: str = Field(..., description="Provider event ID")
    response: ResponseStatus = Field(..., description="Response applied when chosen")


class ChatMessage(BaseModel):
    """Outbound chat message."""

    text: str
    actions: List[ChatAction] = Field(default_factory=list)


class IngressResult(BaseModel):
    """Result of handling one webhook notification."""

    channel_id: str = Field(..., description="Channel the notification arrived on")
    acknowledged: bool = Field(default=True, description="Always true; the provider must not retry")
    account_id: Optional[str] = Field(default=None, description="Resolved account, if any")
    ignored_reason: Optional[str] = Field(default=None, description="Why no changes were fetched")
    full_resync: bool = Field(default=False, description="Sync token had expired")
    deltas: List[EventDelta] = Field(default_factory=list, description="Classified changes")
    dispatched: int = Field(default=0, description="Chat messages sent")
    errors: List[str] = Field(default_factory=list, description="Errors encountered")


class RenewalReport(BaseModel):
    """Result of one renewal scheduler tick."""

    renewed: int = Field(default=0, description="Subscriptions renewed")
    errors: int = Field(default=0, description="Renewals that failed this tick")
    torn_down: int = Field(default=0, description="Subscriptions removed after repeated failures")
    reaped: int = Field(default=0, description="Superseded channels cleaned up")
