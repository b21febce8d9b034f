"""Pydantic models for OAuth credentials and calendar events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def parse_rfc3339(value: str) -> datetime:
    """Parse a Google RFC 3339 timestamp into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Credential(BaseModel):
    """OAuth credential owned by one account."""

    access_token: str = Field(..., description="Bearer token for API calls")
    refresh_token: Optional[str] = Field(default=None, description="Long-lived refresh token")
    expires_at: Optional[datetime] = Field(default=None, description="Access token expiry (UTC)")
    scopes: List[str] = Field(default_factory=list, description="Granted scopes")


class CalendarInfo(BaseModel):
    """Entry of the user's calendar list."""

    id: str
    summary: str = ""
    primary: bool = False
    access_role: Optional[str] = None


class WatchChannel(BaseModel):
    """Channel returned by events.watch."""

    id: str
    resource_id: str
    expires_at: datetime


class CalendarEvent(BaseModel):
    """The subset of a Google Calendar event used for notifications."""

    id: str
    status: str = "confirmed"
    updated: datetime
    summary: str = "(no title)"
    description: Optional[str] = None
    location: Optional[str] = None
    html_link: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    organizer_email: Optional[str] = None
    organizer_is_self: bool = False
    # responseStatus of the attendee entry flagged self, if the user was invited
    self_response_status: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def is_invite(self) -> bool:
        """The user is an attendee of someone else's event."""
        return self.self_response_status is not None and not self.organizer_is_self

    @classmethod
    def from_google(cls, item: Dict[str, Any]) -> "CalendarEvent":
        organizer = item.get("organizer") or {}
        self_status = None
        for attendee in item.get("attendees") or []:
            if attendee.get("self"):
                self_status = attendee.get("responseStatus", "needsAction")
                break

        start = item.get("start") or {}
        end = item.get("end") or {}
        # Cancelled entries in incremental results can omit everything but id/status
        updated = item.get("updated")
        return cls(
            id=item["id"],
            status=item.get("status", "confirmed"),
            updated=parse_rfc3339(updated) if updated else datetime.now(timezone.utc),
            summary=item.get("summary") or "(no title)",
            description=item.get("description"),
            location=item.get("location"),
            html_link=item.get("htmlLink"),
            start=start.get("dateTime") or start.get("date"),
            end=end.get("dateTime") or end.get("date"),
            organizer_email=organizer.get("email"),
            organizer_is_self=bool(organizer.get("self", False)),
            self_response_status=self_status,
        )


class DeltaKind(str, Enum):
    """Closed set of notification-worthy changes."""

    NEW_INVITE = "new_invite"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class EventDelta(BaseModel):
    """A classified change to one event of one account."""

    kind: DeltaKind
    account_id: str
    event: CalendarEvent


class ResponseStatus(str, Enum):
    """Invite responses a user can send from chat."""

    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"
