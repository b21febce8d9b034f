"""Pytest configuration and fixtures for calendar bot tests."""

import asyncio
import copy
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

# celery_app and main read settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from calendar_bot.config import GoogleSettings, RenewalSettings, Settings
from calendar_bot.database.models import Base
from calendar_bot.database.session import create_session_factory
from calendar_bot.dependencies import build_services
from calendar_bot.models.calendar import (
    CalendarEvent,
    CalendarInfo,
    Credential,
    ResponseStatus,
    WatchChannel,
)
from calendar_bot.models.results import ChatMessage
from calendar_bot.utils.errors import EventNotFoundError, SyncTokenExpiredError

SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]
EPOCH = datetime(2026, 10, 1, tzinfo=timezone.utc)


class FakeGoogleCalendar:
    """In-memory Google Calendar with watch channels and sync tokens."""

    def __init__(self):
        self.primary_id = "me@example.com"
        self.calendars = [
            CalendarInfo(id="me@example.com", summary="me@example.com", primary=True, access_role="owner"),
            CalendarInfo(id="team@group.calendar.google.com", summary="Team", access_role="reader"),
        ]
        self.events: Dict[str, dict] = {}
        self.version = 0
        self._changes: List[Tuple[int, str]] = []
        self.expired_sync_tokens = set()
        self.channels: Dict[str, dict] = {}
        self.channel_lifetime: Optional[timedelta] = None
        self.watch_calls = 0
        self.list_calls = 0
        self.stop_calls: List[str] = []
        self.responses: List[Tuple[str, str]] = []
        self.fail_watch: Optional[Exception] = None
        self.fail_stop: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None

    # Provider-side mutations

    def _touch(self, event_id: str) -> None:
        self.version += 1
        self.events[event_id]["updated"] = (EPOCH + timedelta(seconds=self.version)).isoformat()
        self._changes.append((self.version, event_id))

    def add_invite(self, event_id: str, summary: str = "Quarterly planning", organizer: str = "boss@example.com"):
        self.events[event_id] = {
            "id": event_id,
            "status": "confirmed",
            "summary": summary,
            "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
            "start": {"dateTime": "2026-11-02T10:00:00Z"},
            "end": {"dateTime": "2026-11-02T11:00:00Z"},
            "organizer": {"email": organizer},
            "attendees": [
                {"email": organizer, "organizer": True, "responseStatus": "accepted"},
                {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
            ],
        }
        self._touch(event_id)

    def add_own_event(self, event_id: str, summary: str = "Focus time"):
        self.events[event_id] = {
            "id": event_id,
            "status": "confirmed",
            "summary": summary,
            "start": {"dateTime": "2026-11-03T09:00:00Z"},
            "end": {"dateTime": "2026-11-03T10:00:00Z"},
            "organizer": {"email": "me@example.com", "self": True},
        }
        self._touch(event_id)

    def update_event(self, event_id: str, **fields):
        self.events[event_id].update(fields)
        self._touch(event_id)

    def cancel_event(self, event_id: str):
        self.events[event_id]["status"] = "cancelled"
        self._touch(event_id)

    @property
    def live_channels(self) -> List[str]:
        return [channel_id for channel_id, c in self.channels.items() if not c["stopped"]]

    # Client surface used by the services

    async def close(self) -> None:
        pass

    async def list_calendars(self, access_token: str) -> List[CalendarInfo]:
        return list(self.calendars)

    async def get_primary_calendar_id(self, access_token: str) -> str:
        return self.primary_id

    async def watch_events(self, access_token, calendar_id, channel_id, address, verification_token, ttl_seconds):
        self.watch_calls += 1
        if self.fail_watch is not None:
            raise self.fail_watch
        lifetime = self.channel_lifetime or timedelta(seconds=ttl_seconds)
        expires_at = datetime.now(timezone.utc) + lifetime
        resource_id = f"resource-{channel_id[:8]}"
        self.channels[channel_id] = {
            "calendar_id": calendar_id,
            "address": address,
            "token": verification_token,
            "resource_id": resource_id,
            "expires_at": expires_at,
            "stopped": False,
        }
        return WatchChannel(id=channel_id, resource_id=resource_id, expires_at=expires_at)

    async def stop_channel(self, access_token, channel_id, resource_id):
        self.stop_calls.append(channel_id)
        if self.fail_stop is not None:
            raise self.fail_stop
        if channel_id in self.channels:
            self.channels[channel_id]["stopped"] = True

    async def list_events(self, access_token, calendar_id, sync_token=None):
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        if sync_token is None:
            items = list(self.events.values())
        else:
            if sync_token in self.expired_sync_tokens:
                raise SyncTokenExpiredError("Sync token expired", status_code=410)
            since = int(sync_token.split("-")[1])
            changed = []
            for version, event_id in self._changes:
                if version > since and event_id not in changed:
                    changed.append(event_id)
            items = [self.events[event_id] for event_id in changed]
        return [CalendarEvent.from_google(copy.deepcopy(item)) for item in items], f"sync-{self.version}"

    async def respond_to_event(self, access_token, calendar_id, event_id, response_status: ResponseStatus):
        item = self.events.get(event_id)
        if item is None or item["status"] == "cancelled":
            raise EventNotFoundError(event_id)
        for attendee in item.get("attendees", []):
            if attendee.get("self"):
                attendee["responseStatus"] = response_status.value
        self._touch(event_id)
        self.responses.append((event_id, response_status.value))
        return CalendarEvent.from_google(copy.deepcopy(item))


class FakeOAuthClient:
    """OAuth client that mints predictable credentials."""

    def __init__(self):
        self.exchanged: List[str] = []
        self.refresh_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.05

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.google.com/o/oauth2/auth?client_id=test-client-id&state={state}"

    async def exchange_code(self, authorization_code: str) -> Credential:
        self.exchanged.append(authorization_code)
        return Credential(
            access_token=f"access-{authorization_code}",
            refresh_token=f"refresh-{authorization_code}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes=SCOPES,
        )

    async def refresh(self, credential: Credential) -> Credential:
        self.refresh_calls += 1
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return Credential(
            access_token=f"refreshed-{self.refresh_calls}",
            refresh_token=credential.refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scopes=credential.scopes,
        )


class RecordingChatSender:
    """Chat sender that keeps every message."""

    def __init__(self):
        self.messages: List[Tuple[str, ChatMessage]] = []

    async def send(self, user_id: str, message: ChatMessage) -> None:
        self.messages.append((user_id, message))

    def texts_for(self, user_id: str) -> List[str]:
        return [message.text for uid, message in self.messages if uid == user_id]


def state_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.fixture
def settings():
    """Settings for testing."""
    return Settings(
        service_name="calendar-bot-test",
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/1",
        public_base_url="https://bot.example.com",
        google=GoogleSettings(client_id="test-client-id", client_secret="test-client-secret"),
        renewal=RenewalSettings(embedded_scheduler=False),
        log_level="DEBUG",
    )


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'calendar_bot.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def google():
    return FakeGoogleCalendar()


@pytest.fixture
def oauth():
    return FakeOAuthClient()


@pytest.fixture
def chat():
    return RecordingChatSender()


@pytest.fixture
def services(settings, session_factory, google, oauth, chat):
    """Fully wired services over SQLite and the fakes."""
    return build_services(
        settings,
        session_factory,
        chat_sender=chat,
        oauth_client=oauth,
        calendar_client=google,
    )


@pytest.fixture
def link_account(services):
    """Run the connect flow end to end and return the connected account."""

    async def _link(user_id: str = "alice", nickname: str = "work", code: str = "code-1"):
        url = await services.connection_flow.start_link(user_id, nickname)
        return await services.connection_flow.handle_callback(state_from_url(url), code)

    return _link


@pytest.fixture
def notify(services, google):
    """Deliver a change notification for a channel with its real verification token."""

    async def _notify(channel_id: str, resource_state: str = "exists"):
        token = google.channels[channel_id]["token"] if channel_id in google.channels else "unknown"
        return await services.ingress.handle_notification(channel_id, resource_state, token)

    return _notify
