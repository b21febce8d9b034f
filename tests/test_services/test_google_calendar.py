"""Tests for the Google Calendar REST client using httpx.MockTransport."""

import json

import httpx
import pytest

from calendar_bot.models.calendar import ResponseStatus
from calendar_bot.services.google_calendar import GoogleCalendarClient
from calendar_bot.utils.errors import (
    EventNotFoundError,
    ProviderError,
    SyncTokenExpiredError,
    TransientProviderError,
)

INVITE = {
    "id": "evt-1",
    "status": "confirmed",
    "updated": "2026-10-01T12:00:00.000Z",
    "summary": "Planning",
    "start": {"dateTime": "2026-11-02T10:00:00Z"},
    "end": {"dateTime": "2026-11-02T11:00:00Z"},
    "organizer": {"email": "boss@example.com"},
    "attendees": [
        {"email": "boss@example.com", "organizer": True, "responseStatus": "accepted"},
        {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
    ],
}


def _client(handler):
    return GoogleCalendarClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestGoogleCalendarClient:
    """Test suite for GoogleCalendarClient."""

    async def test_watch_events(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "chan-1", "resourceId": "res-1", "expiration": "1793534400000"},
            )

        channel = await _client(handler).watch_events(
            "token-1",
            "me@example.com",
            channel_id="chan-1",
            address="https://bot.example.com/webhook",
            verification_token="secret",
            ttl_seconds=604800,
        )

        assert captured["url"].endswith("/events/watch")
        assert "/calendars/me" in captured["url"]
        assert captured["auth"] == "Bearer token-1"
        assert captured["body"]["type"] == "web_hook"
        assert captured["body"]["token"] == "secret"
        assert captured["body"]["params"] == {"ttl": "604800"}
        assert channel.resource_id == "res-1"
        assert int(channel.expires_at.timestamp() * 1000) == 1793534400000

    async def test_list_events_pages_and_returns_sync_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["showDeleted"] == "true"
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={"items": [INVITE], "nextPageToken": "page-2"})
            return httpx.Response(
                200,
                json={"items": [{"id": "evt-2", "status": "cancelled"}], "nextSyncToken": "sync-2"},
            )

        events, sync_token = await _client(handler).list_events("token", "primary")

        assert [e.id for e in events] == ["evt-1", "evt-2"]
        assert events[0].is_invite
        assert events[1].is_cancelled
        assert sync_token == "sync-2"

    async def test_list_events_with_expired_sync_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["syncToken"] == "stale"
            return httpx.Response(410, json={"error": {"code": 410, "message": "Sync token is no longer valid"}})

        with pytest.raises(SyncTokenExpiredError):
            await _client(handler).list_events("token", "primary", sync_token="stale")

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status_code):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"error": {"message": "try later"}})

        with pytest.raises(TransientProviderError):
            await _client(handler).list_calendars("token")

    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(TransientProviderError):
            await _client(handler).get_primary_calendar_id("token")

    async def test_client_error_is_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "insufficient permissions"}})

        with pytest.raises(ProviderError) as exc_info:
            await _client(handler).get_primary_calendar_id("token")

        assert exc_info.value.status_code == 403

    async def test_stop_channel_already_gone(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": {"message": "Channel not found"}})

        await _client(handler).stop_channel("token", "chan-1", "res-1")

    async def test_list_calendars(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "me@example.com", "summary": "me@example.com", "primary": True, "accessRole": "owner"},
                        {"id": "team@group", "summary": "Team", "summaryOverride": "My team", "accessRole": "reader"},
                    ]
                },
            )

        calendars = await _client(handler).list_calendars("token")

        assert [(c.summary, c.primary) for c in calendars] == [("me@example.com", True), ("My team", False)]

    async def test_respond_to_event_patches_self_attendee(self):
        patched = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=INVITE)
            patched.update(json.loads(request.content))
            return httpx.Response(200, json={**INVITE, "attendees": patched["attendees"]})

        event = await _client(handler).respond_to_event("token", "primary", "evt-1", ResponseStatus.ACCEPTED)

        statuses = {a["email"]: a["responseStatus"] for a in patched["attendees"]}
        assert statuses == {"boss@example.com": "accepted", "me@example.com": "accepted"}
        assert event.self_response_status == "accepted"

    async def test_respond_to_cancelled_event(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={**INVITE, "status": "cancelled"})

        with pytest.raises(EventNotFoundError):
            await _client(handler).respond_to_event("token", "primary", "evt-1", ResponseStatus.DECLINED)

    async def test_respond_to_deleted_event(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(410, json={"error": {"message": "Resource has been deleted"}})

        with pytest.raises(EventNotFoundError):
            await _client(handler).respond_to_event("token", "primary", "evt-1", ResponseStatus.DECLINED)
