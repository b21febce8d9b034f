"""Google Calendar REST client.

Covers the calls the bot depends on: calendar list, events watch/list/get/patch
and channel stop. Status codes are mapped onto the bot's error taxonomy here so
callers never inspect HTTP responses.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from calendar_bot.models.calendar import CalendarEvent, CalendarInfo, ResponseStatus, WatchChannel
from calendar_bot.utils.errors import (
    EventNotFoundError,
    ProviderError,
    SyncTokenExpiredError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
TRANSIENT_STATUS_CODES = {408, 429}
MAX_PAGE_SIZE = 250


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", ""))[:200]
    return str(error or "")[:200]


class GoogleCalendarClient:
    """Async client for the Google Calendar v3 API."""

    def __init__(
        self,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Google Calendar {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Google Calendar {method} {path} failed: {e}") from e

        if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
            raise TransientProviderError(
                f"Google Calendar {method} {path} returned {response.status_code}: "
                f"{_safe_error_message(response)}"
            )
        return response

    def _json(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                f"Google Calendar {operation} failed ({response.status_code}): "
                f"{_safe_error_message(response)}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Google Calendar {operation} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise ProviderError(f"Google Calendar {operation} returned an unexpected payload")
        return payload

    async def list_calendars(self, access_token: str) -> List[CalendarInfo]:
        """List the calendars on the user's calendar list."""
        calendars: List[CalendarInfo] = []
        params: Dict[str, Any] = {"maxResults": MAX_PAGE_SIZE}
        while True:
            payload = self._json(
                await self._request("GET", "/users/me/calendarList", access_token, params=params),
                "calendarList.list",
            )
            for item in payload.get("items", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        summary=item.get("summaryOverride") or item.get("summary", ""),
                        primary=bool(item.get("primary", False)),
                        access_role=item.get("accessRole"),
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars
            params["pageToken"] = page_token

    async def get_primary_calendar_id(self, access_token: str) -> str:
        """Resolve the ``primary`` alias to the calendar's real ID."""
        payload = self._json(
            await self._request("GET", "/calendars/primary", access_token),
            "calendars.get",
        )
        return payload["id"]

    async def watch_events(
        self,
        access_token: str,
        calendar_id: str,
        channel_id: str,
        address: str,
        verification_token: str,
        ttl_seconds: int,
    ) -> WatchChannel:
        """
        Open a push notification channel on a calendar's events.

        Args:
            access_token: Valid access token
            calendar_id: Calendar to watch
            channel_id: Locally generated channel ID (UUID)
            address: HTTPS callback receiving notifications
            verification_token: Echoed back in X-Goog-Channel-Token
            ttl_seconds: Requested lifetime; Google may shorten it

        Returns:
            WatchChannel with the provider resource ID and actual expiry
        """
        payload = self._json(
            await self._request(
                "POST",
                f"/calendars/{quote(calendar_id, safe='')}/events/watch",
                access_token,
                json_body={
                    "id": channel_id,
                    "type": "web_hook",
                    "address": address,
                    "token": verification_token,
                    "params": {"ttl": str(ttl_seconds)},
                },
            ),
            "events.watch",
        )
        expiration_ms = int(payload["expiration"])
        return WatchChannel(
            id=payload.get("id", channel_id),
            resource_id=payload["resourceId"],
            expires_at=datetime.fromtimestamp(expiration_ms / 1000, tz=timezone.utc),
        )

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        """Stop a channel. An already stopped or expired channel counts as stopped."""
        response = await self._request(
            "POST",
            "/channels/stop",
            access_token,
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code == 404:
            logger.info(f"Channel {channel_id} already gone at provider")
            return
        self._json(response, "channels.stop")

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str] = None,
    ) -> Tuple[List[CalendarEvent], str]:
        """
        List events, incrementally when ``sync_token`` is given.

        Returns:
            (changed events including cancellations, next sync token)

        Raises:
            SyncTokenExpiredError: Google returned 410 Gone for the sync token
        """
        params: Dict[str, Any] = {
            "showDeleted": "true",
            "singleEvents": "false",
            "maxResults": MAX_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token

        events: List[CalendarEvent] = []
        next_sync_token: Optional[str] = None
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        while True:
            response = await self._request("GET", path, access_token, params=params)
            if response.status_code == 410:
                raise SyncTokenExpiredError(
                    f"Sync token expired for calendar {calendar_id}; full resync required",
                    status_code=410,
                )
            payload = self._json(response, "events.list")

            for item in payload.get("items", []):
                if not item.get("id"):
                    continue
                events.append(CalendarEvent.from_google(item))

            next_sync_token = payload.get("nextSyncToken") or next_sync_token
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        if not next_sync_token:
            raise ProviderError(f"events.list for {calendar_id} did not return nextSyncToken")
        return events, next_sync_token

    async def _get_event_raw(self, access_token: str, calendar_id: str, event_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token,
        )
        if response.status_code in (404, 410):
            raise EventNotFoundError(event_id)
        return self._json(response, "events.get")

    async def respond_to_event(
        self,
        access_token: str,
        calendar_id: str,
        event_id: str,
        response_status: ResponseStatus,
    ) -> CalendarEvent:
        """
        Set the user's own attendee response on an event.

        Raises:
            EventNotFoundError: The event was deleted or cancelled
        """
        item = await self._get_event_raw(access_token, calendar_id, event_id)
        if item.get("status") == "cancelled":
            raise EventNotFoundError(event_id)

        attendees = item.get("attendees") or []
        if not any(attendee.get("self") for attendee in attendees):
            raise ProviderError(f"User is not an attendee of event {event_id}")
        for attendee in attendees:
            if attendee.get("self"):
                attendee["responseStatus"] = response_status.value

        response = await self._request(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token,
            json_body={"attendees": attendees},
        )
        if response.status_code in (404, 410):
            raise EventNotFoundError(event_id)
        return CalendarEvent.from_google(self._json(response, "events.patch"))
