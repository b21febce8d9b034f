"""Tests for the notification dispatcher."""

from datetime import datetime, timezone

import pytest

from calendar_bot.models.calendar import CalendarEvent, DeltaKind, EventDelta, ResponseStatus
from calendar_bot.services.notification_dispatcher import parse_response_status
from calendar_bot.utils.errors import AuthRevokedError, InvalidResponseStatusError


def _delta(account, kind, **fields):
    event = CalendarEvent(
        id="evt-1",
        updated=datetime(2026, 10, 1, tzinfo=timezone.utc),
        summary="Design review",
        start="2026-11-02T10:00:00Z",
        end="2026-11-02T11:00:00Z",
        organizer_email="boss@example.com",
        self_response_status="needsAction",
        **fields,
    )
    return EventDelta(kind=kind, account_id=account.id, event=event)


class TestFormat:
    """Test suite for message formatting."""

    async def test_new_invite(self, services, link_account):
        account = await link_account()

        message = services.dispatcher.format(account, _delta(account, DeltaKind.NEW_INVITE, location="Room 4"))

        assert message.text.splitlines() == [
            "You've been invited to an event on your 'work' calendar:",
            "What: *Design review*",
            "When: 2026-11-02T10:00:00Z to 2026-11-02T11:00:00Z",
            "Where: Room 4",
            "Organizer: boss@example.com",
            "Awaiting your response.",
        ]
        assert [(a.label, a.response) for a in message.actions] == [
            ("Yes", ResponseStatus.ACCEPTED),
            ("No", ResponseStatus.DECLINED),
            ("Maybe", ResponseStatus.TENTATIVE),
        ]

    async def test_updated_has_no_actions(self, services, link_account):
        account = await link_account()

        message = services.dispatcher.format(account, _delta(account, DeltaKind.UPDATED))

        assert message.text.startswith("An event on your 'work' calendar was updated:")
        assert "Your response: needsAction" in message.text
        assert message.actions == []

    async def test_cancelled(self, services, link_account):
        account = await link_account()

        message = services.dispatcher.format(account, _delta(account, DeltaKind.CANCELLED))

        assert message.text == "An event on your 'work' calendar was cancelled:\nWhat: *Design review*"


class TestRecordResponse:
    """Test suite for NotificationDispatcher.record_response."""

    async def test_response_applied(self, services, google, link_account):
        account = await link_account()
        google.add_invite("evt-1")

        applied = await services.dispatcher.record_response(account, "evt-1", ResponseStatus.TENTATIVE)

        assert applied
        assert google.responses == [("evt-1", "tentative")]

    async def test_cancelled_event(self, services, google, link_account):
        account = await link_account()
        google.add_invite("evt-1")
        google.cancel_event("evt-1")

        assert not await services.dispatcher.record_response(account, "evt-1", ResponseStatus.ACCEPTED)
        assert google.responses == []

    async def test_revoked_account(self, services, google, link_account):
        account = await link_account()
        google.add_invite("evt-1")
        await services.account_store.mark_revoked(account.id)

        with pytest.raises(AuthRevokedError):
            await services.dispatcher.record_response(account, "evt-1", ResponseStatus.ACCEPTED)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("accepted", ResponseStatus.ACCEPTED),
        ("Yes", ResponseStatus.ACCEPTED),
        ("no", ResponseStatus.DECLINED),
        (" maybe ", ResponseStatus.TENTATIVE),
    ],
)
def test_parse_response_status(value, expected):
    assert parse_response_status(value) is expected


def test_parse_response_status_rejects_unknown():
    with pytest.raises(InvalidResponseStatusError):
        parse_response_status("needsAction")
