"""End-to-end flow through the HTTP surface and chat commands."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calendar_bot.models.calendar import DeltaKind
from calendar_bot.workers.webhook_server import create_app


@pytest.fixture
async def http(settings, services):
    # ASGITransport skips the lifespan, so the services are attached directly
    app = create_app(settings, services)
    app.state.services = services
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://bot.example.com") as client:
        yield client


def _headers(google, channel_id, resource_state="exists"):
    return {
        "X-Goog-Channel-ID": channel_id,
        "X-Goog-Resource-State": resource_state,
        "X-Goog-Channel-Token": google.channels[channel_id]["token"],
    }


async def test_connect_subscribe_notify_respond(services, google, chat, http):
    reply = await services.commands.handle("alice", "!gcal accounts connect work")
    state = parse_qs(urlparse(reply.rsplit(" ", 1)[-1]).query)["state"][0]

    callback = await http.get("/oauth/callback", params={"state": state, "code": "code-1"})
    assert callback.status_code == 200
    assert "Account connected" in callback.text

    reply = await services.commands.handle("alice", "!gcal subscribe invites work")
    assert reply.startswith("OK, you will be notified")
    (channel_id,) = google.live_channels

    handshake = await http.post("/webhook", headers=_headers(google, channel_id, "sync"))
    assert handshake.json() == {"status": "accepted"}
    sent_before = len(chat.messages)

    google.add_invite("evt-1", summary="Offsite")
    await http.post("/webhook", headers=_headers(google, channel_id))

    assert len(chat.messages) == sent_before + 1
    user_id, message = chat.messages[-1]
    assert user_id == "alice"
    assert "Offsite" in message.text
    yes = next(a for a in message.actions if a.label == "Yes")

    assert await services.commands.handle_action("alice", yes) == "Response recorded: accepted."
    assert google.responses == [("evt-1", "accepted")]

    # The response itself shows up as an update of a tracked invite
    result = await services.ingress.handle_notification(channel_id, "exists", google.channels[channel_id]["token"])
    assert [d.kind for d in result.deltas] == [DeltaKind.UPDATED]

    reply = await services.commands.handle("alice", "!gcal accounts disconnect work")
    assert reply == "Account 'work' has been disconnected."
    assert google.live_channels == []

    stale = await services.ingress.handle_notification(channel_id, "exists", "anything")
    assert stale.ignored_reason == "unknown_channel"


async def test_renewal_moves_notifications_to_new_channel(services, google, chat, http, link_account):
    google.channel_lifetime = timedelta(hours=2)
    account = await link_account()
    await services.commands.handle("alice", "subscribe invites work")
    google.channel_lifetime = None
    (old_channel,) = google.live_channels
    old_token = google.channels[old_channel]["token"]

    report = await services.scheduler.run_once()

    assert report.renewed == 1
    (new_channel,) = google.live_channels
    assert new_channel != old_channel

    google.add_invite("evt-1", summary="Offsite")
    sent_before = len(chat.messages)

    await http.post(
        "/webhook",
        headers={"X-Goog-Channel-ID": old_channel, "X-Goog-Resource-State": "exists", "X-Goog-Channel-Token": old_token},
    )
    assert len(chat.messages) == sent_before

    await http.post("/webhook", headers=_headers(google, new_channel))
    assert len(chat.messages) == sent_before + 1
    assert chat.messages[-1][1].actions[0].account_id == account.id


async def test_expired_link_page(http):
    response = await http.get("/oauth/callback", params={"state": "never-issued", "code": "code-1"})

    assert response.status_code == 400
    assert "Link expired" in response.text
