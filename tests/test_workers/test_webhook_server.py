"""Tests for the webhook server endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from calendar_bot.utils.errors import (
    DuplicateNicknameError,
    ExpiredLinkTokenError,
    ProviderError,
    TransientProviderError,
)
from calendar_bot.workers.webhook_server import create_app


@pytest.fixture
def mock_services():
    services = MagicMock()
    services.ingress.handle_notification = AsyncMock()
    services.connection_flow.handle_callback = AsyncMock()
    services.close = AsyncMock()
    return services


@pytest.fixture
def client(settings, mock_services):
    with TestClient(create_app(settings, mock_services)) as test_client:
        yield test_client


CHANNEL_HEADERS = {
    "X-Goog-Channel-ID": "chan-1",
    "X-Goog-Resource-State": "exists",
    "X-Goog-Channel-Token": "secret",
    "X-Goog-Message-Number": "7",
}


class TestWebhookServer:
    """Test suite for the webhook server."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "calendar-bot-test"

    def test_root_lists_endpoints(self, client):
        response = client.get("/")

        assert response.json()["endpoints"]["webhook"] == "/webhook"

    def test_notification_processed_in_background(self, client, mock_services):
        response = client.post("/webhook", headers=CHANNEL_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"status": "accepted"}
        mock_services.ingress.handle_notification.assert_called_once_with("chan-1", "exists", "secret")

    def test_notification_without_headers_is_acknowledged(self, client, mock_services):
        response = client.post("/webhook")

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        mock_services.ingress.handle_notification.assert_not_called()

    def test_shutdown_closes_services(self, settings, mock_services):
        with TestClient(create_app(settings, mock_services)):
            pass

        mock_services.close.assert_awaited_once()
        mock_services.scheduler.start.assert_not_called()


class TestOAuthCallback:
    """Test suite for the OAuth redirect endpoint."""

    def test_success(self, client, mock_services):
        account = MagicMock()
        account.nickname = "work"
        mock_services.connection_flow.handle_callback.return_value = account

        response = client.get("/oauth/callback", params={"state": "link-1", "code": "code-1"})

        assert response.status_code == 200
        assert "Account connected" in response.text
        assert "&#x27;work&#x27;" in response.text
        mock_services.connection_flow.handle_callback.assert_awaited_once_with("link-1", "code-1")

    def test_user_denied_access(self, client, mock_services):
        response = client.get("/oauth/callback", params={"error": "access_denied", "state": "link-1"})

        assert response.status_code == 200
        assert "Linking cancelled" in response.text
        mock_services.connection_flow.handle_callback.assert_not_called()

    def test_missing_parameters(self, client):
        response = client.get("/oauth/callback", params={"state": "link-1"})

        assert response.status_code == 400

    @pytest.mark.parametrize(
        "error, status_code, title",
        [
            (ExpiredLinkTokenError("expired"), 400, "Link expired"),
            (DuplicateNicknameError("work"), 409, "Already connected"),
            (TransientProviderError("timeout"), 503, "Please retry"),
            (ProviderError("bad request", status_code=400), 400, "Linking failed"),
        ],
    )
    def test_errors(self, client, mock_services, error, status_code, title):
        mock_services.connection_flow.handle_callback.side_effect = error

        response = client.get("/oauth/callback", params={"state": "link-1", "code": "code-1"})

        assert response.status_code == status_code
        assert title in response.text
