"""Google OAuth client: authorization URLs, code exchange and token refresh.

google-auth and google-auth-oauthlib are synchronous, so every network call
runs in a worker thread under the provider timeout.
"""

import asyncio
import logging
from datetime import timezone
from typing import Callable, List, Optional, TypeVar

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2 import OAuth2Error

from calendar_bot.config import GoogleSettings
from calendar_bot.models.calendar import Credential
from calendar_bot.utils.errors import (
    AuthRevokedError,
    ConfigurationError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Token endpoint errors that mean our client registration is wrong, not the user's grant
CLIENT_CONFIG_ERRORS = {"invalid_client", "unauthorized_client"}


def _refresh_error_code(error: RefreshError) -> str:
    """Pull the OAuth ``error`` code out of a google-auth RefreshError."""
    if len(error.args) > 1 and isinstance(error.args[1], dict):
        return str(error.args[1].get("error", ""))
    # Without a parsed payload google-auth formats the message as "code: description"
    message = str(error.args[0]) if error.args else ""
    return message.split(":", 1)[0].strip()


class GoogleOAuthClient:
    """OAuth 2.0 web-server flow against Google."""

    def __init__(self, config: GoogleSettings, redirect_uri: str, timeout: float = 30.0):
        self.config = config
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    @property
    def scopes(self) -> List[str]:
        return list(self.config.scopes)

    def _client_config(self) -> dict:
        if not self.config.is_configured:
            raise ConfigurationError("Google OAuth client ID/secret are not configured")
        return {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": self.config.auth_uri,
                "token_uri": self.config.token_uri,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, state: Optional[str] = None) -> Flow:
        # The callback builds a fresh Flow, so no PKCE verifier can be carried over
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.scopes,
            redirect_uri=self.redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, state: str) -> str:
        """
        Build the consent URL for a link request.

        ``access_type=offline`` and ``prompt=consent`` make Google return a
        refresh token even when the user has linked this client before.
        """
        url, _ = self._flow(state=state).authorization_url(
            access_type="offline",
            prompt="consent",
        )
        return url

    async def exchange_code(self, authorization_code: str) -> Credential:
        """Exchange an authorization code for a credential."""

        def _exchange() -> Credentials:
            flow = self._flow()
            flow.fetch_token(code=authorization_code)
            return flow.credentials

        credentials = await self._run(_exchange, "code exchange")
        return self._to_credential(credentials)

    async def refresh(self, credential: Credential) -> Credential:
        """
        Refresh an access token.

        Raises:
            AuthRevokedError: Google answered invalid_grant; the refresh token is dead
            ConfigurationError: Google rejected our OAuth client
            TransientProviderError: Network failure, timeout or retryable error
            ProviderError: Any other rejection; the stored grant is left alone
        """
        if not credential.refresh_token:
            raise AuthRevokedError("No refresh token available")

        credentials = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.config.token_uri,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=credential.scopes or self.scopes,
        )

        await self._run(lambda: credentials.refresh(Request()), "token refresh")

        refreshed = self._to_credential(credentials)
        # Google only sometimes rotates the refresh token
        if not refreshed.refresh_token:
            refreshed.refresh_token = credential.refresh_token
        return refreshed

    async def _run(self, fn: Callable[[], T], operation: str) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Google {operation} timed out after {self.timeout}s") from e
        except TransportError as e:
            raise TransientProviderError(f"Google {operation} transport error: {e}") from e
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise TransientProviderError(f"Google {operation} failed (retryable): {e}") from e
            code = _refresh_error_code(e)
            if code == "invalid_grant":
                raise AuthRevokedError(f"Google {operation} rejected: {e}") from e
            if code in CLIENT_CONFIG_ERRORS:
                raise ConfigurationError(f"Google {operation} rejected the OAuth client ({code}): {e}") from e
            raise ProviderError(f"Google {operation} failed ({code or 'unknown'}): {e}") from e
        except requests.RequestException as e:
            raise TransientProviderError(f"Google {operation} request failed: {e}") from e
        except OAuth2Error as e:
            raise ProviderError(f"Google {operation} failed: {e.error}") from e

    def _to_credential(self, credentials: Credentials) -> Credential:
        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            # google-auth reports naive UTC
            expiry = expiry.replace(tzinfo=timezone.utc)
        return Credential(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expiry,
            scopes=list(credentials.scopes or self.scopes),
        )
