"""FastAPI server for Google push notifications and the OAuth redirect.

Endpoints:
- POST /webhook: Google Calendar watch channel notifications
- GET /oauth/callback: OAuth redirect completing an account link
- GET /health, GET /: service information
"""

import html
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import BackgroundTasks, FastAPI, Header, Request, status
from fastapi.responses import HTMLResponse

from calendar_bot import __version__
from calendar_bot.config import Settings, get_settings
from calendar_bot.database.session import build_engine, create_session_factory
from calendar_bot.dependencies import Services, build_services
from calendar_bot.utils.errors import (
    CalendarBotError,
    DuplicateNicknameError,
    ExpiredLinkTokenError,
    TransientProviderError,
)
from calendar_bot.utils.logging import get_logger, setup_logging

logger = get_logger("webhook_server")


def _page(title: str, body: str, status_code: int = status.HTTP_200_OK) -> HTMLResponse:
    content = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        f"<body><h1>{html.escape(title)}</h1><p>{html.escape(body)}</p></body></html>"
    )
    return HTMLResponse(content=content, status_code=status_code)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Settings to use; defaults to the environment
        services: Pre-wired services; when omitted the lifespan builds them
            on its own engine and disposes of both on shutdown
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging()
        logger.info(f"Starting {settings.service_name} (environment: {settings.environment})")
        logger.info(f"Webhook URL: {settings.webhook_url}")

        engine = None
        wired = services
        if wired is None:
            engine = build_engine(settings)
            wired = build_services(settings, create_session_factory(engine))
        app.state.services = wired

        if settings.renewal.embedded_scheduler:
            wired.scheduler.start()

        try:
            yield
        finally:
            logger.info(f"Shutting down {settings.service_name}")
            await wired.close()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(
        title="Calendar Bot Webhook Server",
        description="Receives Google Calendar push notifications and OAuth redirects",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.service_name, "version": __version__}

    @app.post(
        settings.webhook_path,
        status_code=status.HTTP_200_OK,
        summary="Receive Google Calendar push notifications",
    )
    async def handle_google_notification(
        request: Request,
        background_tasks: BackgroundTasks,
        x_goog_channel_id: Optional[str] = Header(None, alias="X-Goog-Channel-ID"),
        x_goog_resource_state: Optional[str] = Header(None, alias="X-Goog-Resource-State"),
        x_goog_channel_token: Optional[str] = Header(None, alias="X-Goog-Channel-Token"),
        x_goog_message_number: Optional[str] = Header(None, alias="X-Goog-Message-Number"),
    ):
        """
        Handle a Google Calendar push notification.

        Google retries every non-2xx response, so the notification is always
        acknowledged and processed after the response is sent.
        """
        if not x_goog_channel_id or not x_goog_resource_state:
            logger.warning("Notification without channel headers, acknowledged")
            return {"status": "ignored"}

        logger.info(
            f"Notification on channel {x_goog_channel_id}: state={x_goog_resource_state} "
            f"message={x_goog_message_number}"
        )
        background_tasks.add_task(
            request.app.state.services.ingress.handle_notification,
            x_goog_channel_id,
            x_goog_resource_state,
            x_goog_channel_token,
        )
        return {"status": "accepted"}

    @app.get(settings.oauth_callback_path, response_class=HTMLResponse)
    async def handle_oauth_callback(
        request: Request,
        state: Optional[str] = None,
        code: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Complete an account link from Google's OAuth redirect."""
        if error:
            logger.info(f"OAuth authorization not granted: {error}")
            return _page(
                "Linking cancelled",
                "Google did not grant access. Run `accounts connect` again in chat to retry.",
            )
        if not state or not code:
            return _page("Invalid link", "This link is missing required parameters.", status.HTTP_400_BAD_REQUEST)

        flow = request.app.state.services.connection_flow
        try:
            account = await flow.handle_callback(state, code)
        except ExpiredLinkTokenError as e:
            return _page("Link expired", e.user_message, status.HTTP_400_BAD_REQUEST)
        except DuplicateNicknameError as e:
            return _page("Already connected", e.user_message, status.HTTP_409_CONFLICT)
        except TransientProviderError as e:
            logger.warning(f"OAuth callback failed transiently: {e.message}")
            return _page("Please retry", e.user_message, status.HTTP_503_SERVICE_UNAVAILABLE)
        except CalendarBotError as e:
            logger.error(f"OAuth callback failed: {e.message}")
            return _page("Linking failed", e.user_message, status.HTTP_400_BAD_REQUEST)

        return _page(
            "Account connected",
            f"Your Google account is connected as '{account.nickname}'. You can close this window.",
        )

    @app.get("/", status_code=status.HTTP_200_OK)
    async def root():
        """Root endpoint with service information."""
        return {
            "service": settings.service_name,
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "webhook": settings.webhook_path,
                "oauth_callback": settings.oauth_callback_path,
            },
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calendar_bot.workers.webhook_server:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        log_level=get_settings().log_level.lower(),
    )
