"""OAuth integration."""

from calendar_bot.auth.google_oauth import GoogleOAuthClient

__all__ = ["GoogleOAuthClient"]
