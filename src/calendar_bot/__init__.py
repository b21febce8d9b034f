"""Calendar bot: Google Calendar accounts, watch channels and invite notifications for chat users."""

__version__ = "1.0.0"
