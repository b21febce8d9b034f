"""
Calendar Bot - Main entry point.

This module serves as the entry point for the webhook server:
    uvicorn calendar_bot.main:app
For the Celery worker, use: celery -A calendar_bot.celery_app worker --beat
"""

from calendar_bot.workers.webhook_server import create_app

# Export app for uvicorn
app = create_app()

__all__ = ["app"]
