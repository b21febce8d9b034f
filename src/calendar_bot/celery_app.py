"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from calendar_bot.config import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    "calendar_bot",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "calendar_bot.tasks.subscription_renewal",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,  # 1 hour
)

# Celery Beat schedule, for deployments that run the renewal tick outside the web server
app.conf.beat_schedule = {
    "renew-expiring-subscriptions": {
        "task": "calendar_bot.tasks.subscription_renewal.renew_expiring_subscriptions",
        "schedule": crontab(minute=0),  # Every hour at :00
    },
}

if __name__ == "__main__":
    app.start()
