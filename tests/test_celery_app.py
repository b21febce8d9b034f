"""Tests for Celery application configuration."""


def test_celery_app_imports():
    """Test that Celery app can be imported."""
    from calendar_bot.celery_app import app

    assert app is not None
    assert app.main == "calendar_bot"


def test_celery_app_configuration():
    from calendar_bot.celery_app import app

    assert app.conf.task_serializer == "json"
    assert app.conf.accept_content == ["json"]
    assert app.conf.timezone == "UTC"
    assert app.conf.enable_utc is True
    assert app.conf.task_time_limit == 300


def test_celery_beat_schedule():
    from calendar_bot.celery_app import app

    beat_schedule = app.conf.beat_schedule

    assert "renew-expiring-subscriptions" in beat_schedule
    assert beat_schedule["renew-expiring-subscriptions"]["task"] == \
        "calendar_bot.tasks.subscription_renewal.renew_expiring_subscriptions"
