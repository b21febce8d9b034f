"""Watch channel renewal Celery task."""

import logging

from celery import shared_task

from calendar_bot.config import get_settings
from calendar_bot.database.session import build_engine, create_session_factory
from calendar_bot.dependencies import build_services
from calendar_bot.models.results import RenewalReport
from calendar_bot.utils.async_helpers import run_async

logger = logging.getLogger(__name__)


async def _run_tick() -> RenewalReport:
    # asyncio.run gives every task a fresh loop, so the engine cannot be shared across runs
    settings = get_settings()
    engine = build_engine(settings)
    services = build_services(settings, create_session_factory(engine))
    try:
        return await services.scheduler.run_once()
    finally:
        await services.close()
        await engine.dispose()


@shared_task(
    bind=True,
    name="calendar_bot.tasks.subscription_renewal.renew_expiring_subscriptions",
)
def renew_expiring_subscriptions(self) -> dict:
    """
    Renew watch channels expiring within the renewal window.

    Runs periodically via Celery Beat. Failures of individual subscriptions
    are counted in the report; the task itself only fails when the tick
    cannot run at all.

    Returns:
        dict with renewal statistics
    """
    try:
        report = run_async(_run_tick())
        logger.info(
            f"Subscription renewal complete: {report.renewed} renewed, {report.errors} errors, "
            f"{report.torn_down} torn down"
        )
        return {"success": True, **report.model_dump()}
    except Exception as e:
        logger.error(f"Error in renew_expiring_subscriptions: {e}", exc_info=True)
        return {"success": False, "error": str(e)}
