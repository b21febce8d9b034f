"""Renewal scheduler: keeps watch channels alive ahead of provider expiry.

One process-wide background task, started and stopped with the web server.
Deployments that run Celery beat instead call ``run_once`` from the
``renew_expiring_subscriptions`` task.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from calendar_bot.database.models import Subscription
from calendar_bot.models.results import RenewalReport
from calendar_bot.services.account_store import AccountStore
from calendar_bot.services.notification_dispatcher import NotificationDispatcher
from calendar_bot.services.subscription_manager import SubscriptionManager
from calendar_bot.utils.errors import AuthRevokedError, CalendarBotError, UnknownChannelError

logger = logging.getLogger(__name__)

RENEWED = "renewed"
FAILED = "failed"
TORN_DOWN = "torn_down"
SKIPPED = "skipped"


class RenewalScheduler:
    """Periodically renews subscriptions that expire within the renewal window."""

    def __init__(
        self,
        subscription_manager: SubscriptionManager,
        dispatcher: NotificationDispatcher,
        account_store: Optional[AccountStore] = None,
        window: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(hours=1),
        max_failures: int = 3,
        concurrency: int = 10,
    ):
        self.subscription_manager = subscription_manager
        self.dispatcher = dispatcher
        self.account_store = account_store
        self.window = window
        self.interval = interval
        self.max_failures = max_failures
        self.concurrency = concurrency
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop; the first tick runs immediately."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="renewal-scheduler")
        logger.info(
            f"Renewal scheduler started (interval {self.interval}, window {self.window}, "
            f"max failures {self.max_failures})"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Renewal scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Renewal tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval.total_seconds())

    async def run_once(self) -> RenewalReport:
        """
        Run one tick.

        Every subscription is handled independently; a failure for one
        account never blocks the others.
        """
        report = RenewalReport()
        expiring = await self.subscription_manager.list_expiring(self.window)
        logger.info(f"Found {len(expiring)} subscription(s) expiring within {self.window}")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(subscription: Subscription) -> str:
            async with semaphore:
                return await self._renew_one(subscription)

        outcomes = await asyncio.gather(*(_bounded(s) for s in expiring))
        report.renewed = outcomes.count(RENEWED)
        report.errors = outcomes.count(FAILED) + outcomes.count(TORN_DOWN)
        report.torn_down = outcomes.count(TORN_DOWN)

        try:
            report.reaped = await self.subscription_manager.reap_superseded()
        except Exception as e:
            logger.error(f"Reaping superseded channels failed: {e}", exc_info=True)

        if self.account_store is not None:
            try:
                await self.account_store.purge_abandoned_links()
            except Exception as e:
                logger.error(f"Purging abandoned link requests failed: {e}", exc_info=True)

        logger.info(
            f"Renewal tick done: {report.renewed} renewed, {report.errors} errors, "
            f"{report.torn_down} torn down, {report.reaped} reaped"
        )
        return report

    async def _renew_one(self, subscription: Subscription) -> str:
        try:
            await self.subscription_manager.renew(subscription)
            return RENEWED
        except UnknownChannelError:
            # Superseded or unsubscribed since the query ran
            return SKIPPED
        except AuthRevokedError as e:
            logger.warning(f"Account {subscription.account_id} revoked during renewal: {e.message}")
            return await self._teardown(subscription)
        except Exception as e:
            message = e.message if isinstance(e, CalendarBotError) else str(e)
            logger.error(f"Error renewing channel {subscription.channel_id}: {message}")

        try:
            failures = await self.subscription_manager.record_renewal_failure(subscription)
        except Exception as e:
            logger.error(f"Could not record renewal failure for {subscription.channel_id}: {e}")
            return FAILED
        if failures >= self.max_failures:
            return await self._teardown(subscription)
        return FAILED

    async def _teardown(self, subscription: Subscription) -> str:
        try:
            account = await self.subscription_manager.teardown_lapsed(subscription)
        except Exception as e:
            logger.error(f"Teardown of channel {subscription.channel_id} failed: {e}", exc_info=True)
            return FAILED
        if account is not None:
            try:
                await self.dispatcher.notify_subscription_lapsed(account)
            except Exception as e:
                logger.error(f"Failed to notify user {account.user_id} of lapsed subscription: {e}")
        return TORN_DOWN
