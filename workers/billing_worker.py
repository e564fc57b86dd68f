"""
Billing background worker.

Once a day it expires lapsed subscriptions, sends renewal reminders and
charges due renewals with stored card tokens.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from core.monitor import SubscriptionMonitor
from core.notifications import EmailNotifier
from core.recurring import RecurringBillingEngine
from core.subscriptions import SubscriptionService
from database.connection import close_db, get_session_factory
from integrations.cardcom_client import CardcomClient
from monitoring.logging import setup_logging

from .schedule import calculate_next_run_time, wait_until

logger = structlog.get_logger(__name__)


async def run_daily_billing(
    cardcom_client: CardcomClient,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Dict[str, Any]:
    """
    Run one billing cycle.

    Expiry runs before charging so a trial that just ended is active and
    due by the time renewals are selected.
    """
    session_factory = session_factory or get_session_factory()
    notifier = EmailNotifier()
    subscription_service = SubscriptionService(notifier)
    monitor = SubscriptionMonitor(subscription_service, notifier)
    engine = RecurringBillingEngine(cardcom_client, subscription_service)

    logger.info("daily_billing_started")

    async with session_factory() as db:
        expired = await monitor.check_subscriptions(db)
        await db.commit()

    async with session_factory() as db:
        reminders = await monitor.send_renewal_reminders(db)

    async with session_factory() as db:
        charges = await engine.process_due(db)

    logger.info(
        "daily_billing_completed",
        **expired,
        trial_reminders=reminders["trial_reminders"],
        annual_reminders=reminders["annual_reminders"],
        charged=charges["succeeded"],
        charge_failures=charges["failed"],
        skipped=charges["skipped"],
    )
    if charges["failed"]:
        logger.warning("daily_billing_charge_failures", failed=charges["failed"])

    return {"expired": expired, "reminders": reminders, "charges": charges}


async def start_billing_worker(target_hour: Optional[int] = None, run_now: bool = False) -> None:
    """
    Start the billing worker.

    Args:
        target_hour: Hour of day to run (defaults to settings)
        run_now: Run one cycle immediately before scheduling
    """
    setup_logging()
    settings = get_settings()
    target_hour = settings.billing_run_hour if target_hour is None else target_hour

    logger.info("billing_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("billing_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    cardcom_client = CardcomClient()
    try:
        while running:
            if not run_now:
                seconds_until = calculate_next_run_time(target_hour)
                logger.info("billing_next_run_scheduled", seconds_until=seconds_until)
                await wait_until(seconds_until, lambda: running)
                if not running:
                    break
            run_now = False

            try:
                await run_daily_billing(cardcom_client)
            except Exception as e:
                logger.error("billing_execution_error", error=str(e))
    finally:
        await cardcom_client.close()
        await close_db()
        logger.info("billing_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Subscription billing worker")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day to run (0-23)")
    parser.add_argument("--now", action="store_true", help="Run one cycle immediately")
    args = parser.parse_args()

    asyncio.run(start_billing_worker(target_hour=args.hour, run_now=args.now))


if __name__ == "__main__":
    main()
