"""
Reconciliation background worker.

Runs daily reconciliation at a scheduled hour (2 AM UTC by default).
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from config import get_settings
from core.reconciliation import ReconciliationEngine
from database.connection import close_db
from integrations.cardcom_client import CardcomClient
from integrations.webhook_handler import CardcomWebhookHandler
from monitoring.logging import setup_logging

from .schedule import calculate_next_run_time, wait_until

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(
    engine: ReconciliationEngine, repair: bool = False
) -> Dict[str, Any]:
    """
    Run daily reconciliation for yesterday's payments.
    """
    logger.info("daily_reconciliation_started", repair=repair)

    result = await engine.reconcile_yesterday(repair=repair)

    logger.info(
        "daily_reconciliation_completed",
        date=result["date"],
        discrepancy_cents=result["discrepancy_cents"],
        discrepancy_count=result["discrepancy_count"],
        gateway_errors=len(result["gateway_errors"]),
    )

    if result["discrepancy_cents"] > 0 or result["discrepancy_count"] > 0:
        logger.warning(
            "reconciliation_discrepancies_detected",
            date=result["date"],
            discrepancy_cents=result["discrepancy_cents"],
            discrepancy_count=result["discrepancy_count"],
        )

    return result


async def start_reconciliation_worker(
    target_hour: Optional[int] = None, repair: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run (defaults to settings)
        repair: Settle payments found missing from the database
    """
    setup_logging()
    settings = get_settings()
    target_hour = settings.reconciliation_run_hour if target_hour is None else target_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour, repair=repair)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    cardcom_client = CardcomClient()
    handler = CardcomWebhookHandler()
    engine = ReconciliationEngine(cardcom_client, handler)
    try:
        while running:
            seconds_until = calculate_next_run_time(target_hour)
            logger.info("reconciliation_next_run_scheduled", seconds_until=seconds_until)
            await wait_until(seconds_until, lambda: running)
            if not running:
                break

            try:
                await run_daily_reconciliation(engine, repair=repair)
            except Exception as e:
                # Continue running even if one reconciliation fails
                logger.error("reconciliation_execution_error", error=str(e))
    finally:
        await cardcom_client.close()
        await handler.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument("--hour", type=int, default=None, help="Hour of day to run (0-23)")
    parser.add_argument(
        "--repair", action="store_true", help="Settle payments missing from the database"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, repair=args.repair))


if __name__ == "__main__":
    main()
