"""
Webhook retry background worker.

Periodically re-runs stored Cardcom webhooks that failed to settle.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from config import get_settings
from core.recovery import WebhookRecoveryService
from database.connection import close_db, get_session_factory
from integrations.webhook_handler import CardcomWebhookHandler
from monitoring.logging import setup_logging

from .schedule import wait_until

logger = structlog.get_logger(__name__)


async def run_webhook_retry(service: WebhookRecoveryService) -> None:
    """Retry one batch of unprocessed webhooks."""
    async with get_session_factory()() as db:
        result = await service.process_unprocessed_webhooks(db)

    if result["failed"]:
        logger.warning(
            "webhook_retry_failures",
            processed=result["processed"],
            failed=result["failed"],
        )


async def start_webhook_retry_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the webhook retry worker.

    Args:
        interval_seconds: Seconds between runs (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.webhook_retry_interval_seconds

    logger.info("webhook_retry_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("webhook_retry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    handler = CardcomWebhookHandler()
    service = WebhookRecoveryService(handler)
    try:
        while running:
            try:
                await run_webhook_retry(service)
            except Exception as e:
                logger.error("webhook_retry_execution_error", error=str(e))
            await wait_until(interval, lambda: running)
    finally:
        await handler.close()
        await close_db()
        logger.info("webhook_retry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Webhook retry worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between runs")
    args = parser.parse_args()

    asyncio.run(start_webhook_retry_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
