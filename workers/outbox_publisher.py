"""
Outbox publisher background worker.

Continuously polls the outbox table and publishes subscription events to a
Redis stream.
"""
import asyncio
import signal
from typing import Any

import structlog

from config import get_settings
from core.outbox import OutboxPublisher, RedisStreamPublisher
from database.connection import close_db
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", stream=settings.outbox_stream)

    stream_publisher = RedisStreamPublisher(stream=settings.outbox_stream)
    publisher = OutboxPublisher(
        publisher_func=stream_publisher,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await stream_publisher.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
