"""Daily scheduling shared by the workers."""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from database.models import utcnow


def calculate_next_run_time(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until the next run at ``target_hour``.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Current time (defaults to UTC now)

    Returns:
        float: Seconds until next run
    """
    now = now or utcnow()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    return (next_run - now).total_seconds()


async def wait_until(
    seconds: float,
    is_running: Callable[[], bool],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Sleep ``seconds`` in one-minute steps, returning early on shutdown."""
    while seconds > 0 and is_running():
        step = min(seconds, 60)
        await sleep(step)
        seconds -= step
