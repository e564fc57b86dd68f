"""
Payment status watcher.

Follows one hosted session until it settles: polls ``check_status`` on a
fixed interval, listens on the session's Redis channel between polls and
escalates through three timeout tiers (slow notice, direct gateway
verification, timeout).
"""
import asyncio
import json
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.payment_sessions import PaymentSessionService
from database.connection import get_session_factory, session_scope
from integrations.webhook_handler import session_channel

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = ("success", "failed", "timeout")


class PaymentStatusWatcher:
    """
    Yields status events for one payment session.

    Elapsed time is the sum of the waits the watcher performed, so tiers
    are reached after a predictable number of polls. With realtime on, the
    wait between polls is spent listening on the session channel and ends
    early when a settle message arrives.
    """

    def __init__(
        self,
        session_service: PaymentSessionService,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.sessions = session_service
        self.session_factory = session_factory
        self.redis_client = redis_client
        self._sleep = sleep
        self._clock = clock

    def _db(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _poll(
        self,
        session_id: uuid.UUID,
        low_profile_code: str,
        attempt: int,
        operation_type: Optional[str],
    ) -> Dict[str, Any]:
        async with session_scope(self._db()) as db:
            return await self.sessions.check_status(
                db, session_id, low_profile_code, attempt, operation_type
            )

    async def _verify(self, session_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        try:
            async with session_scope(self._db()) as db:
                return await self.sessions.verify_with_gateway(db, session_id)
        except Exception as e:
            logger.warning("status_gateway_verify_failed", session_id=str(session_id), error=str(e))
            return None

    async def _timeout(self, session_id: uuid.UUID) -> None:
        async with session_scope(self._db()) as db:
            await self.sessions.mark_timeout(db, session_id)

    async def _subscribe(self, session_id: uuid.UUID) -> Any:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(session_channel(session_id))
        return pubsub

    async def _listen(self, pubsub: Any, interval: float, log: Any) -> float:
        """
        Listen on the channel for up to ``interval`` seconds.

        Returns the seconds actually waited. A ``completed`` or ``failed``
        message ends the wait so the next poll runs right away.
        """
        started = self._clock()
        remaining = interval
        while remaining > 0:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
            if message and message.get("type") == "message":
                log.info("status_realtime_update", data=message.get("data"))
                update = json.loads(message["data"])
                if update.get("status") in ("completed", "failed"):
                    break
            remaining = interval - (self._clock() - started)
        return min(self._clock() - started, interval)

    @staticmethod
    async def _close(pubsub: Any) -> None:
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except Exception as e:
            logger.debug("status_pubsub_close_failed", error=str(e))

    async def watch(
        self,
        session_id: uuid.UUID,
        low_profile_code: str,
        operation_type: Optional[str] = None,
        realtime: bool = True,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Follow a session until it reaches a terminal status.

        Events:
            ``status``: a check_status result (terminal ones end the stream)
            ``slow``: first tier reached
            ``realtime_fallback``: realtime gave up, polling only
        """
        slow_after, verify_after, timeout_after = self.settings.get_status_timeout_tiers()
        interval = self.settings.status_poll_interval_seconds
        log = logger.bind(session_id=str(session_id), low_profile_id=low_profile_code)

        pubsub = None
        realtime_errors = 0
        poll_errors = 0
        slow_sent = verified = False

        await self._sleep(self.settings.status_poll_initial_delay_seconds)
        elapsed = self.settings.status_poll_initial_delay_seconds
        attempt = 0

        try:
            while True:
                attempt += 1
                try:
                    result = await self._poll(session_id, low_profile_code, attempt, operation_type)
                    poll_errors = 0
                except Exception as e:
                    poll_errors += 1
                    log.warning("status_poll_failed", attempt=attempt, error=str(e))
                    if poll_errors > self.settings.status_poll_max_errors:
                        yield {
                            "event": "status",
                            "status": "failed",
                            "message": "Status checks keep failing",
                            "elapsed": elapsed,
                        }
                        return
                    result = None

                if result is not None:
                    yield {"event": "status", "elapsed": elapsed, "attempt": attempt, **result}
                    if result["status"] in TERMINAL_STATUSES:
                        return

                if elapsed >= slow_after and not slow_sent:
                    slow_sent = True
                    yield {"event": "slow", "elapsed": elapsed}

                if elapsed >= verify_after and not verified:
                    verified = True
                    log.info("status_verifying_with_gateway", elapsed=elapsed)
                    verification = await self._verify(session_id)
                    if verification and verification["status"] in TERMINAL_STATUSES:
                        yield {"event": "status", "elapsed": elapsed, **verification}
                        return

                if elapsed >= timeout_after:
                    await self._timeout(session_id)
                    log.warning("status_watch_timed_out", elapsed=elapsed, attempts=attempt)
                    yield {
                        "event": "status",
                        "status": "timeout",
                        "message": "Payment confirmation timed out",
                        "timeout": True,
                        "elapsed": elapsed,
                    }
                    return

                waited = None
                if realtime and realtime_errors <= self.settings.realtime_max_retries:
                    try:
                        if pubsub is None:
                            pubsub = await self._subscribe(session_id)
                        waited = await self._listen(pubsub, interval, log)
                    except Exception as e:
                        realtime_errors += 1
                        log.warning("status_realtime_error", errors=realtime_errors, error=str(e))
                        if pubsub is not None:
                            await self._close(pubsub)
                            pubsub = None
                        if realtime_errors > self.settings.realtime_max_retries:
                            yield {"event": "realtime_fallback", "elapsed": elapsed}

                if waited is None:
                    await self._sleep(interval)
                    waited = interval
                elapsed += waited
        finally:
            if pubsub is not None:
                await self._close(pubsub)
