"""
Worker scheduling and single-run tests.
"""
from datetime import datetime, timedelta
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.notifications import EmailNotifier
from database.models import Subscription, utcnow
from integrations.cardcom_client import CardcomClient
from workers.billing_worker import run_daily_billing
from workers.reconciliation_worker import run_daily_reconciliation
from workers.schedule import calculate_next_run_time, wait_until


class TestSchedule:
    """Next-run arithmetic."""

    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2025, 4, 10, 1, 30)

        assert calculate_next_run_time(2, now) == 30 * 60

    @pytest.mark.unit
    def test_already_passed_runs_tomorrow(self) -> None:
        now = datetime(2025, 4, 10, 6, 0)

        assert calculate_next_run_time(6, now) == 24 * 3600

    @pytest.mark.asyncio
    async def test_wait_until_sleeps_in_steps(self) -> None:
        sleep = AsyncMock()

        await wait_until(150, lambda: True, sleep=sleep)

        assert [call.args[0] for call in sleep.await_args_list] == [60, 60, 30]

    @pytest.mark.asyncio
    async def test_wait_until_stops_on_shutdown(self) -> None:
        sleep = AsyncMock()
        running = iter([True, False])

        await wait_until(600, lambda: next(running), sleep=sleep)

        assert sleep.await_count == 1


class TestDailyRuns:
    @pytest.mark.asyncio
    async def test_billing_run_expires_before_charging(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        cardcom_client: CardcomClient,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
        mocker: Any,
    ) -> None:
        mocker.patch.object(EmailNotifier, "_deliver")
        user = await make_user()
        subscription = await make_subscription(
            user.id,
            status="trial",
            trial_ends_at=utcnow() - timedelta(hours=1),
            next_charge_at=None,
            payment_method=None,
        )

        result = await run_daily_billing(cardcom_client, session_factory)

        assert result["expired"]["trials_expired"] == 1
        assert result["charges"]["total"] == 0
        async with session_factory() as db:
            assert (await db.get(Subscription, subscription.id)).status == "expired"

    @pytest.mark.asyncio
    async def test_reconciliation_run_returns_result(self) -> None:
        engine = MagicMock()
        engine.reconcile_yesterday = AsyncMock(
            return_value={
                "date": "2025-04-09",
                "discrepancy_cents": 100,
                "discrepancy_count": 1,
                "gateway_errors": [],
            }
        )

        result = await run_daily_reconciliation(engine, repair=True)

        assert result["discrepancy_count"] == 1
        engine.reconcile_yesterday.assert_awaited_once_with(repair=True)
