"""
Subscription monitor tests: expiry sweeps and reminder windows.
"""
from datetime import timedelta
from typing import Any, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.monitor import SubscriptionMonitor
from core.notifications import EmailNotifier
from core.subscriptions import SubscriptionService
from database.models import utcnow


@pytest.fixture
def monitor(
    test_settings: Settings, subscription_service: SubscriptionService, notifier: EmailNotifier
) -> SubscriptionMonitor:
    return SubscriptionMonitor(subscription_service, notifier, test_settings)


class TestCheckSubscriptions:
    """Daily expiry sweep."""

    @pytest.mark.asyncio
    async def test_trial_with_card_becomes_active(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        trial_end = utcnow() - timedelta(hours=2)
        subscription = await make_subscription(
            user.id, status="trial", trial_ends_at=trial_end, next_charge_at=trial_end
        )

        counts = await monitor.check_subscriptions(test_db)

        assert counts["trials_activated"] == 1
        assert subscription.status == "active"
        assert subscription.current_period_starts_at == trial_end
        assert subscription.current_period_ends_at == trial_end + timedelta(days=30)
        assert subscription.next_charge_at == trial_end

    @pytest.mark.asyncio
    async def test_trial_without_card_expires(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        subscription = await make_subscription(
            user.id,
            status="trial",
            trial_ends_at=utcnow() - timedelta(minutes=5),
            payment_method=None,
        )

        counts = await monitor.check_subscriptions(test_db)

        assert counts["trials_expired"] == 1
        assert subscription.status == "expired"

    @pytest.mark.asyncio
    async def test_grace_and_cancelled_periods_expire(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        past = utcnow() - timedelta(days=1)
        in_grace = await make_subscription(
            (await make_user()).id, status="failed", grace_period_ends_at=past
        )
        cancelled = await make_subscription(
            (await make_user()).id, status="cancelled", current_period_ends_at=past
        )
        still_cancelled = await make_subscription((await make_user()).id, status="cancelled")

        counts = await monitor.check_subscriptions(test_db)

        assert counts == {
            "trials_activated": 0,
            "trials_expired": 0,
            "grace_expired": 1,
            "cancelled_expired": 1,
        }
        assert in_grace.status == "expired"
        assert in_grace.next_charge_at is None
        assert cancelled.status == "expired"
        assert still_cancelled.status == "cancelled"


class TestRenewalReminders:
    """Reminder windows are one day wide."""

    @pytest.mark.asyncio
    async def test_trial_reminder_window(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        notifier: EmailNotifier,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        now = utcnow()
        inside = await make_user(email="inside@example.com")
        await make_subscription(
            inside.id, status="trial", trial_ends_at=now + timedelta(days=2, hours=12)
        )
        too_late = await make_user()
        await make_subscription(
            too_late.id, status="trial", trial_ends_at=now + timedelta(days=3, hours=1)
        )
        too_early = await make_user()
        await make_subscription(
            too_early.id, status="trial", trial_ends_at=now + timedelta(days=1)
        )

        summary = await monitor.send_renewal_reminders(test_db, now=now)

        assert summary["trial_reminders"] == 1
        assert summary["errors"] == []
        message = notifier._deliver.call_args.args[0]
        assert message["To"] == "inside@example.com"

    @pytest.mark.asyncio
    async def test_annual_reminder_window(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        notifier: EmailNotifier,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        now = utcnow()
        user = await make_user()
        await make_subscription(
            user.id, plan_type="annual", next_charge_at=now + timedelta(days=13, hours=20)
        )
        monthly = await make_user()
        await make_subscription(monthly.id, next_charge_at=now + timedelta(days=13, hours=20))

        summary = await monitor.send_renewal_reminders(test_db, now=now)

        assert summary["annual_reminders"] == 1
        assert "3,371.00" in notifier._deliver.call_args.args[0].get_body(("html",)).get_content()

    @pytest.mark.asyncio
    async def test_failed_delivery_is_reported(
        self,
        test_db: AsyncSession,
        monitor: SubscriptionMonitor,
        notifier: EmailNotifier,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        now = utcnow()
        user = await make_user()
        subscription = await make_subscription(
            user.id, status="trial", trial_ends_at=now + timedelta(days=2, hours=12)
        )
        notifier._deliver.side_effect = OSError("smtp down")

        summary = await monitor.send_renewal_reminders(test_db, now=now)

        assert summary["trial_reminders"] == 0
        assert summary["errors"] == [
            {"subscription_id": str(subscription.id), "kind": "trial", "error": "email not sent"}
        ]
