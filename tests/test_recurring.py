"""
Recurring billing tests.
"""
from datetime import timedelta
from typing import Any, Callable

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.locks import DistributedLock
from core.plans import add_months
from core.recurring import RecurringBillingEngine
from core.subscriptions import SubscriptionService
from database.models import PaymentLog, utcnow
from integrations.cardcom_client import CHARGE_TOKEN_PATH, CardcomClient
from tests.helpers import CardcomStub, approx_now


@pytest.fixture
def billing_engine(
    test_settings: Settings,
    cardcom_client: CardcomClient,
    subscription_service: SubscriptionService,
    lock: DistributedLock,
) -> RecurringBillingEngine:
    return RecurringBillingEngine(cardcom_client, subscription_service, lock, test_settings)


@pytest.fixture
def due_subscription(
    make_user: Callable[..., Any],
    make_token: Callable[..., Any],
    make_subscription: Callable[..., Any],
) -> Callable[..., Any]:
    """Subscription with an active token whose charge fell due an hour ago."""

    async def _due(**fields: Any) -> Any:
        user = await make_user()
        token = await make_token(user.id, token=f"tok-{user.id.hex[:6]}")
        fields.setdefault("next_charge_at", utcnow() - timedelta(hours=1))
        return await make_subscription(user.id, payment_token_id=token.id, **fields)

    return _due


class TestRenewalCharges:
    """Successful renewals."""

    @pytest.mark.asyncio
    async def test_due_monthly_renewal_is_charged(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription()
        due_at = subscription.next_charge_at

        summary = await billing_engine.process_due(test_db)

        assert summary["total"] == 1
        assert summary["succeeded"] == 1
        assert subscription.status == "active"
        assert subscription.current_period_starts_at == due_at
        assert subscription.next_charge_at == add_months(due_at, 1)
        assert subscription.current_period_ends_at == subscription.next_charge_at

        form = cardcom_stub.form_bodies(CHARGE_TOKEN_PATH)[0]
        assert form["TokenToCharge.SumToBill"] == "371.00"
        assert form["TokenToCharge.UniqAsmachta"] == (
            f"renewal_{subscription.id.hex[:12]}_{due_at:%Y%m%d}"
        )
        assert form["TokenToCharge.CardValidityYear"] == "29"

        payment_log = (await test_db.execute(select(PaymentLog))).scalar_one()
        assert payment_log.payment_status == "completed"
        assert payment_log.amount_cents == 37100
        assert payment_log.transaction_id == summary["details"][0]["transaction_id"]

    @pytest.mark.asyncio
    async def test_trial_with_card_converts_on_charge(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        due_subscription: Callable[..., Any],
    ) -> None:
        past = utcnow() - timedelta(hours=1)
        subscription = await due_subscription(status="trial", trial_ends_at=past, next_charge_at=past)

        summary = await billing_engine.process_due(test_db)

        assert summary["succeeded"] == 1
        assert subscription.status == "active"
        assert subscription.trial_ends_at is None

    @pytest.mark.asyncio
    async def test_annual_renewal_charges_annual_price(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription(plan_type="annual")
        due_at = subscription.next_charge_at

        await billing_engine.process_due(test_db)

        assert cardcom_stub.form_bodies(CHARGE_TOKEN_PATH)[0]["TokenToCharge.SumToBill"] == "3371.00"
        assert subscription.next_charge_at == add_months(due_at, 12)

    @pytest.mark.asyncio
    async def test_not_due_and_lifetime_plans_are_ignored(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        await due_subscription(next_charge_at=utcnow() + timedelta(days=1))
        await due_subscription(plan_type="vip")
        await due_subscription(status="cancelled")
        await due_subscription(status="suspended")

        summary = await billing_engine.process_due(test_db)

        assert summary["total"] == 0
        assert cardcom_stub.requests_to(CHARGE_TOKEN_PATH) == []


class TestRenewalFailures:
    """Declines, retries and suspension."""

    @pytest.mark.asyncio
    async def test_first_decline_enters_grace(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription()
        cardcom_stub.charge_responses = ["ResponseCode=33&Description=Declined"]
        now = utcnow()

        summary = await billing_engine.process_due(test_db, now=now)

        assert summary["failed"] == 1
        assert summary["details"][0]["outcome"] == "grace"
        assert subscription.status == "failed"
        assert subscription.fail_count == 1
        assert subscription.next_charge_at == now + timedelta(days=1)
        assert approx_now(subscription.grace_period_ends_at, now + timedelta(days=7))
        assert subscription.payment_method["last_payment_failure"]["reason"] == "Declined"

        logs = (await test_db.execute(select(PaymentLog))).scalars().all()
        assert [(log.payment_status, log.amount_cents) for log in logs] == [("failed", 37100)]

    @pytest.mark.asyncio
    async def test_third_decline_suspends(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription(
            status="failed", fail_count=2, grace_period_ends_at=utcnow() + timedelta(days=5)
        )
        cardcom_stub.charge_responses = ["ResponseCode=33&Description=Declined"]

        summary = await billing_engine.process_due(test_db)

        assert summary["details"][0]["outcome"] == "suspended"
        assert subscription.status == "suspended"
        assert subscription.fail_count == 3
        assert subscription.next_charge_at is None

    @pytest.mark.asyncio
    async def test_successful_retry_clears_grace(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription(
            status="failed",
            fail_count=1,
            grace_period_ends_at=utcnow() + timedelta(days=6),
            payment_method={
                "lastFourDigits": "4580",
                "expiryMonth": "07",
                "expiryYear": "29",
                "payment_failed": True,
                "last_payment_failure": {"reason": "Declined"},
            },
        )

        await billing_engine.process_due(test_db)

        assert subscription.status == "active"
        assert subscription.fail_count == 0
        assert subscription.grace_period_ends_at is None
        assert "payment_failed" not in subscription.payment_method

    @pytest.mark.asyncio
    async def test_missing_token_is_skipped(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        await make_subscription(user.id, next_charge_at=utcnow() - timedelta(hours=1))

        summary = await billing_engine.process_due(test_db)

        assert summary["skipped"] == 1
        assert summary["details"][0]["reason"] == "no_active_token"

    @pytest.mark.asyncio
    async def test_held_lock_is_skipped(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        await due_subscription()
        billing_engine.lock.redlock.lock.return_value = False

        summary = await billing_engine.process_due(test_db)

        assert summary["skipped"] == 1
        assert summary["details"][0]["reason"] == "locked"
        assert cardcom_stub.requests_to(CHARGE_TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_gateway_outage_counts_as_failure(
        self,
        test_db: AsyncSession,
        billing_engine: RecurringBillingEngine,
        cardcom_stub: CardcomStub,
        due_subscription: Callable[..., Any],
    ) -> None:
        subscription = await due_subscription()
        cardcom_stub.fail_statuses = [503, 503, 503]

        summary = await billing_engine.process_due(test_db)

        assert summary["failed"] == 1
        assert subscription.status == "failed"
        assert len(cardcom_stub.requests_to(CHARGE_TOKEN_PATH)) == 3
