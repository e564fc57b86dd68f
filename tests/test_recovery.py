"""
Recovery tests: webhook retries, subscription repair and recovery emails.
"""
import uuid
from datetime import timedelta
from typing import Any, Callable

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from core.notifications import EmailNotifier
from core.recovery import RecoveryError, WebhookRecoveryService, is_user_reference
from core.subscriptions import SubscriptionService
from database.models import (
    PaymentLog,
    PaymentRecoveryLog,
    PaymentToken,
    PaymentWebhook,
    Subscription,
    SubscriptionRepairLog,
    SystemLog,
    utcnow,
)
from integrations.webhook_handler import CardcomWebhookHandler
from tests.helpers import cardcom_result


@pytest.fixture
def recovery(
    test_settings: Settings,
    webhook_handler: CardcomWebhookHandler,
    subscription_service: SubscriptionService,
    notifier: EmailNotifier,
) -> WebhookRecoveryService:
    return WebhookRecoveryService(webhook_handler, subscription_service, notifier, test_settings)


@pytest.fixture
def stored_webhook(test_db: AsyncSession) -> Callable[..., Any]:
    async def _stored(payload: dict, **fields: Any) -> PaymentWebhook:
        webhook = PaymentWebhook(
            id=uuid.uuid4(),
            low_profile_id=payload.get("LowProfileId"),
            payload=payload,
            processed=fields.pop("processed", False),
            processing_attempts=fields.pop("processing_attempts", 0),
            **fields,
        )
        test_db.add(webhook)
        await test_db.commit()
        return webhook

    return _stored


class TestReturnValues:
    @pytest.mark.unit
    def test_is_user_reference(self) -> None:
        assert is_user_reference(str(uuid.uuid4()))
        assert not is_user_reference("anon_123")
        assert not is_user_reference("temp_reg_abc")
        assert not is_user_reference("")


class TestWebhookRetry:
    """Scheduled reprocessing of stuck webhooks."""

    @pytest.mark.asyncio
    async def test_unprocessed_webhook_is_settled(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user()
        webhook = await stored_webhook(cardcom_result("lp-stuck", str(user.id)))

        summary = await recovery.process_unprocessed_webhooks(test_db)

        assert summary["processed"] == 1
        assert summary["succeeded"] == 1
        stored = await test_db.get(PaymentWebhook, webhook.id)
        assert stored.processed is True
        assert stored.processing_attempts == 1
        system_log = (await test_db.execute(select(SystemLog))).scalar_one()
        assert system_log.function_name == "retry_unprocessed_webhooks"
        assert system_log.details["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_anonymous_payment_is_matched_by_card_email(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user(email="trader@example.com")
        webhook = await stored_webhook(
            cardcom_result("lp-anon", "anon_77", email="Trader@Example.com")
        )

        summary = await recovery.process_unprocessed_webhooks(test_db)

        assert summary["succeeded"] == 1
        stored = await test_db.get(PaymentWebhook, webhook.id)
        assert stored.payload["ReturnValue"] == str(user.id)
        assert stored.payload["OriginalReturnValue"] == "anon_77"
        payment_log = (await test_db.execute(select(PaymentLog))).scalar_one()
        assert payment_log.user_id == user.id

    @pytest.mark.asyncio
    async def test_failed_retry_counts_attempt(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        stored_webhook: Callable[..., Any],
    ) -> None:
        webhook = await stored_webhook(cardcom_result("lp-orphan", "anon_nobody", email="x@y.z"))

        summary = await recovery.process_unprocessed_webhooks(test_db)

        assert summary["failed"] == 1
        assert summary["results"][0]["status"] == "error"
        stored = await test_db.get(PaymentWebhook, webhook.id)
        assert stored.processed is False
        assert stored.processing_attempts == 1

    @pytest.mark.asyncio
    async def test_exhausted_old_and_processed_webhooks_are_skipped(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user()
        await stored_webhook(cardcom_result("lp-a", str(user.id)), processing_attempts=3)
        await stored_webhook(
            cardcom_result("lp-b", str(user.id)), created_at=utcnow() - timedelta(hours=49)
        )
        await stored_webhook(cardcom_result("lp-c", str(user.id)), processed=True)

        summary = await recovery.process_unprocessed_webhooks(test_db)

        assert summary["processed"] == 0
        assert (await test_db.execute(select(PaymentLog))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_explicit_zero_attempts_processes_nothing(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user()
        await stored_webhook(cardcom_result("lp-zero", str(user.id)))

        summary = await recovery.process_unprocessed_webhooks(test_db, max_retries=0)
        limited = await recovery.process_unprocessed_webhooks(test_db, limit=0)

        assert summary["processed"] == 0
        assert limited["processed"] == 0
        assert (await test_db.execute(select(PaymentLog))).scalars().all() == []


class TestRepairSubscription:
    """Manual subscription repair."""

    @pytest.mark.asyncio
    async def test_healthy_subscription_is_left_alone(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_token: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        await make_token(user.id)
        await make_subscription(user.id)

        result = await recovery.repair_subscription(test_db, email=user.email)

        assert result["result"] == "success"
        assert result["actions"] == ["token_valid", "subscription_ok"]
        repair_log = (await test_db.execute(select(SubscriptionRepairLog))).scalar_one()
        assert repair_log.result == "success"
        assert repair_log.actions == result["actions"]

    @pytest.mark.asyncio
    async def test_expired_subscription_with_valid_token_is_reactivated(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_token: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        token = await make_token(user.id)
        subscription = await make_subscription(
            user.id, status="expired", current_period_ends_at=utcnow() - timedelta(days=3)
        )

        result = await recovery.repair_subscription(test_db, user_id=user.id)

        assert "subscription_reactivated" in result["actions"]
        assert result["subscription_status"] == "active"
        assert subscription.payment_token_id == token.id
        assert subscription.current_period_ends_at > utcnow()

    @pytest.mark.asyncio
    async def test_rebuilds_from_payment_log_and_webhook(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user()
        test_db.add(
            PaymentLog(
                user_id=user.id,
                low_profile_id="lp-paid",
                transaction_id="4242",
                amount_cents=337100,
                plan_id="annual",
                payment_status="completed",
                payment_data={"lastFourDigits": "9999", "expiryMonth": "01", "expiryYear": "31"},
            )
        )
        await test_db.commit()
        await stored_webhook(
            cardcom_result("lp-paid", str(user.id), amount=3371, token="tok-rebuilt"),
            processed=True,
        )

        result = await recovery.repair_subscription(
            test_db, email=user.email.upper(), low_profile_id="lp-paid"
        )

        assert result["result"] == "success"
        assert result["actions"] == ["token_missing", "token_rebuilt", "subscription_rebuilt"]
        subscription = (await test_db.execute(select(Subscription))).scalar_one()
        assert subscription.status == "active"
        assert subscription.plan_type == "annual"
        assert subscription.payment_method["lastFourDigits"] == "9999"
        token = (await test_db.execute(select(PaymentToken))).scalar_one()
        assert token.token == "tok-rebuilt"
        assert subscription.payment_token_id == token.id

    @pytest.mark.asyncio
    async def test_token_without_payment_record(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_token: Callable[..., Any],
    ) -> None:
        user = await make_user()
        await make_token(user.id)

        result = await recovery.repair_subscription(test_db, user_id=user.id)

        assert result["result"] == "token_only"
        assert result["success"] is True
        assert result["actions"] == ["token_valid", "payment_log_missing"]

    @pytest.mark.asyncio
    async def test_nothing_to_repair_from(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
    ) -> None:
        user = await make_user()

        result = await recovery.repair_subscription(test_db, user_id=user.id)

        assert result["result"] == "failure"
        assert result["success"] is False
        assert result["actions"] == ["token_missing", "payment_log_missing"]

    @pytest.mark.asyncio
    async def test_lapsed_trial_without_token_is_not_restored(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        ended = utcnow() - timedelta(days=2)
        subscription = await make_subscription(
            user.id, status="trial", trial_ends_at=ended, current_period_ends_at=ended
        )
        test_db.add(
            PaymentLog(
                user_id=user.id,
                low_profile_id="lp-trial",
                amount_cents=0,
                plan_id="monthly",
                payment_status="completed",
            )
        )
        await test_db.commit()

        result = await recovery.repair_subscription(test_db, user_id=user.id)

        assert result["result"] == "failure"
        assert result["success"] is False
        assert result["actions"] == ["token_missing", "subscription_not_restored"]
        assert subscription.status == "trial"
        assert subscription.trial_ends_at == ended
        repair_log = (await test_db.execute(select(SubscriptionRepairLog))).scalar_one()
        assert repair_log.result == "failure"

    @pytest.mark.asyncio
    async def test_lapsed_trial_with_token_from_webhook_is_reactivated(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_subscription: Callable[..., Any],
        stored_webhook: Callable[..., Any],
    ) -> None:
        user = await make_user()
        ended = utcnow() - timedelta(days=2)
        subscription = await make_subscription(
            user.id, status="trial", trial_ends_at=ended, current_period_ends_at=ended
        )
        test_db.add(
            PaymentLog(
                user_id=user.id,
                low_profile_id="lp-trial",
                amount_cents=0,
                plan_id="monthly",
                payment_status="completed",
            )
        )
        await test_db.commit()
        await stored_webhook(
            cardcom_result("lp-trial", str(user.id), amount=0, token="tok-trial"), processed=True
        )

        result = await recovery.repair_subscription(test_db, user_id=user.id)

        assert result["result"] == "success"
        assert result["actions"] == ["token_missing", "token_rebuilt", "subscription_reactivated"]
        assert result["subscription_status"] == "active"
        assert subscription.trial_ends_at is None
        assert subscription.current_period_ends_at > utcnow()
        token = (await test_db.execute(select(PaymentToken))).scalar_one()
        assert subscription.payment_token_id == token.id

    @pytest.mark.asyncio
    async def test_force_refresh_reactivates_token(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        make_user: Callable[..., Any],
        make_token: Callable[..., Any],
        make_subscription: Callable[..., Any],
    ) -> None:
        user = await make_user()
        token = await make_token(user.id, is_active=False)
        await make_subscription(user.id)

        result = await recovery.repair_subscription(test_db, user_id=user.id, force_refresh=True)

        assert result["actions"][:2] == ["token_reactivated", "token_valid"]
        assert "subscription_reactivated" in result["actions"]
        assert token.is_active is True

    @pytest.mark.asyncio
    async def test_unknown_user(
        self, test_db: AsyncSession, recovery: WebhookRecoveryService
    ) -> None:
        with pytest.raises(RecoveryError):
            await recovery.repair_subscription(test_db, email="nobody@example.com")
        with pytest.raises(RecoveryError):
            await recovery.repair_subscription(test_db)


class TestRecoveryEmail:
    @pytest.mark.asyncio
    async def test_sends_link_and_logs(
        self,
        test_db: AsyncSession,
        recovery: WebhookRecoveryService,
        notifier: EmailNotifier,
        test_settings: Settings,
    ) -> None:
        result = await recovery.send_recovery_email(
            test_db, "buyer@example.com", error_info={"code": 33}, session_id="sess-1"
        )

        expected_url = f"{test_settings.frontend_url.rstrip('/')}/subscription?recover=sess-1"
        assert result["sent"] is True
        assert result["recovery_url"] == expected_url
        row = (await test_db.execute(select(PaymentRecoveryLog))).scalar_one()
        assert row.sent is True
        assert row.error_info == {"code": 33}
        assert notifier._deliver.call_args.args[0]["To"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_requires_email(
        self, test_db: AsyncSession, recovery: WebhookRecoveryService
    ) -> None:
        with pytest.raises(RecoveryError):
            await recovery.send_recovery_email(test_db, "")
