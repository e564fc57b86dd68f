"""
Recurring billing.

Charges stored card tokens for subscriptions whose ``next_charge_at`` has
passed. Each subscription is charged under its own lock and committed on
its own, so one failure never rolls back another renewal.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.locks import DistributedLock, LockError
from core.plans import get_plan, next_period_end
from core.subscriptions import SubscriptionService, SubscriptionStatus
from database.models import PaymentLog, PaymentToken, Subscription, utcnow
from integrations.cardcom_client import CardcomClient, CardcomError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Failed subscriptions are retried daily while their grace period runs
RETRY_DELAY = timedelta(days=1)

BILLABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.FAILED.value,
)


class RecurringBillingEngine:
    """Charges due renewals with stored Cardcom tokens."""

    def __init__(
        self,
        cardcom_client: CardcomClient,
        subscription_service: Optional[SubscriptionService] = None,
        lock: Optional[DistributedLock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cardcom = cardcom_client
        self.subscriptions = subscription_service or SubscriptionService(settings=self.settings)
        self.lock = lock or DistributedLock()

    async def _active_token(
        self, db: AsyncSession, subscription: Subscription
    ) -> Optional[PaymentToken]:
        if subscription.payment_token_id is not None:
            token = await db.get(PaymentToken, subscription.payment_token_id)
            if token is not None and token.is_active:
                return token
        result = await db.execute(
            select(PaymentToken)
            .where(
                PaymentToken.user_id == subscription.user_id,
                PaymentToken.is_active == True,  # noqa: E712
            )
            .order_by(PaymentToken.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def process_due(self, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Charge every due renewal.

        Returns:
            Dict[str, Any]: total, succeeded, failed, skipped and per-subscription details
        """
        now = now or utcnow()
        result = await db.execute(
            select(Subscription.id)
            .where(
                Subscription.next_charge_at <= now,
                Subscription.status.in_(BILLABLE_STATUSES),
                Subscription.plan_type != "vip",
            )
            .order_by(Subscription.next_charge_at)
        )
        subscription_ids: List[uuid.UUID] = list(result.scalars().all())

        summary: Dict[str, Any] = {
            "total": len(subscription_ids),
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "details": [],
        }
        logger.info("recurring_billing_started", due=len(subscription_ids))

        for subscription_id in subscription_ids:
            try:
                detail = await self.charge_subscription(db, subscription_id, now)
            except Exception as e:
                await db.rollback()
                logger.error(
                    "recurring_charge_error",
                    subscription_id=str(subscription_id),
                    error=str(e),
                )
                detail = {
                    "subscription_id": str(subscription_id),
                    "result": "failed",
                    "error": str(e),
                }
            summary[detail["result"]] += 1
            summary["details"].append(detail)

        logger.info(
            "recurring_billing_completed",
            total=summary["total"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
            skipped=summary["skipped"],
        )
        return summary

    async def charge_subscription(
        self, db: AsyncSession, subscription_id: uuid.UUID, now: datetime
    ) -> Dict[str, Any]:
        """
        Charge one subscription; ``result`` is succeeded, failed or skipped.

        The outcome is committed before the renewal lock is released.
        """
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            return {
                "subscription_id": str(subscription_id),
                "result": "skipped",
                "reason": "not_found",
            }

        plan = get_plan(subscription.plan_type)
        detail: Dict[str, Any] = {
            "subscription_id": str(subscription.id),
            "plan": plan.plan_type.value,
        }

        token = await self._active_token(db, subscription)
        if token is None:
            metrics.record_renewal_charge(plan.plan_type.value, "skipped")
            logger.warning("recurring_charge_no_token", subscription_id=str(subscription.id))
            return {**detail, "result": "skipped", "reason": "no_active_token"}

        try:
            async with self.lock.hold(f"renewal:lock:{subscription.id}"):
                # Another worker may have charged it while we waited
                await db.refresh(subscription)
                if (
                    subscription.next_charge_at is None
                    or subscription.next_charge_at > now
                    or subscription.status not in BILLABLE_STATUSES
                ):
                    metrics.record_renewal_charge(plan.plan_type.value, "skipped")
                    return {**detail, "result": "skipped", "reason": "not_due"}
                detail = await self._charge(db, subscription, token, now, detail)
                await db.commit()
                return detail
        except LockError:
            metrics.record_renewal_charge(plan.plan_type.value, "skipped")
            return {**detail, "result": "skipped", "reason": "locked"}

    async def _charge(
        self,
        db: AsyncSession,
        subscription: Subscription,
        token: PaymentToken,
        now: datetime,
        detail: Dict[str, Any],
    ) -> Dict[str, Any]:
        plan = get_plan(subscription.plan_type)
        card = subscription.payment_method or {}
        due_at = subscription.next_charge_at or now
        reference = f"renewal_{subscription.id.hex[:12]}_{due_at:%Y%m%d}"

        try:
            response = await self.cardcom.charge_token(
                token.token,
                plan.price_cents,
                card_validity_month=card.get("expiryMonth"),
                card_validity_year=card.get("expiryYear"),
                unique_reference=reference,
            )
        except CardcomError as e:
            return await self._record_failure(db, subscription, str(e), now, detail)

        transaction_id = response.get("InternalDealNumber")
        period_end = next_period_end(plan.plan_type.value, due_at)
        subscription.trial_ends_at = None
        subscription.current_period_starts_at = due_at
        subscription.current_period_ends_at = period_end
        subscription.next_charge_at = period_end
        subscription.fail_count = 0
        subscription.grace_period_ends_at = None
        subscription.payment_token_id = token.id
        method = dict(card)
        method.pop("payment_failed", None)
        method.pop("last_payment_failure", None)
        subscription.payment_method = method
        await self.subscriptions.transition(
            db,
            subscription,
            SubscriptionStatus.ACTIVE,
            "renewal_charged",
            data={"transaction_id": transaction_id, "amount_cents": plan.price_cents},
        )
        db.add(
            PaymentLog(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                transaction_id=transaction_id,
                amount_cents=plan.price_cents,
                plan_id=plan.plan_type.value,
                payment_status="completed",
                payment_data={"reference": reference, "type": "renewal"},
            )
        )
        await db.flush()

        metrics.record_renewal_charge(plan.plan_type.value, "succeeded", plan.price_cents)
        logger.info(
            "recurring_charge_succeeded",
            subscription_id=str(subscription.id),
            transaction_id=transaction_id,
            next_charge_at=period_end.isoformat() if period_end else None,
        )
        return {**detail, "result": "succeeded", "transaction_id": transaction_id}

    async def _record_failure(
        self,
        db: AsyncSession,
        subscription: Subscription,
        reason: str,
        now: datetime,
        detail: Dict[str, Any],
    ) -> Dict[str, Any]:
        plan = get_plan(subscription.plan_type)
        subscription.fail_count += 1
        db.add(
            PaymentLog(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                amount_cents=plan.price_cents,
                plan_id=plan.plan_type.value,
                payment_status="failed",
                payment_data={
                    "reason": reason,
                    "attempt": subscription.fail_count,
                    "type": "renewal",
                },
            )
        )

        if subscription.fail_count >= self.settings.max_charge_failures:
            subscription.next_charge_at = None
            await self.subscriptions.transition(
                db,
                subscription,
                SubscriptionStatus.SUSPENDED,
                "max_charge_failures",
                data={"fail_count": subscription.fail_count, "failure_reason": reason},
            )
            await db.flush()
            outcome = "suspended"
        else:
            subscription.next_charge_at = now + RETRY_DELAY
            await self.subscriptions.handle_payment_failure(
                db, subscription.id, reason, log_payment=False
            )
            outcome = "grace"

        metrics.record_renewal_charge(plan.plan_type.value, "failed")
        logger.warning(
            "recurring_charge_failed",
            subscription_id=str(subscription.id),
            fail_count=subscription.fail_count,
            outcome=outcome,
            reason=reason,
        )
        return {**detail, "result": "failed", "reason": reason, "outcome": outcome}
