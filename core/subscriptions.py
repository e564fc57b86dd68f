"""
Subscription lifecycle.

Every status change goes through ``SubscriptionService.transition``, which
validates it against ``ALLOWED_TRANSITIONS`` and writes an audit row plus an
outbox event in the caller's transaction.
"""
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.notifications import EmailNotifier
from core.outbox import record_event
from core.plans import PlanType, get_plan, next_period_end
from database.models import (
    PaymentLog,
    PaymentToken,
    Subscription,
    SubscriptionCancellation,
    SubscriptionEvent,
    UserProfile,
    utcnow,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Sign-ups charging at most this much are token-only trial sign-ups
TRIAL_AMOUNT_CEILING_CENTS = 100


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    FAILED = "failed"  # grace period after a failed charge
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    S.PENDING: frozenset({S.TRIAL, S.ACTIVE}),
    S.TRIAL: frozenset({S.ACTIVE, S.FAILED, S.EXPIRED, S.CANCELLED, S.SUSPENDED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.FAILED, S.SUSPENDED, S.CANCELLED, S.EXPIRED}),
    S.FAILED: frozenset({S.ACTIVE, S.EXPIRED, S.SUSPENDED, S.CANCELLED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.CANCELLED: frozenset({S.ACTIVE, S.TRIAL, S.EXPIRED}),
    S.EXPIRED: frozenset({S.ACTIVE, S.TRIAL}),
}


class SubscriptionError(Exception):
    """Base exception for subscription operations."""

    pass


class InvalidTransitionError(SubscriptionError):
    """Raised when a status change is not allowed."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move subscription from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class SubscriptionNotFoundError(SubscriptionError):
    pass


class SubscriptionOwnershipError(SubscriptionError):
    pass


def can_transition(from_status: str, to_status: str) -> bool:
    try:
        return S(to_status) in ALLOWED_TRANSITIONS[S(from_status)]
    except ValueError:
        return False


def has_access(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """
    Whether the subscription currently grants access.

    Trial, grace (failed) and cancelled subscriptions keep access until
    their respective end dates.
    """
    if subscription is None:
        return False
    now = now or utcnow()
    status = subscription.status

    if status == S.TRIAL:
        return subscription.trial_ends_at is not None and now < subscription.trial_ends_at
    if status == S.ACTIVE:
        return (
            subscription.current_period_ends_at is None
            or now < subscription.current_period_ends_at
        )
    if status == S.FAILED:
        return (
            subscription.grace_period_ends_at is not None
            and now < subscription.grace_period_ends_at
        )
    if status == S.CANCELLED:
        return (
            subscription.current_period_ends_at is not None
            and now < subscription.current_period_ends_at
        )
    return False


class SubscriptionService:
    """Creates, transitions, cancels and reactivates subscriptions."""

    def __init__(
        self,
        notifier: Optional[EmailNotifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.notifier = notifier or EmailNotifier(self.settings)

    async def transition(
        self,
        db: AsyncSession,
        subscription: Subscription,
        new_status: SubscriptionStatus,
        reason: str,
        correlation_id: Optional[uuid.UUID] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Change the status and record the change.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        old_status = subscription.status
        if not can_transition(old_status, new_status.value):
            raise InvalidTransitionError(old_status, new_status.value)

        subscription.status = new_status.value
        event_data = {
            "from_status": old_status,
            "to_status": new_status.value,
            "reason": reason,
            "plan_type": subscription.plan_type,
            **(data or {}),
        }
        db.add(
            SubscriptionEvent(
                subscription_id=subscription.id,
                event_type=f"subscription.{new_status.value}",
                event_data=event_data,
                correlation_id=correlation_id or uuid.uuid4(),
            )
        )
        record_event(
            db,
            aggregate_id=subscription.id,
            aggregate_type="subscription",
            event_type=f"subscription.{new_status.value}",
            payload={"user_id": str(subscription.user_id), **event_data},
        )
        metrics.record_subscription_transition(old_status, new_status.value)

        logger.info(
            "subscription_transitioned",
            subscription_id=str(subscription.id),
            from_status=old_status,
            to_status=new_status.value,
            reason=reason,
        )

    async def get_for_user(self, db: AsyncSession, user_id: uuid.UUID) -> Optional[Subscription]:
        result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return result.scalar_one_or_none()

    async def _get_owned(
        self, db: AsyncSession, subscription_id: uuid.UUID, user_id: uuid.UUID
    ) -> Subscription:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if subscription.user_id != user_id:
            raise SubscriptionOwnershipError("Subscription belongs to another user")
        return subscription

    async def _user_email(self, db: AsyncSession, user_id: uuid.UUID) -> Optional[str]:
        profile = await db.get(UserProfile, user_id)
        return profile.email if profile else None

    async def activate_from_payment(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        plan_id: str,
        amount_cents: int,
        card_info: Dict[str, str],
        token_id: Optional[uuid.UUID] = None,
        low_profile_id: Optional[str] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> Subscription:
        """
        Create or update the user's subscription after a successful payment.

        A monthly sign-up that charged nothing starts the trial. Users who
        already consumed a trial (failed or suspended) become active with the
        first charge due immediately; an active user only gets the new card.
        """
        plan = get_plan(plan_id)
        now = utcnow()
        subscription = await self.get_for_user(db, user_id)
        if subscription is None:
            subscription = Subscription(
                id=uuid.uuid4(),
                user_id=user_id,
                plan_type=plan.plan_type.value,
                status=S.PENDING.value,
                fail_count=0,
            )
            db.add(subscription)

        subscription.payment_method = {
            "lastFourDigits": card_info.get("lastFourDigits", "0000"),
            "expiryMonth": card_info.get("expiryMonth", "12"),
            "expiryYear": card_info.get("expiryYear", "25"),
            "low_profile_id": low_profile_id,
        }
        if token_id is not None:
            subscription.payment_token_id = token_id
        subscription.fail_count = 0
        subscription.grace_period_ends_at = None
        subscription.cancelled_at = None
        subscription.contract_signed = True
        subscription.contract_signed_at = subscription.contract_signed_at or now

        wants_trial = (
            plan.plan_type == PlanType.MONTHLY
            and amount_cents <= TRIAL_AMOUNT_CEILING_CENTS
        )
        data = {"amount_cents": amount_cents, "low_profile_id": low_profile_id}

        if wants_trial and subscription.status in (S.ACTIVE.value, S.TRIAL.value):
            logger.info(
                "subscription_payment_method_updated",
                subscription_id=str(subscription.id),
                status=subscription.status,
            )
            return subscription

        subscription.plan_type = plan.plan_type.value
        if wants_trial and can_transition(subscription.status, S.TRIAL.value):
            trial_end = now + timedelta(days=self.settings.trial_days)
            subscription.trial_ends_at = trial_end
            subscription.current_period_starts_at = now
            subscription.current_period_ends_at = trial_end
            subscription.next_charge_at = trial_end
            await self.transition(
                db, subscription, S.TRIAL, "trial_started", correlation_id, data
            )
        elif wants_trial:
            subscription.trial_ends_at = None
            subscription.current_period_starts_at = now
            subscription.current_period_ends_at = next_period_end(plan.plan_type.value, now)
            subscription.next_charge_at = now
            await self.transition(
                db, subscription, S.ACTIVE, "card_replaced", correlation_id, data
            )
        else:
            period_end = next_period_end(plan.plan_type.value, now)
            subscription.trial_ends_at = None
            subscription.current_period_starts_at = now
            subscription.current_period_ends_at = period_end
            subscription.next_charge_at = period_end
            await self.transition(
                db, subscription, S.ACTIVE, "payment_completed", correlation_id, data
            )

        await db.flush()
        return subscription

    async def cancel(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: Optional[str] = None,
        feedback: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Cancel a subscription; access continues until the period ends.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            SubscriptionOwnershipError: Subscription belongs to another user
        """
        subscription = await self._get_owned(db, subscription_id, user_id)
        if subscription.status == S.CANCELLED.value:
            return {"success": True, "already_cancelled": True}

        now = utcnow()
        await self.transition(
            db, subscription, S.CANCELLED, "user_cancelled", data={"cancel_reason": reason}
        )
        subscription.cancelled_at = now
        subscription.next_charge_at = None

        if reason:
            db.add(
                SubscriptionCancellation(
                    subscription_id=subscription.id,
                    user_id=user_id,
                    reason=reason,
                    feedback=feedback,
                    cancelled_at=now,
                )
            )
        if subscription.payment_token_id is not None:
            await db.execute(
                update(PaymentToken)
                .where(PaymentToken.id == subscription.payment_token_id)
                .values(is_active=False)
            )
        await db.flush()

        email = await self._user_email(db, user_id)
        email_sent = False
        if email:
            email_sent = await self.notifier.send_cancellation(
                email, subscription.current_period_ends_at
            )

        return {
            "success": True,
            "already_cancelled": False,
            "access_until": subscription.current_period_ends_at,
            "email_sent": email_sent,
        }

    async def reactivate(
        self, db: AsyncSession, subscription_id: uuid.UUID, user_id: uuid.UUID
    ) -> Dict[str, Any]:
        """
        Undo a cancellation while the paid period is still running.

        Raises:
            SubscriptionError: If the subscription is not cancelled or the period ended
        """
        subscription = await self._get_owned(db, subscription_id, user_id)
        if subscription.status != S.CANCELLED.value:
            raise SubscriptionError("Only cancelled subscriptions can be reactivated")

        now = utcnow()
        period_end = subscription.current_period_ends_at
        if period_end is not None and period_end <= now:
            raise SubscriptionError("Subscription period has ended")

        await self.transition(db, subscription, S.ACTIVE, "user_reactivated")
        subscription.cancelled_at = None
        if get_plan(subscription.plan_type).recurring:
            subscription.next_charge_at = period_end

        await db.execute(
            delete(SubscriptionCancellation).where(
                SubscriptionCancellation.subscription_id == subscription.id
            )
        )
        await db.execute(
            update(PaymentToken)
            .where(PaymentToken.user_id == user_id, PaymentToken.is_active == False)  # noqa: E712
            .values(is_active=True)
        )
        await db.flush()

        email = await self._user_email(db, user_id)
        email_sent = False
        if email:
            email_sent = await self.notifier.send_reactivation(
                email, subscription.plan_type, period_end
            )

        return {"success": True, "access_until": period_end, "email_sent": email_sent}

    async def handle_payment_failure(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        reason: str,
        log_payment: bool = True,
    ) -> Subscription:
        """
        Put a subscription into its grace period after a failed charge.

        A subscription already in grace keeps its original grace end.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
        """
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        now = utcnow()
        grace_end = subscription.grace_period_ends_at
        if subscription.status != S.FAILED.value or grace_end is None:
            grace_end = now + timedelta(days=self.settings.grace_period_days)

        subscription.payment_method = {
            **(subscription.payment_method or {}),
            "payment_failed": True,
            "last_payment_failure": {
                "date": now.isoformat(),
                "reason": reason,
                "grace_period_end": grace_end.isoformat(),
            },
        }
        subscription.grace_period_ends_at = grace_end
        if subscription.status != S.FAILED.value:
            await self.transition(
                db, subscription, S.FAILED, "payment_failed", data={"failure_reason": reason}
            )

        if log_payment:
            db.add(
                PaymentLog(
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    amount_cents=0,
                    plan_id=subscription.plan_type,
                    payment_status="failed",
                    payment_data={"reason": reason},
                )
            )
        await db.flush()

        email = await self._user_email(db, subscription.user_id)
        if email:
            await self.notifier.send_payment_failed(email, reason, grace_end)

        logger.warning(
            "subscription_payment_failed",
            subscription_id=str(subscription.id),
            reason=reason,
            grace_period_end=grace_end.isoformat(),
        )
        return subscription
