"""Daily subscription housekeeping: expiry sweeps and renewal reminders."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.notifications import EmailNotifier
from core.plans import get_plan
from core.subscriptions import SubscriptionService, SubscriptionStatus
from database.models import Subscription, UserProfile, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionMonitor:
    """Moves lapsed subscriptions along and reminds users of upcoming charges."""

    def __init__(
        self,
        subscription_service: Optional[SubscriptionService] = None,
        notifier: Optional[EmailNotifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.notifier = notifier or EmailNotifier(self.settings)
        self.subscriptions = subscription_service or SubscriptionService(
            self.notifier, self.settings
        )

    async def _select(self, db: AsyncSession, *criteria: Any) -> List[Subscription]:
        result = await db.execute(select(Subscription).where(*criteria))
        return list(result.scalars().all())

    async def check_subscriptions(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Sweep subscriptions whose trial, grace or paid period has ended.

        A trial with a card on file becomes active and keeps its due
        ``next_charge_at``, so the recurring run charges it.
        """
        now = now or utcnow()
        counts = {
            "trials_activated": 0,
            "trials_expired": 0,
            "grace_expired": 0,
            "cancelled_expired": 0,
        }

        for subscription in await self._select(
            db,
            Subscription.status == SubscriptionStatus.TRIAL.value,
            Subscription.trial_ends_at <= now,
        ):
            if subscription.payment_method:
                period_start = subscription.trial_ends_at or now
                subscription.current_period_starts_at = period_start
                subscription.current_period_ends_at = period_start + timedelta(days=30)
                subscription.next_charge_at = subscription.next_charge_at or period_start
                await self.subscriptions.transition(
                    db, subscription, SubscriptionStatus.ACTIVE, "trial_ended"
                )
                counts["trials_activated"] += 1
            else:
                await self.subscriptions.transition(
                    db, subscription, SubscriptionStatus.EXPIRED, "trial_ended_without_payment"
                )
                counts["trials_expired"] += 1

        for subscription in await self._select(
            db,
            Subscription.status == SubscriptionStatus.FAILED.value,
            Subscription.grace_period_ends_at <= now,
        ):
            subscription.next_charge_at = None
            await self.subscriptions.transition(
                db, subscription, SubscriptionStatus.EXPIRED, "grace_period_ended"
            )
            counts["grace_expired"] += 1

        for subscription in await self._select(
            db,
            Subscription.status == SubscriptionStatus.CANCELLED.value,
            Subscription.current_period_ends_at <= now,
        ):
            await self.subscriptions.transition(
                db, subscription, SubscriptionStatus.EXPIRED, "cancelled_period_ended"
            )
            counts["cancelled_expired"] += 1

        await db.flush()
        logger.info("subscription_check_completed", **counts)
        return counts

    async def send_renewal_reminders(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Email users whose trial ends, or whose annual plan renews, soon.

        Each subscription falls into the one-day reminder window once.
        """
        now = now or utcnow()
        summary: Dict[str, Any] = {"trial_reminders": 0, "annual_reminders": 0, "errors": []}

        trial_to = now + timedelta(days=self.settings.trial_reminder_days)
        trials = await self._select(
            db,
            Subscription.status == SubscriptionStatus.TRIAL.value,
            Subscription.trial_ends_at > trial_to - timedelta(days=1),
            Subscription.trial_ends_at <= trial_to,
        )
        annual_to = now + timedelta(days=self.settings.annual_reminder_days)
        renewals = await self._select(
            db,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.plan_type == "annual",
            Subscription.next_charge_at > annual_to - timedelta(days=1),
            Subscription.next_charge_at <= annual_to,
        )

        for kind, subscriptions in (("trial", trials), ("annual", renewals)):
            for subscription in subscriptions:
                try:
                    profile = await db.get(UserProfile, subscription.user_id)
                    if profile is None:
                        raise LookupError("user profile not found")
                    if kind == "trial":
                        sent = await self.notifier.send_trial_reminder(
                            profile.email, subscription.trial_ends_at
                        )
                    else:
                        sent = await self.notifier.send_annual_reminder(
                            profile.email,
                            subscription.next_charge_at,
                            get_plan(subscription.plan_type).price_cents,
                        )
                    if not sent:
                        raise RuntimeError("email not sent")
                    summary[f"{kind}_reminders"] += 1
                except Exception as e:
                    logger.warning(
                        "renewal_reminder_failed",
                        subscription_id=str(subscription.id),
                        kind=kind,
                        error=str(e),
                    )
                    summary["errors"].append(
                        {"subscription_id": str(subscription.id), "kind": kind, "error": str(e)}
                    )

        logger.info(
            "renewal_reminders_sent",
            trial=summary["trial_reminders"],
            annual=summary["annual_reminders"],
            errors=len(summary["errors"]),
        )
        return summary
