"""
Manual and scheduled repair of payments that did not settle.

Covers webhooks left unprocessed, subscriptions that a user paid for but
never received, and recovery emails after a failed checkout.
"""
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.notifications import EmailNotifier
from core.plans import next_period_end, plan_from_amount
from core.subscriptions import SubscriptionService, SubscriptionStatus
from database.models import (
    PaymentLog,
    PaymentRecoveryLog,
    PaymentToken,
    PaymentWebhook,
    Subscription,
    SubscriptionRepairLog,
    SystemLog,
    UserProfile,
    utcnow,
)
from integrations.cardcom_client import extract_owner_email, extract_token_info
from integrations.webhook_handler import CardcomWebhookHandler
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RecoveryError(Exception):
    """Raised when a repair request cannot be carried out."""

    pass


def is_user_reference(value: str) -> bool:
    """Whether a Cardcom ReturnValue holds a user id."""
    if not value or value.startswith("temp_"):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class WebhookRecoveryService:
    """Retries stuck webhooks and rebuilds subscriptions from payment records."""

    def __init__(
        self,
        webhook_handler: CardcomWebhookHandler,
        subscription_service: Optional[SubscriptionService] = None,
        notifier: Optional[EmailNotifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.handler = webhook_handler
        self.notifier = notifier or EmailNotifier(self.settings)
        self.subscriptions = subscription_service or webhook_handler.subscriptions

    async def _user_by_email(self, db: AsyncSession, email: str) -> Optional[UserProfile]:
        result = await db.execute(
            select(UserProfile).where(func.lower(UserProfile.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def process_unprocessed_webhooks(
        self,
        db: AsyncSession,
        max_retries: Optional[int] = None,
        age_hours: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Reprocess webhooks that are still unprocessed, oldest first.

        A payload whose ReturnValue is not a user id is pointed at the user
        owning the card email before it is reprocessed.
        """
        if max_retries is None:
            max_retries = self.settings.webhook_retry_max_attempts
        if age_hours is None:
            age_hours = self.settings.webhook_retry_age_hours
        if limit is None:
            limit = self.settings.webhook_retry_batch_limit
        cutoff = utcnow() - timedelta(hours=age_hours)

        result = await db.execute(
            select(PaymentWebhook.id)
            .where(
                PaymentWebhook.processed == False,  # noqa: E712
                PaymentWebhook.processing_attempts < max_retries,
                PaymentWebhook.created_at >= cutoff,
            )
            .order_by(PaymentWebhook.created_at)
            .limit(limit)
        )
        webhook_ids = list(result.scalars().all())

        results: List[Dict[str, Any]] = []
        for webhook_id in webhook_ids:
            # Reload: a failed attempt rolls back and expires loaded rows
            webhook = await db.get(PaymentWebhook, webhook_id)
            if webhook is None:
                continue
            webhook.processing_attempts += 1
            payload = dict(webhook.payload)
            return_value = str(payload.get("ReturnValue") or "")

            if not is_user_reference(return_value):
                email = extract_owner_email(payload)
                profile = await self._user_by_email(db, email) if email else None
                if profile is not None:
                    payload["OriginalReturnValue"] = return_value
                    payload["ReturnValue"] = str(profile.id)
                    webhook.payload = payload
                    logger.info(
                        "webhook_user_resolved_by_email",
                        webhook_id=str(webhook_id),
                        user_id=str(profile.id),
                    )
            await db.commit()

            outcome = await self.handler.process_stored(db, webhook)
            success = bool(outcome.get("success"))
            metrics.record_webhook_retry(success)
            results.append(
                {
                    "webhook_id": str(webhook_id),
                    "status": outcome.get("status"),
                    "success": success,
                    "error": outcome.get("error"),
                }
            )

        summary = {
            "processed": len(results),
            "succeeded": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
            "results": results,
        }
        db.add(
            SystemLog(
                level="info",
                function_name="retry_unprocessed_webhooks",
                message=(
                    f"Retried {summary['processed']} webhooks: "
                    f"{summary['succeeded']} succeeded, {summary['failed']} failed"
                ),
                details=summary,
            )
        )
        await db.commit()

        logger.info(
            "webhook_retry_completed",
            processed=summary["processed"],
            succeeded=summary["succeeded"],
            failed=summary["failed"],
        )
        return summary

    async def _resolve_user(
        self, db: AsyncSession, email: Optional[str], user_id: Optional[uuid.UUID]
    ) -> UserProfile:
        if user_id is not None:
            profile = await db.get(UserProfile, user_id)
        elif email:
            profile = await self._user_by_email(db, email)
        else:
            raise RecoveryError("Either email or user_id is required")
        if profile is None:
            raise RecoveryError("User not found")
        return profile

    async def _latest_token(self, db: AsyncSession, user_id: uuid.UUID) -> Optional[PaymentToken]:
        result = await db.execute(
            select(PaymentToken)
            .where(PaymentToken.user_id == user_id)
            .order_by(PaymentToken.is_active.desc(), PaymentToken.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _subscription_ok(subscription: Optional[Subscription], now: datetime) -> bool:
        if subscription is None:
            return False
        if subscription.status == SubscriptionStatus.ACTIVE.value:
            end = subscription.current_period_ends_at
            return end is None or end > now
        if subscription.status == SubscriptionStatus.TRIAL.value:
            return subscription.trial_ends_at is not None and subscription.trial_ends_at > now
        return False

    async def repair_subscription(
        self,
        db: AsyncSession,
        email: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        low_profile_id: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Bring a paying user's token and subscription back in line.

        Steps: check the card token, check the subscription, and if either
        is unusable rebuild both from the payment log of the LowProfile.
        Every attempt is written to ``subscription_repair_logs``.

        Raises:
            RecoveryError: If the user cannot be resolved
        """
        profile = await self._resolve_user(db, email, user_id)
        now = utcnow()
        actions: List[str] = []
        repair_log = SubscriptionRepairLog(
            user_id=profile.id,
            email=profile.email,
            low_profile_id=low_profile_id,
            force_refresh=force_refresh,
            result="started",
            actions=[],
        )
        db.add(repair_log)

        token = await self._latest_token(db, profile.id)
        token_valid = False
        if token is not None:
            unexpired = token.token_expiry is None or token.token_expiry >= date.today()
            if not token.is_active and force_refresh and unexpired:
                token.is_active = True
                actions.append("token_reactivated")
            token_valid = token.is_active and unexpired
            actions.append("token_valid" if token_valid else "token_invalid")
        else:
            actions.append("token_missing")

        subscription = await self.subscriptions.get_for_user(db, profile.id)
        result = "failure"

        if self._subscription_ok(subscription, now) and not force_refresh:
            actions.append("subscription_ok")
            result = "success"
        elif subscription is not None and token_valid:
            self._renew_period(subscription, now)
            subscription.payment_token_id = token.id
            await self.subscriptions.transition(
                db, subscription, SubscriptionStatus.ACTIVE, "manual_repair"
            )
            actions.append("subscription_reactivated")
            result = "success"
        else:
            result = await self._rebuild_from_payment_log(
                db, profile.id, low_profile_id, token if token_valid else None, actions
            )

        repair_log.result = result
        repair_log.actions = list(actions)
        repair_log.details = {
            "subscription_status": subscription.status if subscription else None,
        }
        await db.flush()

        logger.info(
            "subscription_repair_completed",
            user_id=str(profile.id),
            result=result,
            actions=actions,
        )
        subscription = await self.subscriptions.get_for_user(db, profile.id)
        return {
            "success": result != "failure",
            "result": result,
            "actions": actions,
            "user_id": profile.id,
            "subscription_status": subscription.status if subscription else None,
        }

    def _renew_period(self, subscription: Subscription, now: datetime) -> None:
        period_end = next_period_end(subscription.plan_type, now)
        subscription.trial_ends_at = None
        subscription.current_period_starts_at = now
        subscription.current_period_ends_at = period_end
        subscription.next_charge_at = period_end
        subscription.fail_count = 0
        subscription.grace_period_ends_at = None
        subscription.cancelled_at = None

    async def _rebuild_from_payment_log(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        low_profile_id: Optional[str],
        token: Optional[PaymentToken],
        actions: List[str],
    ) -> str:
        query = select(PaymentLog).where(
            PaymentLog.user_id == user_id, PaymentLog.payment_status == "completed"
        )
        if low_profile_id:
            query = query.where(PaymentLog.low_profile_id == low_profile_id)
        result = await db.execute(query.order_by(PaymentLog.created_at.desc()).limit(1))
        payment_log = result.scalar_one_or_none()

        if payment_log is None:
            actions.append("payment_log_missing")
            return "token_only" if token is not None else "failure"

        if token is None and payment_log.low_profile_id:
            token = await self._token_from_webhook(db, user_id, payment_log, actions)

        card = payment_log.payment_data or {}
        subscription = await self.subscriptions.activate_from_payment(
            db,
            user_id=user_id,
            plan_id=payment_log.plan_id or plan_from_amount(payment_log.amount_cents / 100).value,
            amount_cents=payment_log.amount_cents,
            card_info={
                key: card[key]
                for key in ("lastFourDigits", "expiryMonth", "expiryYear")
                if card.get(key)
            },
            token_id=token.id if token else None,
            low_profile_id=payment_log.low_profile_id,
        )
        now = utcnow()
        if self._subscription_ok(subscription, now):
            actions.append("subscription_rebuilt")
            return "success"

        # A token-only trial log leaves a lapsed trial or period untouched
        if token is not None:
            self._renew_period(subscription, now)
            subscription.payment_token_id = token.id
            await self.subscriptions.transition(
                db, subscription, SubscriptionStatus.ACTIVE, "manual_repair"
            )
            actions.append("subscription_reactivated")
            return "success"

        actions.append("subscription_not_restored")
        return "failure"

    async def _token_from_webhook(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        payment_log: PaymentLog,
        actions: List[str],
    ) -> Optional[PaymentToken]:
        result = await db.execute(
            select(PaymentWebhook)
            .where(PaymentWebhook.low_profile_id == payment_log.low_profile_id)
            .order_by(PaymentWebhook.created_at.desc())
        )
        for webhook in result.scalars():
            token_info = extract_token_info(webhook.payload)
            if token_info is None:
                continue
            token = PaymentToken(
                id=uuid.uuid4(),
                user_id=user_id,
                token=token_info["token"],
                token_expiry=date.today()
                + timedelta(days=365 * self.settings.token_validity_years),
                card_last_four=(payment_log.payment_data or {}).get("lastFourDigits"),
                low_profile_id=payment_log.low_profile_id,
                is_active=True,
            )
            db.add(token)
            actions.append("token_rebuilt")
            return token
        return None

    async def send_recovery_email(
        self,
        db: AsyncSession,
        email: str,
        error_info: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        recovery_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Email a link to finish an interrupted checkout.

        Raises:
            RecoveryError: If no email address is given
        """
        if not email:
            raise RecoveryError("Email is required")

        url = recovery_url or (
            f"{self.settings.frontend_url.rstrip('/')}/subscription?recover={session_id or ''}"
        )
        expires_at = utcnow() + timedelta(hours=self.settings.recovery_link_ttl_hours)
        sent = await self.notifier.send_payment_recovery(email, url)

        db.add(
            PaymentRecoveryLog(
                email=email,
                session_id=session_id,
                error_info=error_info,
                recovery_url=url,
                expires_at=expires_at,
                sent=sent,
            )
        )
        await db.flush()

        logger.info("payment_recovery_email", email=email, session_id=session_id, sent=sent)
        return {"sent": sent, "recovery_url": url, "expires_at": expires_at}
