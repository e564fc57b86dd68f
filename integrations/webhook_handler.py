"""
Cardcom payment-result webhook handling.

Implements:
- Raw payload storage before any processing
- Deduplication by LowProfileId (Redis first, payment log as fallback)
- Per-LowProfile distributed lock
- Settlement of user and pending-registration payments
- Realtime notification of waiting clients
"""
import json
import time
import uuid
from datetime import date, timedelta
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.locks import DistributedLock, LockError
from core.outbox import record_event
from core.payment_sessions import REGISTRATION_PREFIX
from core.plans import plan_from_amount
from core.subscriptions import SubscriptionService
from database.models import (
    PaymentLog,
    PaymentSession,
    PaymentToken,
    PaymentWebhook,
    SystemLog,
    TempRegistration,
    UserProfile,
    utcnow,
)
from integrations.cardcom_client import (
    extract_amount_cents,
    extract_card_info,
    extract_token_info,
)
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookError(Exception):
    """Raised when a webhook payload cannot be settled."""

    pass


def session_channel(session_id: Any) -> str:
    """Redis pub/sub channel a waiting client listens on."""
    return f"payment_session:{session_id}"


class CardcomWebhookHandler:
    """
    Settles Cardcom payment results.

    The same path serves the gateway callback, direct verification with
    GetLpResult, the retry worker and reconciliation repairs.
    """

    def __init__(
        self,
        subscription_service: Optional[SubscriptionService] = None,
        redis_client: Optional[aioredis.Redis] = None,
        lock: Optional[DistributedLock] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            subscription_service: Service used to activate subscriptions
            redis_client: Optional Redis client for dedup and realtime
            lock: Optional distributed lock
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.subscriptions = subscription_service or SubscriptionService(settings=self.settings)
        self.redis_client = redis_client
        self.lock = lock or DistributedLock()

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def find_processed(self, db: AsyncSession, low_profile_id: str) -> Optional[str]:
        """
        Transaction id of an already settled LowProfile, or None.

        Redis answers first; if it is unavailable the payment log decides.
        """
        try:
            redis = await self._ensure_redis()
            cached = await redis.get(f"webhook:processed:{low_profile_id}")
            if cached is not None:
                return cached
        except Exception as e:
            logger.warning("webhook_dedup_cache_error", low_profile_id=low_profile_id, error=str(e))

        result = await db.execute(
            select(PaymentLog).where(
                PaymentLog.low_profile_id == low_profile_id,
                PaymentLog.payment_status == "completed",
            )
        )
        payment_log = result.scalar_one_or_none()
        if payment_log is not None:
            return payment_log.transaction_id or ""
        return None

    async def _remember_processed(self, low_profile_id: str, transaction_id: str) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.set(
                f"webhook:processed:{low_profile_id}",
                transaction_id,
                ex=self.settings.webhook_dedup_ttl,
            )
        except Exception as e:
            logger.warning("webhook_dedup_cache_write_failed", error=str(e))

    async def publish_realtime(self, session_id: Any, message: Dict[str, Any]) -> None:
        """Tell a waiting client about a session status change."""
        try:
            redis = await self._ensure_redis()
            await redis.publish(session_channel(session_id), json.dumps(message, default=str))
        except Exception as e:
            logger.warning("realtime_publish_failed", session_id=str(session_id), error=str(e))

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    async def store(
        self, db: AsyncSession, payload: Dict[str, Any], source: str = "cardcom"
    ) -> PaymentWebhook:
        """Persist the raw payload and commit, so it survives any processing failure."""
        webhook = PaymentWebhook(
            id=uuid.uuid4(),
            webhook_type=source,
            low_profile_id=str(payload.get("LowProfileId") or "") or None,
            payload=payload,
            processed=False,
            processing_attempts=0,
        )
        db.add(webhook)
        await db.commit()
        logger.info(
            "webhook_stored",
            webhook_id=str(webhook.id),
            low_profile_id=webhook.low_profile_id,
            source=source,
        )
        return webhook

    async def ingest(
        self, db: AsyncSession, payload: Dict[str, Any], source: str = "cardcom"
    ) -> Dict[str, Any]:
        """Store then process one payment result."""
        webhook = await self.store(db, payload, source)
        return await self.process_stored(db, webhook)

    async def process_stored(self, db: AsyncSession, webhook: PaymentWebhook) -> Dict[str, Any]:
        """
        Process a stored webhook row.

        Returns:
            Dict[str, Any]: ``status`` is processed, declined, duplicate,
            locked, invalid or error
        """
        start_time = time.time()
        webhook_id = webhook.id
        low_profile_id = webhook.low_profile_id

        if not low_profile_id:
            webhook.processed = True
            webhook.processed_at = utcnow()
            webhook.processing_result = {"success": False, "error": "Missing LowProfileId"}
            await db.commit()
            metrics.record_webhook_event("invalid", time.time() - start_time)
            return {"status": "invalid", "success": False, "webhook_id": webhook_id}

        existing_transaction = await self.find_processed(db, low_profile_id)
        if existing_transaction is not None:
            return await self._mark_duplicate(db, webhook, existing_transaction, start_time)

        try:
            async with self.lock.hold(f"webhook:lock:{low_profile_id}"):
                # Settled by another worker while we waited
                existing_transaction = await self.find_processed(db, low_profile_id)
                if existing_transaction is not None:
                    return await self._mark_duplicate(
                        db, webhook, existing_transaction, start_time
                    )
                outcome = await self._process_locked(db, webhook)
        except LockError:
            metrics.record_webhook_event("locked", time.time() - start_time)
            return {"status": "locked", "success": False, "webhook_id": webhook_id}

        metrics.record_webhook_event(outcome["status"], time.time() - start_time)
        return outcome

    async def _mark_duplicate(
        self,
        db: AsyncSession,
        webhook: PaymentWebhook,
        transaction_id: str,
        start_time: float,
    ) -> Dict[str, Any]:
        webhook.processed = True
        webhook.processed_at = utcnow()
        webhook.processing_result = {
            "success": True,
            "duplicate": True,
            "transaction_id": transaction_id,
        }
        await db.commit()
        metrics.record_webhook_event("duplicate", time.time() - start_time)
        logger.info("webhook_duplicate", low_profile_id=webhook.low_profile_id)
        return {
            "status": "duplicate",
            "success": True,
            "webhook_id": webhook.id,
            "transaction_id": transaction_id,
        }

    async def _process_locked(self, db: AsyncSession, webhook: PaymentWebhook) -> Dict[str, Any]:
        webhook_id = webhook.id
        low_profile_id = webhook.low_profile_id
        try:
            result = await self.process_payload(db, webhook.payload)
            webhook.processed = True
            webhook.processed_at = utcnow()
            webhook.processing_result = result
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                "webhook_processing_failed",
                webhook_id=str(webhook_id),
                low_profile_id=low_profile_id,
                error=str(e),
            )
            stored = await db.get(PaymentWebhook, webhook_id)
            if stored is not None:
                stored.processing_result = {"success": False, "error": str(e)}
            db.add(
                SystemLog(
                    level="error",
                    function_name="cardcom_webhook",
                    message=f"Webhook processing failed: {str(e)}",
                    details={"webhook_id": str(webhook_id), "low_profile_id": low_profile_id},
                )
            )
            await db.commit()
            return {"status": "error", "success": False, "webhook_id": webhook_id, "error": str(e)}

        if result.get("success"):
            await self._remember_processed(low_profile_id, result.get("transaction_id") or "")
        if result.get("session_id"):
            await self.publish_realtime(
                result["session_id"],
                {
                    "status": "completed" if result.get("success") else "failed",
                    "transaction_id": result.get("transaction_id"),
                },
            )

        return {
            "status": "processed" if result.get("success") else "declined",
            "webhook_id": webhook_id,
            **result,
        }

    async def _find_session(
        self, db: AsyncSession, low_profile_id: str
    ) -> Optional[PaymentSession]:
        result = await db.execute(
            select(PaymentSession).where(PaymentSession.low_profile_code == low_profile_id)
        )
        return result.scalar_one_or_none()

    async def process_payload(self, db: AsyncSession, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a payment result to the database (no commit).

        Raises:
            WebhookError: If the payer cannot be resolved
        """
        low_profile_id = str(payload.get("LowProfileId") or "")
        response_code = str(payload.get("ResponseCode"))
        return_value = str(payload.get("ReturnValue") or "")
        session = await self._find_session(db, low_profile_id)

        if response_code != "0":
            description = payload.get("Description") or "Payment declined"
            if session is not None:
                session.status = "failed"
                session.transaction_data = {"error": description, "response_code": response_code}
                metrics.record_session_outcome("failed")
            logger.info(
                "payment_declined",
                low_profile_id=low_profile_id,
                response_code=response_code,
            )
            return {
                "success": False,
                "response_code": response_code,
                "error": description,
                "session_id": str(session.id) if session else None,
            }

        if not return_value:
            raise WebhookError("Missing ReturnValue")

        if return_value.startswith(REGISTRATION_PREFIX):
            return await self._settle_registration(
                db, payload, return_value[len(REGISTRATION_PREFIX):], session
            )

        try:
            user_id = uuid.UUID(return_value)
        except ValueError:
            raise WebhookError(f"ReturnValue is not a user id: {return_value}")
        return await self._settle_user_payment(db, payload, user_id, session)

    async def _settle_registration(
        self,
        db: AsyncSession,
        payload: Dict[str, Any],
        registration_id: str,
        session: Optional[PaymentSession],
    ) -> Dict[str, Any]:
        registration = await db.get(TempRegistration, registration_id)
        if registration is None:
            raise WebhookError(f"Registration {registration_id} not found")

        token_info = extract_token_info(payload)
        registration.payment_verified = True
        registration.payment_details = {
            "low_profile_id": payload.get("LowProfileId"),
            "transaction_id": str(payload.get("TranzactionId") or ""),
            "amount_cents": extract_amount_cents(payload),
            "token": token_info["token"] if token_info else None,
            **extract_card_info(payload),
        }
        logger.info("registration_payment_verified", registration_id=registration_id)

        if registration.user_id is not None:
            return await self._settle_user_payment(
                db, payload, registration.user_id, session, plan_id=registration.plan_id
            )

        if session is not None:
            session.status = "completed"
            session.transaction_id = registration.payment_details["transaction_id"] or None
            metrics.record_session_outcome("completed")
        return {
            "success": True,
            "registration_id": registration_id,
            "pending_user": True,
            "transaction_id": registration.payment_details["transaction_id"],
            "session_id": str(session.id) if session else None,
        }

    async def _settle_user_payment(
        self,
        db: AsyncSession,
        payload: Dict[str, Any],
        user_id: uuid.UUID,
        session: Optional[PaymentSession],
        plan_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        profile = await db.get(UserProfile, user_id)
        if profile is None:
            raise WebhookError(f"User {user_id} not found")

        low_profile_id = str(payload.get("LowProfileId"))
        info = payload.get("TranzactionInfo") or {}
        transaction_id = str(payload.get("TranzactionId") or info.get("TranzactionId") or "")
        amount_cents = extract_amount_cents(payload)
        card = extract_card_info(payload)
        plan = plan_id or (session.plan_id if session else None)
        if not plan:
            plan = plan_from_amount(amount_cents / 100).value

        payment_log = PaymentLog(
            id=uuid.uuid4(),
            user_id=user_id,
            low_profile_id=low_profile_id,
            transaction_id=transaction_id or None,
            amount_cents=amount_cents,
            plan_id=plan,
            payment_status="completed",
            payment_data={
                **card,
                "approval_number": info.get("ApprovalNumber"),
                "card_info": info.get("CardInfo"),
            },
        )
        db.add(payment_log)

        token_id = None
        token_info = extract_token_info(payload)
        if token_info:
            await db.execute(
                update(PaymentToken)
                .where(
                    PaymentToken.user_id == user_id,
                    PaymentToken.is_active == True,  # noqa: E712
                )
                .values(is_active=False)
            )
            token = PaymentToken(
                id=uuid.uuid4(),
                user_id=user_id,
                token=token_info["token"],
                token_expiry=token_info["expiry"]
                or date.today() + timedelta(days=365 * self.settings.token_validity_years),
                card_last_four=card["lastFourDigits"],
                low_profile_id=low_profile_id,
                is_active=True,
            )
            db.add(token)
            token_id = token.id

        subscription = await self.subscriptions.activate_from_payment(
            db,
            user_id=user_id,
            plan_id=plan,
            amount_cents=amount_cents,
            card_info=card,
            token_id=token_id,
            low_profile_id=low_profile_id,
        )
        payment_log.subscription_id = subscription.id

        if session is not None:
            session.status = "completed"
            session.transaction_id = transaction_id or None
            session.payment_method = {
                **card,
                "token": token_info["token"] if token_info else None,
            }
            session.transaction_data = {
                "amount_cents": amount_cents,
                "approval_number": info.get("ApprovalNumber"),
            }
            metrics.record_session_outcome("completed")

        record_event(
            db,
            aggregate_id=payment_log.id,
            aggregate_type="payment",
            event_type="payment.completed",
            payload={
                "user_id": str(user_id),
                "subscription_id": str(subscription.id),
                "low_profile_id": low_profile_id,
                "amount_cents": amount_cents,
                "plan": plan,
            },
        )
        await db.flush()

        logger.info(
            "payment_settled",
            user_id=str(user_id),
            low_profile_id=low_profile_id,
            transaction_id=transaction_id,
            amount_cents=amount_cents,
            subscription_status=subscription.status,
        )

        return {
            "success": True,
            "user_id": str(user_id),
            "transaction_id": transaction_id,
            "subscription_id": str(subscription.id),
            "subscription_status": subscription.status,
            "plan": plan,
            "session_id": str(session.id) if session else None,
        }
