"""
Hosted payment sessions.

Opens Cardcom LowProfile pages and answers "did this payment finish yet?"
for the client that polls while the gateway completes the transaction.
"""
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.plans import get_plan
from database.models import (
    PaymentLog,
    PaymentSession,
    PaymentWebhook,
    Subscription,
    TempRegistration,
    UserProfile,
    utcnow,
)
from integrations.cardcom_client import CardcomClient
from monitoring.metrics import metrics

if TYPE_CHECKING:
    from integrations.webhook_handler import CardcomWebhookHandler

logger = structlog.get_logger(__name__)

REGISTRATION_PREFIX = "temp_reg_"
ANONYMOUS_PREFIX = "anon_"


class PaymentSessionError(Exception):
    """Raised when a payment session cannot be opened or found."""

    pass


def _result(status: str, message: str, **extra: Any) -> Dict[str, Any]:
    metrics.record_status_check(status)
    return {"status": status, "message": message, **extra}


class PaymentSessionService:
    """Opens hosted sessions and resolves their status."""

    def __init__(
        self,
        cardcom_client: CardcomClient,
        webhook_handler: Optional["CardcomWebhookHandler"] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cardcom = cardcom_client
        self.webhook_handler = webhook_handler

    async def open_session(
        self,
        db: AsyncSession,
        plan_id: str,
        user_id: Optional[uuid.UUID] = None,
        registration_id: Optional[str] = None,
        anonymous_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Open a LowProfile page for a plan.

        The Cardcom ReturnValue identifies who pays: a user id, a pending
        registration (``temp_reg_`` prefix) or an anonymous buyer.

        Returns:
            Dict[str, Any]: session id, LowProfile code, hosted URL, reference,
            operation type and expiry

        Raises:
            PlanError: Unknown plan
            PaymentSessionError: No payer given, or unknown payer
            CardcomError: Gateway rejected the request
        """
        plan = get_plan(plan_id)
        name = email = phone = None

        if user_id is not None:
            profile = await db.get(UserProfile, user_id)
            if profile is None:
                raise PaymentSessionError(f"User {user_id} not found")
            reference = str(user_id)
            name, email, phone = profile.full_name, profile.email, profile.phone
        elif registration_id:
            registration = await db.get(TempRegistration, registration_id)
            if registration is None:
                raise PaymentSessionError(f"Registration {registration_id} not found")
            reference = f"{REGISTRATION_PREFIX}{registration_id}"
            details = registration.registration_data or {}
            email, phone = details.get("email"), details.get("phone")
            name = details.get("full_name") or details.get("name")
        elif anonymous_data:
            reference = f"{ANONYMOUS_PREFIX}{uuid.uuid4().hex}"
            email = anonymous_data.get("email")
            name = anonymous_data.get("name")
            phone = anonymous_data.get("phone")
        else:
            raise PaymentSessionError("A user, registration or anonymous buyer is required")

        payload = self.cardcom.build_low_profile_payload(
            operation=plan.operation,
            amount_cents=plan.signup_amount_cents,
            return_value=reference,
            product_name=plan.name,
            j_validate_type=plan.j_validate_type,
            customer_name=name,
            customer_email=email,
            customer_phone=phone,
        )
        response = await self.cardcom.create_low_profile(payload)

        now = utcnow()
        operation_type = "token_only" if plan.token_only else "payment"
        session = PaymentSession(
            id=uuid.uuid4(),
            user_id=user_id,
            low_profile_code=response["LowProfileId"],
            reference=reference,
            plan_id=plan.plan_type.value,
            amount_cents=plan.signup_amount_cents,
            currency="ILS",
            status="initiated",
            operation_type=operation_type,
            expires_at=now + timedelta(minutes=self.settings.payment_session_ttl_minutes),
            anonymous_data=anonymous_data,
            initial_next_charge_date=(
                now + timedelta(days=plan.trial_days) if plan.trial_days else None
            ),
        )
        db.add(session)
        await db.flush()

        metrics.record_session_opened(plan.plan_type.value, plan.operation.value)
        logger.info(
            "payment_session_opened",
            session_id=str(session.id),
            low_profile_id=session.low_profile_code,
            plan=plan.plan_type.value,
            operation_type=operation_type,
        )

        return {
            "session_id": session.id,
            "low_profile_code": session.low_profile_code,
            "url": response.get("Url"),
            "reference": reference,
            "operation_type": operation_type,
            "expires_at": session.expires_at,
        }

    async def _mark(self, session: PaymentSession, status: str, **fields: Any) -> None:
        if session.status != status:
            metrics.record_session_outcome(status)
        session.status = status
        for key, value in fields.items():
            setattr(session, key, value)

    async def _processed_successfully(self, db: AsyncSession, low_profile_code: str) -> bool:
        result = await db.execute(
            select(PaymentWebhook).where(
                PaymentWebhook.low_profile_id == low_profile_code,
                PaymentWebhook.processed == True,  # noqa: E712
            )
        )
        return any(
            (webhook.processing_result or {}).get("success") for webhook in result.scalars()
        )

    async def check_status(
        self,
        db: AsyncSession,
        session_id: Optional[uuid.UUID],
        low_profile_code: Optional[str],
        attempt: int = 0,
        operation_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resolve a session's status from everything we already know locally.

        Checks run in a fixed order: processed webhooks, the session row,
        payment logs, stored tokens and finally the user's subscription.
        Nothing here calls the gateway.

        Returns:
            Dict[str, Any]: ``status`` is success, processing, failed or timeout
        """
        if not session_id or not low_profile_code:
            return _result("failed", "Missing session id or LowProfile code")

        session = await db.get(PaymentSession, session_id)

        if await self._processed_successfully(db, low_profile_code):
            if session is not None and session.status != "completed":
                await self._mark(session, "completed")
                await db.flush()
            return _result(
                "success",
                "Payment already processed",
                transaction_id=session.transaction_id if session else None,
            )

        if session is None:
            return _result("processing", "Session not found yet")

        op_type = operation_type or session.operation_type
        now = utcnow()

        if session.expires_at < now:
            if session.status != "expired":
                await self._mark(session, "expired")
                await db.flush()
            return _result("failed", "Payment session expired", timeout=True)

        if session.status == "completed" and session.transaction_id:
            extra: Dict[str, Any] = {"transaction_id": session.transaction_id}
            if op_type == "token_only":
                extra["token"] = (session.payment_method or {}).get("token")
            return _result("success", "Payment completed", **extra)

        if session.status == "failed":
            return _result(
                "failed",
                "Payment failed",
                error=(session.transaction_data or {}).get("error"),
                details=session.transaction_data,
            )

        log_result = await db.execute(
            select(PaymentLog).where(PaymentLog.low_profile_id == low_profile_code)
        )
        payment_log = log_result.scalar_one_or_none()
        if payment_log is not None and payment_log.payment_status == "completed":
            await self._mark(session, "completed", transaction_id=payment_log.transaction_id)
            await db.flush()
            return _result(
                "success", "Payment found in payment log", transaction_id=payment_log.transaction_id
            )

        token = (session.payment_method or {}).get("token")
        if op_type == "token_only" and token:
            await self._mark(session, "completed")
            await db.flush()
            return _result("success", "Card token stored", token=token)

        if session.user_id is not None:
            sub_result = await db.execute(
                select(Subscription).where(
                    Subscription.user_id == session.user_id,
                    Subscription.plan_type == session.plan_id,
                    Subscription.status.in_(("active", "trial")),
                )
            )
            if sub_result.scalar_one_or_none() is not None:
                await self._mark(session, "completed")
                await db.flush()
                return _result("success", "Subscription already active")

        if attempt > self.settings.status_check_max_attempts:
            await self._mark(session, "timeout")
            await db.flush()
            return _result("timeout", "Payment status check timed out", timeout=True)

        return _result("processing", "Payment is still processing")

    async def verify_with_gateway(
        self, db: AsyncSession, session_id: uuid.UUID
    ) -> Dict[str, Any]:
        """
        Ask Cardcom directly for the LowProfile result.

        A successful result goes through the webhook processing path, so a
        lost callback is settled exactly as if it had arrived.

        Raises:
            PaymentSessionError: Unknown session
            CardcomError: Gateway unreachable
        """
        session = await db.get(PaymentSession, session_id)
        if session is None:
            raise PaymentSessionError(f"Session {session_id} not found")

        lp_result = await self.cardcom.get_lp_result(session.low_profile_code)
        if str(lp_result.get("ResponseCode")) != "0":
            logger.info(
                "gateway_result_not_ready",
                session_id=str(session_id),
                response_code=lp_result.get("ResponseCode"),
            )
            return _result("processing", "Gateway has no result yet")

        if self.webhook_handler is None:
            raise PaymentSessionError("Webhook handler is not configured")

        low_profile_code = session.low_profile_code
        lp_result.setdefault("LowProfileId", low_profile_code)
        lp_result.setdefault("ReturnValue", session.reference)
        outcome = await self.webhook_handler.ingest(db, lp_result, source="gateway_verify")
        logger.info(
            "gateway_result_verified",
            session_id=str(session_id),
            outcome=outcome.get("status"),
        )
        return await self.check_status(db, session_id, low_profile_code)

    async def mark_timeout(self, db: AsyncSession, session_id: uuid.UUID) -> bool:
        """Mark an unfinished session as timed out; returns whether it changed."""
        session = await db.get(PaymentSession, session_id)
        if session is None or session.status != "initiated":
            return False
        await self._mark(session, "timeout")
        await db.flush()
        logger.info("payment_session_timed_out", session_id=str(session_id))
        return True

    async def get_session(self, db: AsyncSession, session_id: uuid.UUID) -> PaymentSession:
        session = await db.get(PaymentSession, session_id)
        if session is None:
            raise PaymentSessionError(f"Session {session_id} not found")
        return session
