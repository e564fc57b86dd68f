"""
API routes for payment sessions, Cardcom webhooks and subscriptions.
"""
import json
import secrets
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, Security, status
from fastapi.responses import StreamingResponse
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.monitor import SubscriptionMonitor
from core.notifications import EmailNotifier
from core.payment_sessions import PaymentSessionError, PaymentSessionService
from core.plans import PlanError
from core.reconciliation import ReconciliationEngine, ReconciliationError
from core.recovery import RecoveryError, WebhookRecoveryService
from core.recurring import RecurringBillingEngine
from core.status_watcher import PaymentStatusWatcher
from core.subscriptions import (
    InvalidTransitionError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionOwnershipError,
    SubscriptionService,
    has_access,
)
from database.connection import get_db
from database.models import Subscription, utcnow
from integrations.cardcom_client import CardcomClient, CardcomError
from integrations.webhook_handler import CardcomWebhookHandler
from monitoring.health import HealthCheck

from .schemas import (
    CancelSubscriptionRequest,
    HealthCheckResponse,
    OpenSessionRequest,
    OpenSessionResponse,
    PaymentFailureRequest,
    ReactivateSubscriptionRequest,
    ReconciliationRequest,
    ReconciliationResponse,
    RecoveryEmailRequest,
    RecoveryEmailResponse,
    RepairSubscriptionRequest,
    RepairSubscriptionResponse,
    ReprocessWebhooksRequest,
    StatusCheckRequest,
    StatusCheckResponse,
    SubscriptionActionResponse,
    SubscriptionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
cardcom_client = CardcomClient()
notifier = EmailNotifier()
subscription_service = SubscriptionService(notifier)
webhook_handler = CardcomWebhookHandler(subscription_service)
session_service = PaymentSessionService(cardcom_client, webhook_handler)
status_watcher = PaymentStatusWatcher(session_service)
recovery_service = WebhookRecoveryService(webhook_handler, subscription_service, notifier)
subscription_monitor = SubscriptionMonitor(subscription_service, notifier)
billing_engine = RecurringBillingEngine(cardcom_client, subscription_service)
reconciliation_engine = ReconciliationEngine(cardcom_client, webhook_handler)
health_check = HealthCheck(cardcom_client)

api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)


async def require_admin(api_key: Optional[str] = Security(api_key_header)) -> None:
    """Admin endpoints need the configured API key."""
    if not api_key or not secrets.compare_digest(api_key, settings.admin_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


@payment_router.post(
    "/sessions",
    response_model=OpenSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a hosted payment session",
)
async def open_session(
    request: OpenSessionRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Open a Cardcom LowProfile page for a plan."""
    try:
        return await session_service.open_session(
            db,
            plan_id=request.plan_id,
            user_id=request.user_id,
            registration_id=request.registration_id,
            anonymous_data=request.anonymous_data,
        )
    except PlanError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentSessionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CardcomError as e:
        logger.error("api_open_session_gateway_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment gateway error: {str(e)}",
        )


@payment_router.post(
    "/sessions/{session_id}/status",
    response_model=StatusCheckResponse,
    summary="Check payment session status",
)
async def check_session_status(
    session_id: UUID,
    request: StatusCheckRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Resolve the session status from local records."""
    return await session_service.check_status(
        db,
        session_id,
        request.low_profile_code,
        attempt=request.attempt,
        operation_type=request.operation_type,
    )


@payment_router.get(
    "/sessions/{session_id}/watch",
    summary="Stream payment session status",
    description="Newline-delimited JSON status events until the session settles",
)
async def watch_session(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    """Follow a session with polling, realtime updates and timeout tiers."""
    try:
        session = await session_service.get_session(db, session_id)
    except PaymentSessionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    low_profile_code = session.low_profile_code
    operation_type = session.operation_type

    async def events() -> AsyncIterator[str]:
        async for event in status_watcher.watch(session_id, low_profile_code, operation_type):
            yield json.dumps(event, default=str, ensure_ascii=False) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@payment_router.post(
    "/sessions/{session_id}/verify",
    response_model=StatusCheckResponse,
    summary="Verify a session directly with Cardcom",
)
async def verify_session(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Fetch the LowProfile result and settle it if the callback was lost."""
    try:
        return await session_service.verify_with_gateway(db, session_id)
    except PaymentSessionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CardcomError as e:
        logger.error("api_verify_gateway_error", session_id=str(session_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment gateway error: {str(e)}",
        )


@payment_router.post(
    "/recovery",
    response_model=RecoveryEmailResponse,
    summary="Send a payment recovery email",
)
async def send_recovery_email(
    request: RecoveryEmailRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await recovery_service.send_recovery_email(
            db,
            email=request.email,
            error_info=request.error_info,
            session_id=request.session_id,
            recovery_url=request.recovery_url,
        )
    except RecoveryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@webhook_router.post(
    "/cardcom",
    response_model=WebhookResponse,
    summary="Cardcom payment result webhook",
    description="Always answers 200; failures are kept for the retry worker",
)
async def cardcom_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Receive a Cardcom payment result.

    Cardcom retries on non-2xx answers, and our processing failures are
    retried by the webhook retry worker instead.
    """
    try:
        if request.headers.get("content-type", "").startswith("application/json"):
            payload = await request.json()
        else:
            payload = dict(await request.form())
    except Exception as e:
        logger.warning("api_webhook_unparseable", error=str(e))
        return {"status": "invalid", "success": False, "message": "Unparseable payload"}

    if not isinstance(payload, dict):
        return {"status": "invalid", "success": False, "message": "Payload must be an object"}

    logger.info(
        "api_webhook_received",
        low_profile_id=payload.get("LowProfileId"),
        response_code=payload.get("ResponseCode"),
    )

    try:
        result = await webhook_handler.ingest(db, payload)
    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e))
        return {"status": "error", "success": False, "message": "Stored for retry"}

    return {
        "status": result["status"],
        "success": bool(result.get("success")),
        "message": result.get("error"),
    }


@subscription_router.get(
    "/users/{user_id}",
    response_model=SubscriptionResponse,
    summary="Get a user's subscription",
)
async def get_user_subscription(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    subscription = await subscription_service.get_for_user(db, user_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return _subscription_payload(subscription)


def _subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_type": subscription.plan_type,
        "status": subscription.status,
        "has_access": has_access(subscription),
        "trial_ends_at": subscription.trial_ends_at,
        "current_period_ends_at": subscription.current_period_ends_at,
        "next_charge_at": subscription.next_charge_at,
        "grace_period_ends_at": subscription.grace_period_ends_at,
        "cancelled_at": subscription.cancelled_at,
        "payment_method": subscription.payment_method,
    }


def _subscription_http_error(e: SubscriptionError) -> HTTPException:
    if isinstance(e, SubscriptionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, SubscriptionOwnershipError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@subscription_router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionActionResponse,
    summary="Cancel a subscription",
)
async def cancel_subscription(
    subscription_id: UUID,
    request: CancelSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await subscription_service.cancel(
            db, subscription_id, request.user_id, request.reason, request.feedback
        )
    except SubscriptionError as e:
        logger.warning("api_cancel_rejected", subscription_id=str(subscription_id), error=str(e))
        raise _subscription_http_error(e)


@subscription_router.post(
    "/{subscription_id}/reactivate",
    response_model=SubscriptionActionResponse,
    summary="Reactivate a cancelled subscription",
)
async def reactivate_subscription(
    subscription_id: UUID,
    request: ReactivateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await subscription_service.reactivate(db, subscription_id, request.user_id)
    except SubscriptionError as e:
        logger.warning(
            "api_reactivate_rejected", subscription_id=str(subscription_id), error=str(e)
        )
        raise _subscription_http_error(e)


@admin_router.post(
    "/webhooks/reprocess",
    summary="Retry unprocessed webhooks",
    dependencies=[Depends(require_admin)],
)
async def reprocess_webhooks(
    request: ReprocessWebhooksRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await recovery_service.process_unprocessed_webhooks(
        db, max_retries=request.max_retries, age_hours=request.age_hours, limit=request.limit
    )


@admin_router.post(
    "/subscriptions/repair",
    response_model=RepairSubscriptionResponse,
    summary="Repair a user's subscription",
    dependencies=[Depends(require_admin)],
)
async def repair_subscription(
    request: RepairSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await recovery_service.repair_subscription(
            db,
            email=request.email,
            user_id=request.user_id,
            low_profile_id=request.low_profile_id,
            force_refresh=request.force_refresh,
        )
    except RecoveryError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@admin_router.post(
    "/subscriptions/check",
    summary="Expire lapsed trials and grace periods",
    dependencies=[Depends(require_admin)],
)
async def check_subscriptions(db: AsyncSession = Depends(get_db)) -> Dict[str, int]:
    return await subscription_monitor.check_subscriptions(db)


@admin_router.post(
    "/subscriptions/{subscription_id}/payment-failure",
    response_model=SubscriptionResponse,
    summary="Record a failed charge and start the grace period",
    dependencies=[Depends(require_admin)],
)
async def record_payment_failure(
    subscription_id: UUID,
    request: PaymentFailureRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        subscription = await subscription_service.handle_payment_failure(
            db, subscription_id, request.reason
        )
    except SubscriptionError as e:
        raise _subscription_http_error(e)
    return _subscription_payload(subscription)


@admin_router.post(
    "/billing/run",
    summary="Charge due renewals",
    dependencies=[Depends(require_admin)],
)
async def run_billing(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await billing_engine.process_due(db)


@admin_router.post(
    "/reminders/send",
    summary="Send trial and annual renewal reminders",
    dependencies=[Depends(require_admin)],
)
async def send_reminders(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await subscription_monitor.send_renewal_reminders(db)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Reconcile one day of hosted payments (yesterday by default)",
    dependencies=[Depends(require_admin)],
)
async def run_reconciliation(request: ReconciliationRequest) -> Dict[str, Any]:
    recon_date = request.reconciliation_date or (utcnow().date() - timedelta(days=1))
    logger.info("api_reconciliation_started", date=recon_date.isoformat())
    try:
        return await reconciliation_engine.reconcile_date(recon_date, repair=request.repair)
    except ReconciliationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health() -> Dict[str, Any]:
    """Overall health of the service and its dependencies."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe; 503 while any dependency is down."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
