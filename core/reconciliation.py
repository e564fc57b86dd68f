"""
Reconciliation of Cardcom results against payment logs.

Runs daily to detect:
- Payments Cardcom completed that never reached the database
- Amount mismatches
"""
import time
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session_factory
from database.models import PaymentLog, PaymentSession, ReconciliationStatus, utcnow
from integrations.cardcom_client import CardcomClient, CardcomError, extract_amount_cents
from integrations.webhook_handler import CardcomWebhookHandler
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stored discrepancies per run
MAX_STORED_DISCREPANCIES = 100


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


class ReconciliationEngine:
    """
    Daily payment verification.

    Cardcom has no transaction listing in the LowProfile API, so the gateway
    side is built from GetLpResult for each session opened that day.
    """

    def __init__(
        self,
        cardcom_client: CardcomClient,
        webhook_handler: Optional[CardcomWebhookHandler] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            cardcom_client: Gateway client
            webhook_handler: Handler used to settle missing payments on repair
            session_factory: Optional session factory (defaults to the app's)
        """
        self.cardcom = cardcom_client
        self.webhook_handler = webhook_handler
        self.session_factory = session_factory

    async def _database_payments(
        self, db: AsyncSession, start: datetime, end: datetime
    ) -> Dict[str, PaymentLog]:
        result = await db.execute(
            select(PaymentLog).where(
                PaymentLog.created_at >= start,
                PaymentLog.created_at < end,
                PaymentLog.payment_status == "completed",
                PaymentLog.low_profile_id.isnot(None),
            )
        )
        return {log.low_profile_id: log for log in result.scalars().all()}

    async def _gateway_results(
        self, db: AsyncSession, start: datetime, end: datetime
    ) -> Dict[str, Any]:
        result = await db.execute(
            select(PaymentSession.low_profile_code).where(
                PaymentSession.created_at >= start,
                PaymentSession.created_at < end,
            )
        )
        completed: Dict[str, Dict[str, Any]] = {}
        errors: List[Dict[str, Any]] = []

        for low_profile_id in result.scalars().all():
            try:
                lp_result = await self.cardcom.get_lp_result(low_profile_id)
            except CardcomError as e:
                errors.append({"low_profile_id": low_profile_id, "error": str(e)})
                continue
            if str(lp_result.get("ResponseCode")) == "0":
                lp_result.setdefault("LowProfileId", low_profile_id)
                completed[low_profile_id] = lp_result

        return {"completed": completed, "errors": errors}

    async def _recorded_payment(
        self, db: AsyncSession, low_profile_id: str
    ) -> Optional[PaymentLog]:
        result = await db.execute(
            select(PaymentLog).where(
                PaymentLog.low_profile_id == low_profile_id,
                PaymentLog.payment_status == "completed",
            )
        )
        return result.scalar_one_or_none()

    async def reconcile_date(
        self, reconciliation_date: date, repair: bool = False
    ) -> Dict[str, Any]:
        """
        Reconcile hosted-page payments for one day.

        Args:
            reconciliation_date: Day to reconcile (UTC)
            repair: Settle payments missing from the database

        Returns:
            Dict[str, Any]: Totals and discrepancies

        Raises:
            ReconciliationError: If the run fails
        """
        start_time = time.time()
        log = logger.bind(date=reconciliation_date.isoformat())
        log.info("reconciliation_started", repair=repair)

        session_factory = self.session_factory or get_session_factory()
        async with session_factory() as db:
            existing = await db.execute(
                select(ReconciliationStatus).where(
                    ReconciliationStatus.reconciliation_date == reconciliation_date
                )
            )
            recon_status = existing.scalar_one_or_none()
            if recon_status is None:
                recon_status = ReconciliationStatus(reconciliation_date=reconciliation_date)
                db.add(recon_status)
            recon_status.status = "in_progress"
            recon_status.started_at = utcnow()
            recon_status.completed_at = None
            await db.commit()
            recon_id = recon_status.id

            try:
                start = datetime.combine(reconciliation_date, datetime.min.time())
                end = start + timedelta(days=1)

                database = await self._database_payments(db, start, end)
                gateway = await self._gateway_results(db, start, end)
                gateway_completed: Dict[str, Dict[str, Any]] = gateway["completed"]

                discrepancies: List[Dict[str, Any]] = []
                gateway_total = 0
                for low_profile_id, lp_result in gateway_completed.items():
                    gateway_amount = extract_amount_cents(lp_result)
                    gateway_total += gateway_amount
                    payment_log = database.get(low_profile_id)
                    if payment_log is None:
                        # Settled on a different day, not missing
                        payment_log = await self._recorded_payment(db, low_profile_id)
                    if payment_log is None:
                        discrepancies.append({
                            "type": "missing_in_database",
                            "low_profile_id": low_profile_id,
                            "gateway_amount": gateway_amount,
                        })
                    elif payment_log.amount_cents != gateway_amount:
                        discrepancies.append({
                            "type": "amount_mismatch",
                            "low_profile_id": low_profile_id,
                            "payment_log_id": str(payment_log.id),
                            "database_amount": payment_log.amount_cents,
                            "gateway_amount": gateway_amount,
                        })

                database_total = sum(p.amount_cents for p in database.values())
                discrepancy_cents = abs(gateway_total - database_total)

                if repair and self.webhook_handler is not None:
                    for discrepancy in discrepancies:
                        if discrepancy["type"] != "missing_in_database":
                            continue
                        outcome = await self.webhook_handler.ingest(
                            db,
                            gateway_completed[discrepancy["low_profile_id"]],
                            source="reconciliation",
                        )
                        discrepancy["repair"] = outcome.get("status")

                recon_status = await db.get(ReconciliationStatus, recon_id)
                recon_status.gateway_total_cents = gateway_total
                recon_status.database_total_cents = database_total
                recon_status.discrepancy_cents = discrepancy_cents
                recon_status.discrepancy_count = len(discrepancies)
                recon_status.status = "completed"
                recon_status.completed_at = utcnow()
                recon_status.details = {
                    "database_count": len(database),
                    "gateway_count": len(gateway_completed),
                    "gateway_errors": gateway["errors"],
                    "discrepancies": discrepancies[:MAX_STORED_DISCREPANCIES],
                }
                await db.commit()

            except Exception as e:
                log.error("reconciliation_failed", error=str(e))
                await db.rollback()
                failed = await db.get(ReconciliationStatus, recon_id)
                if failed is not None:
                    failed.status = "failed"
                    failed.completed_at = utcnow()
                    failed.details = {"error": str(e)}
                    await db.commit()
                raise ReconciliationError(f"Reconciliation failed: {str(e)}")

        metrics.set_reconciliation_metrics(
            len(discrepancies), discrepancy_cents, time.time() - start_time
        )
        log.info(
            "reconciliation_completed",
            discrepancy_cents=discrepancy_cents,
            discrepancy_count=len(discrepancies),
            gateway_errors=len(gateway["errors"]),
        )

        return {
            "date": reconciliation_date.isoformat(),
            "database_total_cents": database_total,
            "database_count": len(database),
            "gateway_total_cents": gateway_total,
            "gateway_count": len(gateway_completed),
            "discrepancy_cents": discrepancy_cents,
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
            "gateway_errors": gateway["errors"],
        }

    async def reconcile_yesterday(self, repair: bool = False) -> Dict[str, Any]:
        """Reconcile payments for yesterday (UTC)."""
        yesterday = utcnow().date() - timedelta(days=1)
        return await self.reconcile_date(yesterday, repair=repair)
