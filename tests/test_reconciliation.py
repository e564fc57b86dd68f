"""
Daily reconciliation tests.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.reconciliation import ReconciliationEngine, ReconciliationError
from database.models import PaymentLog, ReconciliationStatus, utcnow
from integrations.cardcom_client import CardcomClient
from integrations.webhook_handler import CardcomWebhookHandler
from tests.helpers import CardcomStub, cardcom_result


@pytest.fixture
def engine(
    cardcom_client: CardcomClient,
    webhook_handler: CardcomWebhookHandler,
    session_factory: async_sessionmaker[AsyncSession],
) -> ReconciliationEngine:
    return ReconciliationEngine(cardcom_client, webhook_handler, session_factory)


@pytest.fixture
def yesterday_noon() -> datetime:
    day = utcnow().date() - timedelta(days=1)
    return datetime.combine(day, datetime.min.time()) + timedelta(hours=12)


@pytest.fixture
def payment_day(
    test_db: AsyncSession,
    cardcom_stub: CardcomStub,
    yesterday_noon: datetime,
    make_user: Callable[..., Any],
    make_session: Callable[..., Any],
) -> Callable[..., Any]:
    """
    Yesterday's sessions: one matched, one missing from the database,
    one with a different amount, one unfinished and one the gateway rejects.
    """

    async def _build() -> Dict[str, Any]:
        matched_user = await make_user()
        missing_user = await make_user()
        mismatch_user = await make_user()

        matched = await make_session(
            matched_user.id, plan_id="annual", operation_type="payment", created_at=yesterday_noon
        )
        missing = await make_session(
            missing_user.id, plan_id="annual", operation_type="payment", created_at=yesterday_noon
        )
        mismatch = await make_session(
            mismatch_user.id, plan_id="annual", operation_type="payment", created_at=yesterday_noon
        )
        unfinished = await make_session(created_at=yesterday_noon)
        rejected = await make_session(created_at=yesterday_noon)

        for session, user in ((matched, matched_user), (missing, missing_user), (mismatch, mismatch_user)):
            cardcom_stub.lp_results[session.low_profile_code] = cardcom_result(
                session.low_profile_code, str(user.id), amount=3371
            )
        cardcom_stub.lp_errors[rejected.low_profile_code] = 400

        test_db.add_all(
            [
                PaymentLog(
                    user_id=matched_user.id,
                    low_profile_id=matched.low_profile_code,
                    amount_cents=337100,
                    plan_id="annual",
                    payment_status="completed",
                    created_at=yesterday_noon,
                ),
                PaymentLog(
                    user_id=mismatch_user.id,
                    low_profile_id=mismatch.low_profile_code,
                    amount_cents=37100,
                    plan_id="annual",
                    payment_status="completed",
                    created_at=yesterday_noon,
                ),
            ]
        )
        await test_db.commit()
        return {
            "matched": matched,
            "missing": missing,
            "mismatch": mismatch,
            "unfinished": unfinished,
            "rejected": rejected,
            "missing_user": missing_user,
        }

    return _build


class TestReconciliation:
    """Gateway results compared with payment logs."""

    @pytest.mark.asyncio
    async def test_detects_missing_and_mismatched_payments(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        payment_day: Callable[..., Any],
        yesterday_noon: datetime,
    ) -> None:
        day = await payment_day()

        result = await engine.reconcile_date(yesterday_noon.date())

        assert result["gateway_count"] == 3
        assert result["database_count"] == 2
        assert result["gateway_total_cents"] == 3 * 337100
        assert result["database_total_cents"] == 337100 + 37100
        assert result["discrepancy_cents"] == 3 * 337100 - (337100 + 37100)

        by_type = {d["type"]: d for d in result["discrepancies"]}
        assert set(by_type) == {"missing_in_database", "amount_mismatch"}
        assert by_type["missing_in_database"]["low_profile_id"] == day["missing"].low_profile_code
        assert by_type["amount_mismatch"]["database_amount"] == 37100
        assert by_type["amount_mismatch"]["gateway_amount"] == 337100
        assert [e["low_profile_id"] for e in result["gateway_errors"]] == [
            day["rejected"].low_profile_code
        ]

        async with session_factory() as db:
            status = (await db.execute(select(ReconciliationStatus))).scalar_one()
            assert status.status == "completed"
            assert status.discrepancy_count == 2
            assert status.details["gateway_count"] == 3
            logs = (await db.execute(select(PaymentLog))).scalars().all()
            assert len(logs) == 2

    @pytest.mark.asyncio
    async def test_repair_settles_missing_payment(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        payment_day: Callable[..., Any],
        yesterday_noon: datetime,
    ) -> None:
        day = await payment_day()

        result = await engine.reconcile_date(yesterday_noon.date(), repair=True)

        missing = next(d for d in result["discrepancies"] if d["type"] == "missing_in_database")
        assert missing["repair"] == "processed"
        async with session_factory() as db:
            repaired = (
                await db.execute(
                    select(PaymentLog).where(
                        PaymentLog.low_profile_id == day["missing"].low_profile_code
                    )
                )
            ).scalar_one()
            assert repaired.user_id == day["missing_user"].id
            assert repaired.amount_cents == 337100

    @pytest.mark.asyncio
    async def test_rerun_updates_the_same_row(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        yesterday_noon: datetime,
    ) -> None:
        await engine.reconcile_date(yesterday_noon.date())
        result = await engine.reconcile_date(yesterday_noon.date())

        assert result["discrepancy_count"] == 0
        async with session_factory() as db:
            rows = (await db.execute(select(ReconciliationStatus))).scalars().all()
            assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_payment_settled_on_another_day_is_not_missing(
        self,
        test_db: AsyncSession,
        engine: ReconciliationEngine,
        cardcom_stub: CardcomStub,
        make_user: Callable[..., Any],
        make_session: Callable[..., Any],
        yesterday_noon: datetime,
    ) -> None:
        user = await make_user()
        session = await make_session(
            user.id, plan_id="annual", operation_type="payment", created_at=yesterday_noon
        )
        cardcom_stub.lp_results[session.low_profile_code] = cardcom_result(
            session.low_profile_code, str(user.id), amount=3371
        )
        test_db.add(
            PaymentLog(
                user_id=user.id,
                low_profile_id=session.low_profile_code,
                amount_cents=337100,
                payment_status="completed",
            )
        )
        await test_db.commit()

        result = await engine.reconcile_date(yesterday_noon.date())

        assert result["discrepancies"] == []
        assert result["database_count"] == 0

    @pytest.mark.asyncio
    async def test_failure_is_recorded(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        yesterday_noon: datetime,
        mocker: Any,
    ) -> None:
        mocker.patch.object(engine, "_gateway_results", side_effect=RuntimeError("boom"))

        with pytest.raises(ReconciliationError, match="boom"):
            await engine.reconcile_date(yesterday_noon.date())

        async with session_factory() as db:
            status = (await db.execute(select(ReconciliationStatus))).scalar_one()
            assert status.status == "failed"
            assert status.details == {"error": "boom"}
