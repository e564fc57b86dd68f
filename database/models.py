"""SQLAlchemy database models for subscription billing."""
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

SESSION_STATUSES = ("initiated", "completed", "failed", "expired", "timeout")
SUBSCRIPTION_STATUSES = (
    "pending",
    "trial",
    "active",
    "failed",
    "suspended",
    "cancelled",
    "expired",
)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _in(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class UserProfile(Base):
    """Registered users known to billing (mirrors the auth provider's users)."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self) -> str:
        """String representation of UserProfile."""
        return f"<UserProfile(id={self.id}, email={self.email})>"


class PaymentSession(Base):
    """
    Hosted payment sessions opened with Cardcom.

    One row per LowProfile. The row is the anchor for status polling,
    webhook reconciliation and recovery emails.
    """

    __tablename__ = "payment_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    low_profile_code: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="initiated", index=True)
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False, default="payment")
    expires_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payment_method: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    anonymous_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    initial_next_charge_date: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_session_amount"),
        CheckConstraint(_in("status", SESSION_STATUSES), name="valid_session_status"),
        CheckConstraint(
            "operation_type IN ('payment', 'token_only')", name="valid_operation_type"
        ),
        Index("idx_payment_sessions_user_plan", "user_id", "plan_id"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentSession."""
        return (
            f"<PaymentSession(id={self.id}, low_profile={self.low_profile_code}, "
            f"status={self.status})>"
        )


class PaymentToken(Base):
    """Card tokens issued by Cardcom, used for renewal charges."""

    __tablename__ = "payment_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(100), nullable=False)
    token_expiry: Mapped[date | None] = mapped_column(Date(), nullable=True)
    card_last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    low_profile_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of PaymentToken."""
        return f"<PaymentToken(id={self.id}, user_id={self.user_id}, active={self.is_active})>"


class Subscription(Base):
    """
    User subscriptions.

    One subscription per user. ``status`` moves through the lifecycle
    defined in ``core.subscriptions``; ``grace_period_ends_at`` is only set
    while the subscription is in the ``failed`` (grace) state.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(), unique=True, nullable=False, index=True)
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    current_period_starts_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    current_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    next_charge_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True, index=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    payment_method: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payment_token_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("payment_tokens.id", ondelete="SET NULL"), nullable=True
    )
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contract_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contract_signed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(_in("status", SUBSCRIPTION_STATUSES), name="valid_subscription_status"),
        CheckConstraint("plan_type IN ('monthly', 'annual', 'vip')", name="valid_plan_type"),
        CheckConstraint("fail_count >= 0", name="non_negative_fail_count"),
        Index("idx_subscriptions_status_next_charge", "status", "next_charge_at"),
    )

    def __repr__(self) -> str:
        """String representation of Subscription."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan={self.plan_type}, status={self.status})>"
        )


class PaymentLog(Base):
    """
    Completed and failed charges.

    ``low_profile_id`` is unique when present, which makes a second
    settlement of the same hosted session impossible at the database level.
    """

    __tablename__ = "payment_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True, index=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    low_profile_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    plan_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('completed', 'failed')", name="valid_payment_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymentLog."""
        return (
            f"<PaymentLog(id={self.id}, transaction={self.transaction_id}, "
            f"amount={self.amount_cents}, status={self.payment_status})>"
        )


class PaymentWebhook(Base):
    """Raw gateway callbacks, stored before processing so none is lost."""

    __tablename__ = "payment_webhooks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    webhook_type: Mapped[str] = mapped_column(String(50), nullable=False, default="cardcom")
    low_profile_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentWebhook."""
        return (
            f"<PaymentWebhook(id={self.id}, low_profile={self.low_profile_id}, "
            f"processed={self.processed})>"
        )


class TempRegistration(Base):
    """Pending sign-ups that pay before their account exists."""

    __tablename__ = "temp_registrations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    registration_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    plan_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)


class SubscriptionCancellation(Base):
    """Cancellation reasons and feedback."""

    __tablename__ = "subscription_cancellations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)


class SubscriptionRepairLog(Base):
    """Audit of manual subscription repairs."""

    __tablename__ = "subscription_repair_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    low_profile_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    force_refresh: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    actions: Mapped[List[str] | None] = mapped_column(JSONType, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)


class PaymentRecoveryLog(Base):
    """Payment recovery emails sent after a failed checkout."""

    __tablename__ = "payment_recovery_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_info: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    recovery_url: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)


class SystemLog(Base):
    """Operational log rows that must outlive process logs."""

    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    function_name: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, index=True
    )


class SubscriptionEvent(Base):
    """
    Subscription events audit trail table.

    Stores every status transition of a subscription.
    Immutable once written.
    """

    __tablename__ = "subscription_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of SubscriptionEvent."""
        return (
            f"<SubscriptionEvent(id={self.id}, subscription_id={self.subscription_id}, "
            f"type={self.event_type})>"
        )


class ReconciliationStatus(Base):
    """
    Daily reconciliation status tracking table.

    Stores the results of daily reconciliation jobs comparing
    Cardcom session results with payment logs.
    """

    __tablename__ = "reconciliation_status"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    reconciliation_date: Mapped[date] = mapped_column(Date(), nullable=False, unique=True)
    gateway_total_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    database_total_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discrepancy_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discrepancy_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationStatus."""
        return (
            f"<ReconciliationStatus(id={self.id}, date={self.reconciliation_date}, "
            f"status={self.status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as subscription changes,
    then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
