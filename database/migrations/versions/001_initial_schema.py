"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    """Upgrade database schema."""
    # Create profiles table
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_profiles_email"), "profiles", ["email"], unique=False)

    # Create payment_sessions table
    op.create_table(
        "payment_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("low_profile_code", sa.String(length=100), nullable=False),
        sa.Column("reference", sa.String(length=255), nullable=False),
        sa.Column("plan_id", sa.String(length=20), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("operation_type", sa.String(length=20), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("transaction_id", sa.String(length=100), nullable=True),
        sa.Column("transaction_data", _jsonb(), nullable=True),
        sa.Column("payment_method", _jsonb(), nullable=True),
        sa.Column("anonymous_data", _jsonb(), nullable=True),
        sa.Column("initial_next_charge_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="non_negative_session_amount"),
        sa.CheckConstraint(
            "status IN ('initiated', 'completed', 'failed', 'expired', 'timeout')",
            name="valid_session_status",
        ),
        sa.CheckConstraint(
            "operation_type IN ('payment', 'token_only')", name="valid_operation_type"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("low_profile_code"),
    )
    op.create_index(
        "idx_payment_sessions_user_plan", "payment_sessions", ["user_id", "plan_id"], unique=False
    )
    op.create_index(
        op.f("ix_payment_sessions_low_profile_code"),
        "payment_sessions",
        ["low_profile_code"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_sessions_status"), "payment_sessions", ["status"], unique=False
    )
    op.create_index(
        op.f("ix_payment_sessions_user_id"), "payment_sessions", ["user_id"], unique=False
    )

    # Create payment_tokens table
    op.create_table(
        "payment_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("token", sa.String(length=100), nullable=False),
        sa.Column("token_expiry", sa.Date(), nullable=True),
        sa.Column("card_last_four", sa.String(length=4), nullable=True),
        sa.Column("low_profile_id", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_tokens_user_id"), "payment_tokens", ["user_id"], unique=False
    )

    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("plan_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
        sa.Column("current_period_starts_at", sa.DateTime(), nullable=True),
        sa.Column("current_period_ends_at", sa.DateTime(), nullable=True),
        sa.Column("next_charge_at", sa.DateTime(), nullable=True),
        sa.Column("grace_period_ends_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("payment_method", _jsonb(), nullable=True),
        sa.Column("payment_token_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("fail_count", sa.Integer(), nullable=False),
        sa.Column("contract_signed", sa.Boolean(), nullable=False),
        sa.Column("contract_signed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'trial', 'active', 'failed', 'suspended', "
            "'cancelled', 'expired')",
            name="valid_subscription_status",
        ),
        sa.CheckConstraint(
            "plan_type IN ('monthly', 'annual', 'vip')", name="valid_plan_type"
        ),
        sa.CheckConstraint("fail_count >= 0", name="non_negative_fail_count"),
        sa.ForeignKeyConstraint(
            ["payment_token_id"], ["payment_tokens.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index(
        "idx_subscriptions_status_next_charge",
        "subscriptions",
        ["status", "next_charge_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscriptions_next_charge_at"), "subscriptions", ["next_charge_at"], unique=False
    )
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"], unique=False)
    op.create_index(op.f("ix_subscriptions_user_id"), "subscriptions", ["user_id"], unique=False)

    # Create payment_logs table
    op.create_table(
        "payment_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("low_profile_id", sa.String(length=100), nullable=True),
        sa.Column("transaction_id", sa.String(length=100), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("plan_id", sa.String(length=20), nullable=True),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_data", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "payment_status IN ('completed', 'failed')", name="valid_payment_status"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("low_profile_id"),
    )
    op.create_index(
        op.f("ix_payment_logs_created_at"), "payment_logs", ["created_at"], unique=False
    )
    op.create_index(
        op.f("ix_payment_logs_payment_status"), "payment_logs", ["payment_status"], unique=False
    )
    op.create_index(op.f("ix_payment_logs_user_id"), "payment_logs", ["user_id"], unique=False)

    # Create payment_webhooks table
    op.create_table(
        "payment_webhooks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("webhook_type", sa.String(length=50), nullable=False),
        sa.Column("low_profile_id", sa.String(length=100), nullable=True),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False),
        sa.Column("processing_result", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_webhooks_created_at"), "payment_webhooks", ["created_at"], unique=False
    )
    op.create_index(
        op.f("ix_payment_webhooks_low_profile_id"),
        "payment_webhooks",
        ["low_profile_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_webhooks_processed"), "payment_webhooks", ["processed"], unique=False
    )

    # Create temp_registrations table
    op.create_table(
        "temp_registrations",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("registration_data", _jsonb(), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("plan_id", sa.String(length=20), nullable=True),
        sa.Column("payment_verified", sa.Boolean(), nullable=False),
        sa.Column("payment_details", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create subscription_cancellations table
    op.create_table(
        "subscription_cancellations",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscription_cancellations_subscription_id"),
        "subscription_cancellations",
        ["subscription_id"],
        unique=False,
    )

    # Create subscription_repair_logs table
    op.create_table(
        "subscription_repair_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("low_profile_id", sa.String(length=100), nullable=True),
        sa.Column("force_refresh", sa.Boolean(), nullable=False),
        sa.Column("result", sa.String(length=20), nullable=False),
        sa.Column("actions", _jsonb(), nullable=True),
        sa.Column("details", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create payment_recovery_logs table
    op.create_table(
        "payment_recovery_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("session_id", sa.String(length=100), nullable=True),
        sa.Column("error_info", _jsonb(), nullable=True),
        sa.Column("recovery_url", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create system_logs table
    op.create_table(
        "system_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("level", sa.String(length=10), nullable=False),
        sa.Column("function_name", sa.String(length=100), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_system_logs_created_at"), "system_logs", ["created_at"], unique=False)

    # Create subscription_events table
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", _jsonb(), nullable=False),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscription_events_correlation_id"),
        "subscription_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscription_events_created_at"),
        "subscription_events",
        ["created_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscription_events_subscription_id"),
        "subscription_events",
        ["subscription_id"],
        unique=False,
    )

    # Create reconciliation_status table
    op.create_table(
        "reconciliation_status",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("reconciliation_date", sa.Date(), nullable=False),
        sa.Column("gateway_total_cents", sa.BigInteger(), nullable=True),
        sa.Column("database_total_cents", sa.BigInteger(), nullable=True),
        sa.Column("discrepancy_cents", sa.BigInteger(), nullable=True),
        sa.Column("discrepancy_count", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("details", _jsonb(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reconciliation_date"),
    )

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"),
        "outbox_events",
        ["published"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    # Indexes are dropped with their tables
    op.drop_table("outbox_events")
    op.drop_table("reconciliation_status")
    op.drop_table("subscription_events")
    op.drop_table("system_logs")
    op.drop_table("payment_recovery_logs")
    op.drop_table("subscription_repair_logs")
    op.drop_table("subscription_cancellations")
    op.drop_table("temp_registrations")
    op.drop_table("payment_webhooks")
    op.drop_table("payment_logs")
    op.drop_table("subscriptions")
    op.drop_table("payment_tokens")
    op.drop_table("payment_sessions")
    op.drop_table("profiles")
