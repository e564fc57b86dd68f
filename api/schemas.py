"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class OpenSessionRequest(BaseModel):
    """Request schema for opening a hosted payment session."""

    plan_id: str = Field(..., description="Plan: monthly, annual or vip")
    user_id: Optional[UUID] = Field(default=None, description="Paying user")
    registration_id: Optional[str] = Field(
        default=None, description="Pending registration paying before sign-up"
    )
    anonymous_data: Optional[Dict[str, Any]] = Field(
        default=None, description="Buyer details when there is no account"
    )

    @field_validator("plan_id")
    @classmethod
    def validate_plan(cls, v: str) -> str:
        """Normalize plan id."""
        return v.strip().lower()

    @model_validator(mode="after")
    def require_payer(self) -> "OpenSessionRequest":
        """Exactly who pays must be known."""
        if not (self.user_id or self.registration_id or self.anonymous_data):
            raise ValueError("One of user_id, registration_id or anonymous_data is required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"plan_id": "monthly", "user_id": "123e4567-e89b-12d3-a456-426614174000"},
                {"plan_id": "annual", "registration_id": "reg_8f2c1a"},
            ]
        }
    }


class OpenSessionResponse(BaseModel):
    """Response schema for an opened session."""

    session_id: UUID = Field(..., description="Payment session ID")
    low_profile_code: str = Field(..., description="Cardcom LowProfile code")
    url: Optional[str] = Field(default=None, description="Hosted payment page URL")
    reference: str = Field(..., description="ReturnValue sent to Cardcom")
    operation_type: str = Field(..., description="payment or token_only")
    expires_at: datetime = Field(..., description="Session expiry (UTC)")


class StatusCheckRequest(BaseModel):
    """Request schema for a status check."""

    low_profile_code: str = Field(..., min_length=1, description="Cardcom LowProfile code")
    attempt: int = Field(default=0, ge=0, description="Client poll attempt number")
    operation_type: Optional[str] = Field(default=None, description="payment or token_only")


class StatusCheckResponse(BaseModel):
    """Response schema for a status check."""

    status: str = Field(..., description="success, processing, failed or timeout")
    message: str = Field(..., description="Human readable status")
    transaction_id: Optional[str] = Field(default=None, description="Cardcom transaction ID")
    token: Optional[str] = Field(default=None, description="Card token (token_only sessions)")
    error: Optional[str] = Field(default=None, description="Failure reason")
    timeout: bool = Field(default=False, description="Whether the session timed out")


class RecoveryEmailRequest(BaseModel):
    """Request schema for a payment recovery email."""

    email: str = Field(..., min_length=3, description="Recipient")
    session_id: Optional[str] = Field(default=None, description="Failed payment session")
    recovery_url: Optional[str] = Field(default=None, description="Link to resume checkout")
    error_info: Optional[Dict[str, Any]] = Field(default=None, description="Checkout error")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Normalize and sanity-check the address."""
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class RecoveryEmailResponse(BaseModel):
    sent: bool
    recovery_url: str
    expires_at: datetime


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    success: bool = Field(..., description="Whether the payment was settled")
    message: Optional[str] = Field(default=None, description="Status message")


class SubscriptionResponse(BaseModel):
    """Response schema for a subscription."""

    id: UUID
    user_id: UUID
    plan_type: str
    status: str
    has_access: bool
    trial_ends_at: Optional[datetime] = None
    current_period_ends_at: Optional[datetime] = None
    next_charge_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment_method: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class CancelSubscriptionRequest(BaseModel):
    """Request schema for cancelling a subscription."""

    user_id: UUID = Field(..., description="Owner of the subscription")
    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")
    feedback: Optional[str] = Field(default=None, max_length=2000, description="Free text")


class ReactivateSubscriptionRequest(BaseModel):
    user_id: UUID = Field(..., description="Owner of the subscription")


class SubscriptionActionResponse(BaseModel):
    success: bool
    already_cancelled: bool = False
    access_until: Optional[datetime] = None
    email_sent: bool = False


class ReprocessWebhooksRequest(BaseModel):
    """Request schema for retrying unprocessed webhooks."""

    max_retries: int = Field(default=3, ge=1, le=10)
    age_hours: int = Field(default=48, ge=1, le=720)
    limit: int = Field(default=20, ge=1, le=200)


class RepairSubscriptionRequest(BaseModel):
    """Request schema for a manual subscription repair."""

    email: Optional[str] = Field(default=None, description="User email")
    user_id: Optional[UUID] = Field(default=None, description="User ID")
    low_profile_id: Optional[str] = Field(default=None, description="LowProfile to rebuild from")
    force_refresh: bool = Field(default=False, description="Reactivate token and subscription")

    @model_validator(mode="after")
    def require_user(self) -> "RepairSubscriptionRequest":
        if not (self.email or self.user_id):
            raise ValueError("Either email or user_id is required")
        return self


class RepairSubscriptionResponse(BaseModel):
    success: bool
    result: str
    actions: List[str]
    user_id: UUID
    subscription_status: Optional[str] = None


class PaymentFailureRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the charge failed")


class ReconciliationRequest(BaseModel):
    reconciliation_date: Optional[date] = Field(
        default=None, description="Day to reconcile (defaults to yesterday)"
    )
    repair: bool = Field(default=False, description="Settle payments missing from the database")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    date: str = Field(..., description="Reconciliation date")
    database_total_cents: int = Field(..., description="Total from payment logs")
    database_count: int = Field(..., description="Count from payment logs")
    gateway_total_cents: int = Field(..., description="Total from Cardcom")
    gateway_count: int = Field(..., description="Count from Cardcom")
    discrepancy_cents: int = Field(..., description="Amount discrepancy")
    discrepancy_count: int = Field(..., description="Number of discrepancies")
    discrepancies: List[Dict[str, Any]] = Field(..., description="Specific discrepancies")
    gateway_errors: List[Dict[str, Any]] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    service: Optional[str] = Field(default=None, description="Service name")
