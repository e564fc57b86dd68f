"""Database package for subscription billing."""
from .connection import get_db, init_db
from .models import (
    Base,
    OutboxEvent,
    PaymentLog,
    PaymentSession,
    PaymentToken,
    PaymentWebhook,
    ReconciliationStatus,
    Subscription,
    SubscriptionEvent,
    UserProfile,
)

__all__ = [
    "Base",
    "OutboxEvent",
    "PaymentLog",
    "PaymentSession",
    "PaymentToken",
    "PaymentWebhook",
    "ReconciliationStatus",
    "Subscription",
    "SubscriptionEvent",
    "UserProfile",
    "get_db",
    "init_db",
]
