"""Background workers for scheduled and async processing."""
from .billing_worker import start_billing_worker
from .outbox_publisher import start_outbox_publisher
from .reconciliation_worker import start_reconciliation_worker
from .webhook_retry_worker import start_webhook_retry_worker

__all__ = [
    "start_billing_worker",
    "start_outbox_publisher",
    "start_reconciliation_worker",
    "start_webhook_retry_worker",
]
