"""FastAPI application and routes."""
from .main import app
from .schemas import (
    OpenSessionRequest,
    OpenSessionResponse,
    StatusCheckRequest,
    StatusCheckResponse,
    SubscriptionResponse,
)

__all__ = [
    "app",
    "OpenSessionRequest",
    "OpenSessionResponse",
    "StatusCheckRequest",
    "StatusCheckResponse",
    "SubscriptionResponse",
]
