"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    PaymentResponse,
    RecheckResponse,
    StartPaymentRequest,
    SweepResponse,
)

__all__ = [
    "app",
    "create_app",
    "PaymentResponse",
    "RecheckResponse",
    "StartPaymentRequest",
    "SweepResponse",
]
