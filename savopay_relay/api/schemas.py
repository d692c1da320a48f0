"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class StartPaymentRequest(BaseModel):
    """Request schema for starting a payment at ForumPay."""

    invoice_amount: str = Field(default="100.00", description="Invoice amount in fiat")
    invoice_currency: str = Field(default="USD", description="Invoice fiat currency")
    currency: str = Field(default="USDT", description="Crypto currency to pay with")
    payer_id: str = Field(default="walk-in", description="Payer identifier")
    customer_email: Optional[str] = Field(default=None, description="Receipt email address")

    @field_validator("invoice_currency", "currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("invoice_amount", mode="before")
    @classmethod
    def amount_as_text(cls, v: Any) -> str:
        """Accept numbers as well as strings."""
        return str(v)

    @field_validator("customer_email")
    @classmethod
    def empty_email_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "invoice_amount": "25.00",
                    "invoice_currency": "USD",
                    "currency": "USDT",
                    "payer_id": "walk-in",
                    "customer_email": "customer@example.com",
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Stored payment record."""

    payment_id: str = Field(..., description="ForumPay payment identifier")
    order_id: Optional[str] = None
    pos_id: Optional[str] = None
    invoice_amount: Optional[str] = None
    invoice_currency: Optional[str] = None
    currency: Optional[str] = None
    address: Optional[str] = None
    amount: Optional[str] = None
    crypto_amount: Optional[str] = None
    status: Optional[str] = None
    state: Optional[str] = None
    confirmed: Optional[int] = Field(default=None, description="1 once the provider confirmed")
    confirmed_time: Optional[str] = None
    amount_exchange: Optional[str] = None
    network_processing_fee: Optional[str] = None
    last_transaction_time: Optional[str] = None
    invoice_date: Optional[str] = None
    payer_id: Optional[str] = None
    customer_email: Optional[str] = None
    print_string: Optional[str] = None
    raw_json: Optional[Any] = Field(default=None, description="Last provider payload")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RecheckResponse(BaseModel):
    """Response schema for a manual recheck."""

    ok: bool = Field(..., description="Recheck applied")
    state: Optional[str] = Field(default=None, description="Provider state")
    confirmed: Optional[int] = Field(default=None, description="Stored confirmation flag")
    crypto_amount: Optional[str] = Field(default=None, description="Crypto amount")


class SweepFailure(BaseModel):
    payment_id: str
    error: str


class SweepResponse(BaseModel):
    """Response schema for an admin-triggered pending sweep."""

    ok: bool = Field(default=True)
    checked: int = Field(..., description="Pending payments examined")
    updated: int = Field(..., description="Payments successfully rechecked")
    failed: int = Field(..., description="Payments that failed to recheck")
    failures: List[SweepFailure] = Field(default_factory=list)


class ReceiptResponse(BaseModel):
    """Printable receipt text for a payment."""

    payment_id: str
    print_string: str = Field(..., description="Receipt text, empty while unavailable")


class DailySummary(BaseModel):
    confirmed_count: int
    total_count: int


class DailyReportResponse(BaseModel):
    """Response schema for the daily report."""

    date: str = Field(..., description="Report day (YYYY-MM-DD, UTC)")
    summary: DailySummary
    rows: List[PaymentResponse]


class WebhookEventResponse(BaseModel):
    id: int
    payment_id: Optional[str] = None
    status: str
    error: Optional[str] = None
    payload: Optional[Any] = None
    received_at: datetime


class WebhookEventsResponse(BaseModel):
    """Recent webhook deliveries, newest first."""

    events: List[WebhookEventResponse]


class SupportedAsset(BaseModel):
    currency: str = Field(..., description="Crypto currency symbol")
    networks: List[str] = Field(default_factory=list, description="Supported networks")


class SupportedAssetsResponse(BaseModel):
    assets: List[SupportedAsset]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = Field(default=None, description="Status message")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error message")
    detail: Optional[Any] = Field(default=None, description="Additional error details")
