"""
ForumPay Payment API client.

Implements:
- Basic-auth form POSTs to the Payment API (CheckPayment, StartPayment)
- Bounded per-call timeout so a slow provider cannot stall a sweep
- Retry with exponential backoff on transport errors only
- JSON parsing with a raw-text fallback for HTML error pages
"""
import json
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from savopay_relay.config import Settings, get_settings
from savopay_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderError(Exception):
    """Raised when a ForumPay call fails or returns a non-2xx status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            status_code: HTTP status returned by ForumPay, if any
            body: Parsed response body, if any
        """
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def parse_body(text: str) -> Any:
    """Parse a response body as JSON, falling back to ``{"raw": text}``."""
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


class ForumPayClient:
    """
    Async wrapper for the ForumPay Payment API.

    The underlying httpx.AsyncClient is created lazily and shared by
    every request handler and the background sweep.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize ForumPay client.

        Args:
            settings: Optional settings (defaults to environment settings)
            http_client: Optional preconfigured httpx client (tests inject
                one with a MockTransport)
        """
        self.settings = settings or get_settings()
        self._client = http_client

        logger.info(
            "forumpay_client_initialized",
            base_url=self.settings.forumpay_base_url,
            pos_id=self.settings.forumpay_pos_id,
            sandbox=self.settings.is_sandbox,
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.forumpay_base_url,
                auth=(self.settings.forumpay_pay_user, self.settings.forumpay_pay_secret),
                timeout=self.settings.provider_timeout_seconds,
            )
        return self._client

    async def _post_form(self, operation: str, path: str, data: Dict[str, str]) -> Any:
        """
        POST a form to the Payment API.

        Returns:
            Parsed JSON body, or ``{"raw": text}`` when the body is not JSON

        Raises:
            ProviderError: On transport failure or non-2xx status
        """
        start_time = time.time()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(max(1, self.settings.provider_retry_attempts)),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True,
            ):
                with attempt:
                    response = await self._http().post(path, data=data)
        except httpx.TransportError as e:
            metrics.record_provider_call(operation, "transport_error", time.time() - start_time)
            logger.error("forumpay_transport_error", operation=operation, error=str(e))
            raise ProviderError(f"{operation} transport error: {e}") from e

        body = parse_body(response.text)
        duration = time.time() - start_time
        metrics.record_provider_call(operation, str(response.status_code), duration)

        logger.info(
            "forumpay_response",
            operation=operation,
            status_code=response.status_code,
            duration_seconds=duration,
        )

        if not response.is_success:
            raise ProviderError(
                f"{operation} failed: {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        return body

    async def check_payment(self, payment_id: str, currency: str, address: str) -> Any:
        """
        Ask ForumPay for the authoritative status of a payment.

        Args:
            payment_id: ForumPay payment identifier
            currency: Crypto currency of the payment
            address: Receiving address assigned by ForumPay

        Returns:
            Parsed CheckPayment response
        """
        return await self._post_form(
            "check_payment",
            "/pay/v2/CheckPayment/",
            {
                "pos_id": self.settings.forumpay_pos_id,
                "payment_id": payment_id,
                "currency": currency,
                "address": address,
            },
        )

    def callback_url(self) -> str:
        """Callback URL with the shared webhook token attached."""
        base = self.settings.forumpay_callback_url
        if not base:
            return ""
        return str(httpx.URL(base).copy_merge_params({"token": self.settings.webhook_token}))

    async def start_payment(
        self,
        order_id: str,
        invoice_amount: str,
        invoice_currency: str,
        currency: str,
        payer_id: str,
        payer_ip_address: str,
    ) -> Any:
        """
        Start a payment at ForumPay.

        Returns:
            Parsed StartPayment response (payment_id, address, amount, ...)
        """
        data = {
            "pos_id": self.settings.forumpay_pos_id,
            "invoice_amount": invoice_amount,
            "invoice_currency": invoice_currency,
            "currency": currency,
            "payer_ip_address": payer_ip_address,
            "payer_id": payer_id,
            "order_id": order_id,
        }
        callback_url = self.callback_url()
        if callback_url:
            data["callback_url"] = callback_url

        return await self._post_form("start_payment", "/pay/v2/StartPayment/", data)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
