"""
Payment reconciliation driver.

Three entry points share one protocol: ask ForumPay for the authoritative
status, normalize the answer, and merge it into the payment store.

- webhook callback: authenticated, upsert-with-defaults, one audit entry per call
- manual recheck: single stored payment
- pending sweep: batch of stale non-terminal payments, failures isolated per record
"""
import hmac
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from savopay_relay.config import Settings, get_settings
from savopay_relay.integrations.forumpay_client import ForumPayClient, ProviderError
from savopay_relay.monitoring.metrics import metrics
from savopay_relay.store import PaymentNotFoundError, PaymentStore, WebhookEventLog

from .normalizer import InvalidProviderResponse, normalize_check_response

logger = structlog.get_logger(__name__)

REQUIRED_CALLBACK_FIELDS = ("payment_id", "currency", "address")


class ReconciliationError(Exception):
    """Raised when a payment cannot be reconciled against the provider."""

    def __init__(self, message: str, payment_id: Optional[str] = None):
        super().__init__(message)
        self.payment_id = payment_id


@dataclass
class CallbackOutcome:
    """Result of one webhook delivery."""

    status: str
    http_status: int
    body: Dict[str, Any] = field(default_factory=dict)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ReconciliationDriver:
    """
    Drives the payment reconciliation protocol.

    Holds no locks of its own: every write is a single store operation,
    so concurrent webhooks, rechecks and sweeps for the same payment
    converge through the store's merge rules.
    """

    def __init__(
        self,
        store: PaymentStore,
        events: WebhookEventLog,
        provider: ForumPayClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation driver.

        Args:
            store: Payment record store
            events: Webhook audit log
            provider: ForumPay client
            settings: Optional settings (defaults to environment settings)
        """
        self.store = store
        self.events = events
        self.provider = provider
        self.settings = settings or get_settings()

    def token_is_valid(self, token: Optional[str]) -> bool:
        """Constant-time check of the callback token; an unset secret rejects everything."""
        expected = self.settings.webhook_token
        if not expected or not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))

    async def _fetch_update(
        self, payment_id: str, currency: Optional[str], address: Optional[str]
    ) -> Dict[str, Any]:
        """
        Query the provider and build the normalized update.

        Raises:
            ReconciliationError: On provider failure or unusable response
        """
        if not currency or not address:
            raise ReconciliationError(
                "Payment has no currency/address to check against", payment_id=payment_id
            )

        try:
            response = await self.provider.check_payment(payment_id, currency, address)
            update = normalize_check_response(response)
        except ProviderError as e:
            raise ReconciliationError(str(e), payment_id=payment_id) from e
        except InvalidProviderResponse as e:
            raise ReconciliationError(str(e), payment_id=payment_id) from e

        update["raw_json"] = dict(response)
        return update

    async def handle_callback(self, token: Optional[str], payload: Any) -> CallbackOutcome:
        """
        Process a ForumPay webhook delivery.

        Args:
            token: Value of the ``token`` query parameter
            payload: Decoded request body

        Returns:
            CallbackOutcome: Audit status, HTTP status and response body
        """
        start_time = time.time()
        body = dict(payload) if isinstance(payload, Mapping) else {}
        payment_id = _text(body.get("payment_id"))
        audit_payload = body if isinstance(payload, Mapping) else payload

        if not self.token_is_valid(token):
            outcome = CallbackOutcome("invalid_token", 403, {"error": "Invalid token"})
            error: Optional[str] = "Invalid token"
            logger.warning("webhook_invalid_token", payment_id=payment_id)
        else:
            missing = [name for name in REQUIRED_CALLBACK_FIELDS if not _text(body.get(name))]
            if not isinstance(payload, Mapping) or missing:
                outcome = CallbackOutcome(
                    "bad_request",
                    400,
                    {"error": "Missing fields", "need": list(REQUIRED_CALLBACK_FIELDS)},
                )
                error = "Missing fields: " + ", ".join(missing or REQUIRED_CALLBACK_FIELDS)
                logger.warning("webhook_bad_request", payment_id=payment_id, missing=missing)
            else:
                outcome, error = await self._apply_callback(body)

        await self.events.append(
            payment_id=payment_id,
            status=outcome.status,
            error=error,
            payload=audit_payload,
        )
        metrics.record_webhook_event(outcome.status, time.time() - start_time)
        return outcome

    async def _apply_callback(self, body: Dict[str, Any]) -> tuple[CallbackOutcome, Optional[str]]:
        payment_id = _text(body["payment_id"])
        currency = _text(body["currency"])
        address = _text(body["address"])

        try:
            update = await self._fetch_update(payment_id, currency, address)
            await self.store.upsert_on_create(
                {"payment_id": payment_id, "currency": currency, "address": address, **update}
            )
        except Exception as e:
            # Any failure is audited; the stored record is untouched unless the upsert committed.
            logger.error("webhook_processing_failed", payment_id=payment_id, error=str(e))
            metrics.record_reconciliation("webhook", "error")
            return (
                CallbackOutcome("error", 500, {"error": "Internal error", "detail": str(e)}),
                str(e),
            )

        logger.info(
            "webhook_updated",
            payment_id=payment_id,
            state=update.get("state"),
            confirmed=update.get("confirmed"),
        )
        metrics.record_reconciliation("webhook", "updated")
        return CallbackOutcome("updated", 200, {"ok": True}), None

    async def _reconcile_record(self, record: Mapping[str, Any], source: str) -> None:
        payment_id = record["payment_id"]
        try:
            update = await self._fetch_update(payment_id, record.get("currency"), record.get("address"))
            await self.store.apply_partial_update(payment_id, update)
        except Exception:
            metrics.record_reconciliation(source, "error")
            raise
        metrics.record_reconciliation(source, "updated")

    async def recheck(self, payment_id: str) -> Dict[str, Any]:
        """
        Recheck one stored payment against the provider.

        Args:
            payment_id: Payment to recheck

        Returns:
            Dict[str, Any]: ``ok``, ``state``, ``confirmed`` and ``crypto_amount``
            as stored after the update

        Raises:
            PaymentNotFoundError: If the payment is unknown
            ReconciliationError: If the provider check fails
        """
        record = await self.store.get(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)

        await self._reconcile_record(record, source="recheck")

        stored = await self.store.get(payment_id) or record
        logger.info(
            "payment_rechecked",
            payment_id=payment_id,
            state=stored.get("state"),
            confirmed=stored.get("confirmed"),
        )
        return {
            "ok": True,
            "state": stored.get("state"),
            "confirmed": stored.get("confirmed"),
            "crypto_amount": stored.get("crypto_amount"),
        }

    async def sweep_pending(
        self, min_age_seconds: Optional[int] = None, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Recheck stale pending payments.

        One failing record is logged and counted; the rest of the batch
        still runs.

        Args:
            min_age_seconds: Minimum age of a pending payment
            limit: Maximum number of payments to recheck

        Returns:
            Dict[str, Any]: ``checked``, ``updated``, ``failed`` and per-record ``failures``
        """
        if min_age_seconds is None:
            min_age_seconds = self.settings.pending_min_age_seconds
        if limit is None:
            limit = self.settings.sweep_batch_size

        start_time = time.time()
        pending = await self.store.list_stale_pending(min_age_seconds, limit)
        updated = 0
        failures: List[Dict[str, str]] = []

        for record in pending:
            payment_id = record["payment_id"]
            try:
                await self._reconcile_record(record, source="sweep")
                updated += 1
            except Exception as e:
                logger.error(
                    "sweep_record_failed",
                    payment_id=payment_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                failures.append({"payment_id": payment_id, "error": str(e)})

        duration = time.time() - start_time
        metrics.record_sweep(len(pending), duration)
        logger.info(
            "sweep_completed",
            checked=len(pending),
            updated=updated,
            failed=len(failures),
            duration_seconds=duration,
        )
        return {
            "checked": len(pending),
            "updated": updated,
            "failed": len(failures),
            "failures": failures,
        }

    async def ensure_print_string(self, record: Mapping[str, Any]) -> str:
        """
        Return the receipt print string, fetching it from the provider if missing.

        Failures are logged and yield an empty string so a receipt request
        never fails because the provider is down.
        """
        print_string = record.get("print_string") or ""
        if print_string or not record.get("currency") or not record.get("address"):
            return print_string

        payment_id = record["payment_id"]
        try:
            await self._reconcile_record(record, source="receipt")
            refreshed = await self.store.get(payment_id)
        except Exception as e:
            logger.warning("print_string_refresh_failed", payment_id=payment_id, error=str(e))
            return ""

        return (refreshed or {}).get("print_string") or ""
