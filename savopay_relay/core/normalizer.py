"""
Status normalizer for ForumPay CheckPayment responses.

Provider versions disagree on field names (``amount`` vs ``payment`` vs
``crypto_amount``) and on types (booleans, ints and strings for the
confirmation flag). Everything is mapped onto one canonical update.

Fields the provider did not send are left out of the update instead of
being set to null, so a sparse response cannot erase known values.
"""
from collections.abc import Mapping
from typing import Any, Dict, Tuple

from savopay_relay.store.base import coerce_confirmed

# canonical field -> provider aliases, first non-empty wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "status": ("status", "state"),
    "state": ("state",),
    "confirmed_time": ("confirmed_time",),
    "crypto_amount": ("amount", "payment", "crypto_amount"),
    "print_string": ("print_string",),
    "amount_exchange": ("amount_exchange",),
    "network_processing_fee": ("network_processing_fee",),
    "last_transaction_time": ("last_transaction_time",),
    "invoice_date": ("invoice_date",),
    "payer_id": ("payer_id",),
}


class InvalidProviderResponse(ValueError):
    """Raised when a provider response cannot be turned into an update."""

    pass


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _first_present(response: Mapping, aliases: Tuple[str, ...]) -> Any:
    for alias in aliases:
        value = response.get(alias)
        if not _is_empty(value):
            return value
    return None


def normalize_check_response(response: Any) -> Dict[str, Any]:
    """
    Map a CheckPayment response onto the canonical update.

    Args:
        response: Parsed provider response

    Returns:
        Dict[str, Any]: Update holding only the fields the provider reported

    Raises:
        InvalidProviderResponse: If the response is not a JSON object,
            is a raw-text fallback, or reports a provider error
    """
    if not isinstance(response, Mapping):
        raise InvalidProviderResponse(f"Expected a JSON object, got {type(response).__name__}")

    if response.get("err"):
        raise InvalidProviderResponse(f"Provider reported an error: {response['err']}")

    if set(response) == {"raw"}:
        raise InvalidProviderResponse("Provider response was not JSON")

    update: Dict[str, Any] = {}
    for field, aliases in FIELD_ALIASES.items():
        value = _first_present(response, aliases)
        if value is None:
            continue
        update[field] = value if isinstance(value, str) else str(value)

    if not _is_empty(response.get("confirmed")):
        update["confirmed"] = coerce_confirmed(response["confirmed"])

    return update
