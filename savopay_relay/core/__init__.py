"""Status normalization, reconciliation and reporting."""
from .assets import DEFAULT_ASSETS, parse_supported_assets, supported_assets
from .normalizer import InvalidProviderResponse, normalize_check_response
from .reconciliation import CallbackOutcome, ReconciliationDriver, ReconciliationError
from .reports import build_daily_report, daily_summary_csv, parse_report_date, payments_to_csv

__all__ = [
    "DEFAULT_ASSETS",
    "CallbackOutcome",
    "InvalidProviderResponse",
    "ReconciliationDriver",
    "ReconciliationError",
    "build_daily_report",
    "daily_summary_csv",
    "normalize_check_response",
    "parse_report_date",
    "parse_supported_assets",
    "payments_to_csv",
    "supported_assets",
]
