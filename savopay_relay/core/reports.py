"""
Daily report and CSV export helpers.

CSV is written with the stdlib ``csv`` module (minimal quoting), so
commas, quotes and newlines inside provider strings are escaped.
"""
import csv
import io
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from savopay_relay.store import PaymentStore, ReportingStore

# raw_json is left out of exports, it is the full provider payload
CSV_COLUMNS: Sequence[str] = (
    "payment_id",
    "order_id",
    "pos_id",
    "invoice_amount",
    "invoice_currency",
    "currency",
    "address",
    "crypto_amount",
    "status",
    "state",
    "confirmed",
    "confirmed_time",
    "amount_exchange",
    "network_processing_fee",
    "payer_id",
    "customer_email",
    "created_at",
    "updated_at",
)


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def payments_to_csv(rows: Iterable[Mapping[str, Any]], columns: Sequence[str] = CSV_COLUMNS) -> str:
    """Render payment rows as CSV with a header line."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in columns])
    return buffer.getvalue()


def parse_report_date(value: Optional[str], today: Optional[date] = None) -> date:
    """
    Parse a ``YYYY-MM-DD`` report date, defaulting to today (UTC).

    Raises:
        ValueError: If the date is malformed
    """
    if not value:
        return today or datetime.now(timezone.utc).date()
    return date.fromisoformat(value)


async def build_daily_report(
    reporting: ReportingStore, store: PaymentStore, day: date, limit: Optional[int] = None
) -> Dict[str, Any]:
    """
    Build the daily report: aggregate counts plus the recent payment listing.

    Returns:
        Dict[str, Any]: ``date``, ``summary`` and ``rows``
    """
    summary = await reporting.daily_summary(day)
    rows: List[Dict[str, Any]] = await store.list(limit)
    return {"date": day.isoformat(), "summary": summary, "rows": rows}


def daily_summary_csv(day: date, summary: Mapping[str, int]) -> str:
    """Render the daily summary as ``date,confirmed,total`` CSV."""
    return payments_to_csv(
        [{"date": day.isoformat(), "confirmed": summary["confirmed_count"], "total": summary["total_count"]}],
        columns=("date", "confirmed", "total"),
    )
