"""Export NetSuite Purchase Orders to the Journal Entries workbook.

Each PO becomes one journal row (first expense line, else first item line),
cached in `journal_purchase_orders` so later runs only fetch new POs.

The financial year runs September to August: a PO dated 2025-10-03 lands in
`2025/2026`, period 2, `October`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from src.finance_sync.integrations.google_sheets import GoogleSheetsClient
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteRestClient
from src.finance_sync.store.db import session_scope, utcnow
from src.finance_sync.store.lookups import ReferenceLookup
from src.finance_sync.store.models import JournalPurchaseOrder

logger = logging.getLogger(__name__)

JOURNAL_SHEET = "PO"
PO_SEARCH_FIELDS = [
    "id",
    "tranid",
    "trandate",
    "entity",
    "memo",
    "foreigntotal AS total",
    "currency",
    "exchangerate",
    "status",
]
JOURNAL_COLUMNS = (
    "department_code",
    "subcode",
    "transaction_date",
    "transaction_id",
    "transaction_type",
    "external_reference",
    "description",
    "financial_year",
    "period_number",
    "period_name",
    "myr_amount",
    "currency_amount",
    "currency_code",
    "exchange_rate",
    "finance_staff",
)

_DEPT_CODE = re.compile(r"^([A-Z]{2,3}-[A-Z0-9]+)(?:\s|:|$)")
_DEPT_NUMBERED = re.compile(r"^([A-Z]+)-[^:]+:\s*(\d+)")
_LEADING_DIGITS = re.compile(r"^(\d+)")


@dataclass(slots=True)
class JournalExportOptions:
    from_date: str | None = None
    to_date: str | None = None
    limit: int = 1000
    append: bool = False
    force_refresh: bool = False
    clear_cache: bool = False


@dataclass(slots=True)
class JournalExportResult:
    fetched: int = 0
    processed: int = 0
    rows_written: int = 0
    failed: int = 0
    appended: bool = False


def extract_department_prefix(ref_name: str | None) -> str:
    """'JB-C030 Something' -> 'JB-C030'; 'JB-Teaching : 1234' -> 'JB-1234'."""

    if not ref_name:
        return ""
    m = _DEPT_CODE.match(ref_name)
    if m:
        return m.group(1)
    m = _DEPT_NUMBERED.match(ref_name)
    if m:
        return f"{m.group(1)}-{m.group(2)}"
    if ":" in ref_name:
        return ref_name.split(":", 1)[0].strip()
    if " " in ref_name:
        return ref_name.split(" ", 1)[0].strip()
    return ref_name


def extract_account_number(account_ref: str | None) -> str:
    m = _LEADING_DIGITS.match(account_ref or "")
    return m.group(1) if m else ""


def financial_period(tran_date: str | None) -> tuple[str, str, int | str, str]:
    """(transaction_date, financial_year, period_number, period_name); blanks when unparseable."""

    if not tran_date:
        return "", "", "", ""
    try:
        parsed = _parse_tran_date(tran_date)
    except ValueError:
        logger.warning("Failed to parse transaction date: %s", tran_date)
        return "", "", "", ""

    year, month = parsed.year, parsed.month
    financial_year = f"{year}/{year + 1}" if month >= 9 else f"{year - 1}/{year}"
    period = month - 8 if month >= 9 else month + 4
    return parsed.isoformat(), financial_year, period, parsed.strftime("%B")


def _parse_tran_date(value: str) -> date:
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%d/%m/%Y", "%m/%d/%Y", "%d-%b-%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date: {value}")


def myr_amount(amount: Any, exchange_rate: Any) -> float:
    try:
        amount_f = float(amount or 0)
        rate_f = float(exchange_rate or 0)
    except (TypeError, ValueError):
        return 0.0
    if not amount_f or not rate_f:
        return 0.0
    return round(amount_f * rate_f, 2)


def suiteql_date_filter(from_date: str | None, to_date: str | None) -> str | None:
    """SuiteQL `TO_DATE` bounds on trandate for YYYY-MM-DD inputs."""

    conditions = []
    for op, value in ((">=", from_date), ("<=", to_date)):
        if value:
            d = datetime.strptime(value, "%Y-%m-%d").date()
            conditions.append(f"trandate {op} TO_DATE('{d.month}/{d.day}/{d.year}', 'MM/DD/YYYY')")
    return " AND ".join(conditions) or None


class JournalTransformer:
    """Turns full PO records into journal rows; item lookups are cached per run."""

    def __init__(self, *, client: NetSuiteRestClient, lookup: ReferenceLookup) -> None:
        self._client = client
        self._lookup = lookup
        self._item_cache: dict[str, dict[str, Any] | None] = {}

    @property
    def cached_items(self) -> int:
        return len(self._item_cache)

    def _item_expense_account(self, item_id: str, po_id: str) -> str:
        if item_id not in self._item_cache:
            try:
                self._item_cache[item_id] = self._client.get_item(item_id)
            except RuntimeError as e:
                logger.warning("Failed to fetch item details for item %s (PO %s): %s", item_id, po_id, e)
                self._item_cache[item_id] = None
        details = self._item_cache[item_id] or {}
        return (details.get("expenseAccount") or {}).get("refName") or ""

    def transform(self, full_po: dict[str, Any], basic_po: dict[str, Any]) -> dict[str, Any]:
        po_id = full_po.get("tranId") or basic_po.get("tranid") or ""
        exchange_rate = full_po.get("exchangeRate") or basic_po.get("exchangerate") or 1
        currency = full_po.get("currency") or {}
        currency_id = currency.get("id") or currency.get("internalId") or basic_po.get("currency")
        currency_name = currency.get("refName") or full_po.get("currencyName") or ""
        memo = full_po.get("memo") or basic_po.get("memo") or ""
        total = full_po.get("total") or 0
        transaction_date, financial_year, period_number, period_name = financial_period(
            full_po.get("tranDate") or basic_po.get("trandate")
        )

        row: dict[str, Any] = {
            "department_code": "",
            "subcode": "",
            "transaction_date": transaction_date,
            "transaction_id": po_id,
            "transaction_type": "Purchase Order",
            "external_reference": po_id,
            "description": memo or f"PO {po_id} (no line items)",
            "financial_year": financial_year,
            "period_number": period_number,
            "period_name": period_name,
            "myr_amount": myr_amount(total, exchange_rate),
            "currency_amount": total,
            "currency_code": self._lookup.currency_code_for(
                str(currency_id) if currency_id else None, currency_name
            ),
            "exchange_rate": exchange_rate,
            "finance_staff": "",
        }

        expense_lines = (full_po.get("expense") or {}).get("items") or []
        item_lines = (full_po.get("item") or {}).get("items") or []
        if expense_lines:
            line = expense_lines[0]
            account_ref = (line.get("account") or {}).get("refName") or ""
            line_memo = line.get("memo") or memo
        elif item_lines:
            line = item_lines[0]
            item_id = (line.get("item") or {}).get("id")
            account_ref = self._item_expense_account(str(item_id), po_id) if item_id else ""
            line_memo = line.get("description") or memo
        else:
            logger.warning("PO %s has no expense or item lines", po_id)
            return row

        # Amounts use the PO total, not the first line.
        row["department_code"] = extract_department_prefix((line.get("department") or {}).get("refName"))
        row["subcode"] = extract_account_number(account_ref)
        row["description"] = line_memo or f"PO {po_id}"
        return row


def _parse_last_modified(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse lastModifiedDate %s", value)
        return None


def cache_journal_row(
    session: Session, po_id: str, row: dict[str, Any], last_modified: datetime | None
) -> JournalPurchaseOrder:
    entry = session.scalars(select(JournalPurchaseOrder).where(JournalPurchaseOrder.po_id == po_id)).first()
    if entry is None:
        entry = JournalPurchaseOrder(po_id=po_id)
        session.add(entry)
    entry.tran_id = row["transaction_id"]
    entry.transaction_date = date.fromisoformat(row["transaction_date"]) if row["transaction_date"] else None
    entry.department_code = row["department_code"]
    entry.subcode = row["subcode"]
    entry.amount = row["currency_amount"]
    entry.currency_code = row["currency_code"]
    entry.memo = row["description"]
    entry.full_data = row
    entry.netsuite_last_modified = last_modified
    entry.processed_at = utcnow()
    session.flush()
    return entry


def journal_sheet_row(row: dict[str, Any]) -> list[Any]:
    return [row.get(key, "") if row.get(key) is not None else "" for key in JOURNAL_COLUMNS]


def export_purchase_orders(
    client: NetSuiteRestClient,
    sheets: GoogleSheetsClient,
    factory: sessionmaker,
    options: JournalExportOptions,
) -> JournalExportResult:
    result = JournalExportResult()

    with session_scope(factory) as session:
        if options.clear_cache:
            session.execute(delete(JournalPurchaseOrder))
            logger.info("Cleared cached journal POs")
        cached_ids: set[str] = set()
        if not options.force_refresh:
            cached_ids = set(session.scalars(select(JournalPurchaseOrder.po_id)))
            if cached_ids:
                logger.info("Found %s cached PO(s) in database", len(cached_ids))

    found = client.search_purchase_orders(
        PO_SEARCH_FIELDS, suiteql_date_filter(options.from_date, options.to_date), options.limit
    )
    result.fetched = len(found)
    if not found:
        logger.warning("No Purchase Orders found matching the criteria")
        return result

    pending = [po for po in found if options.force_refresh or str(po.get("id")) not in cached_ids]
    if not pending:
        logger.info("All POs already cached - nothing new to process")
        return result

    rows: list[dict[str, Any]] = []
    with session_scope(factory) as session:
        transformer = JournalTransformer(
            client=client, lookup=ReferenceLookup(session, is_sandbox=client.is_sandbox)
        )
        for po in pending:
            po_id = str(po.get("id"))
            try:
                full_po = client.get_purchase_order(po_id)
                row = transformer.transform(full_po, po)
            except RuntimeError as e:
                logger.warning("Failed to process PO ID %s: %s", po_id, e)
                result.failed += 1
                continue
            cache_journal_row(session, po_id, row, _parse_last_modified(full_po.get("lastModifiedDate")))
            rows.append(row)
            result.processed += 1
        if transformer.cached_items:
            logger.info("Items cached: %s", transformer.cached_items)

    sheet_data = [journal_sheet_row(row) for row in rows]
    result.appended = options.append or bool(cached_ids)
    if result.appended:
        sheets.append_to_sheet(JOURNAL_SHEET, sheet_data)
    else:
        sheets.clear_range(JOURNAL_SHEET, "A2:O")
        sheets.update_range(JOURNAL_SHEET, "A2", sheet_data)
    result.rows_written = len(sheet_data)
    logger.info(
        "Journal export: fetched=%s processed=%s written=%s failed=%s",
        result.fetched,
        result.processed,
        result.rows_written,
        result.failed,
    )
    return result
