"""Reconcile budget spend from the finance workbook into Kissflow.

Goals
- Import one period's transactions from the `Others` and `PO` tabs into the
  local ledger, once per (transaction id, tab).
- Add each department's unsynced total onto its Kissflow `Budget_Spent`.
- Keep a snapshot per update so a period can be audited or replayed.

Flow:

    Sheets (Others, PO) -> budget_sync_transactions
        -> aggregate by department -> Kissflow Budgets dataset
        -> mark synced + budget_sync_snapshots
"""

from __future__ import annotations

import calendar
import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.finance_sync.integrations.google_sheets import GoogleSheetsClient, cell
from src.finance_sync.integrations.kissflow_client import KissflowClient
from src.finance_sync.store import budget_repo
from src.finance_sync.store.db import session_scope
from src.finance_sync.store.models import BudgetSyncTransaction

logger = logging.getLogger(__name__)

SOURCE_SHEETS = ("Others", "PO")
UPDATE_PAUSE_SECONDS = 0.2

COLUMN_MAP = {
    "department_code": "Department Code (BI)",
    "subcode": "Subcode (GL)",
    "transaction_date": "Transaction Date",
    "transaction_id": "Transaction ID",
    "transaction_type": "Transaction Type",
    "external_reference": "External Reference",
    "description": "Description",
    "financial_year": "Financial Year",
    "period_number": "Period Number",
    "period_name": "Period Name",
    "myr_amount": "MYR Amount",
    "currency_amount": "Currency Amount",
    "currency_code": "Currency Code",
    "exchange_rate": "ExchangeRate",
    "finance_staff": "Finance Staff",
    "invoice_id": "InvoiceID",
}

REQUIRED_COLUMNS = ("department_code", "transaction_id", "financial_year", "period_number", "myr_amount")

_DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d", "%m/%d/%Y", "%d-%m-%Y")
_LEADING_INT = re.compile(r"^\s*(-?\d+)")


@dataclass(slots=True)
class BudgetSyncOptions:
    month: int
    year: int | None = None
    sheet_id: str | None = None
    dry_run: bool = False
    force: bool = False
    import_only: bool = False

    def validate(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError("Month must be between 1 and 12")


@dataclass(slots=True)
class BudgetSyncResult:
    imported: dict[str, int]
    departments: int = 0
    updated: int = 0
    not_found: int = 0
    errors: int = 0
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.errors == 0


def parse_amount(value: str | None) -> float | None:
    """'RM 1,234.50' -> 1234.5; blank or non-numeric -> None."""

    if value is None or value == "":
        return None
    cleaned = re.sub(r"[^\d.\-]", "", value)
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def leading_int(value: str | None) -> int | None:
    """'2025/2026' -> 2025."""

    m = _LEADING_INT.match(value or "")
    return int(m.group(1)) if m else None


def map_column_indexes(headers: list[str]) -> dict[str, int]:
    stripped = [str(h).strip() for h in headers]
    return {key: stripped.index(name) for key, name in COLUMN_MAP.items() if name in stripped}


def _row_to_transaction(
    row: list[Any], columns: dict[str, int], sheet_name: str, year: int, period: int
) -> BudgetSyncTransaction:
    def value(key: str) -> str | None:
        idx = columns.get(key)
        return cell(row, idx) if idx is not None else None

    return BudgetSyncTransaction(
        transaction_id=value("transaction_id"),
        department_code=value("department_code"),
        source_sheet=sheet_name,
        subcode=value("subcode"),
        transaction_date=parse_date(value("transaction_date")),
        transaction_type=value("transaction_type"),
        external_reference=value("external_reference"),
        description=value("description"),
        financial_year=year,
        period_number=period,
        period_name=value("period_name"),
        myr_amount=Decimal(str(parse_amount(value("myr_amount")) or 0)),
        currency_amount=_decimal_or_none(parse_amount(value("currency_amount"))),
        currency_code=value("currency_code") or "MYR",
        exchange_rate=Decimal(str(parse_amount(value("exchange_rate")) or 1)),
        finance_staff=value("finance_staff"),
        invoice_id=value("invoice_id"),
    )


def _decimal_or_none(value: float | None) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def import_transactions_from_sheet(
    sheets: GoogleSheetsClient, session: Session, sheet_name: str, year: int, period: int
) -> int:
    rows = sheets.read_sheet(sheet_name)
    if len(rows) < 2:
        logger.warning("No data found in '%s' sheet", sheet_name)
        return 0

    columns = map_column_indexes(rows[0])
    for key in REQUIRED_COLUMNS:
        if key not in columns:
            logger.error("Missing required column '%s' in '%s' sheet", COLUMN_MAP[key], sheet_name)
            return 0

    imported = skipped = filtered = 0
    seen: set[str] = set()
    for row in rows[1:]:
        transaction_id = cell(row, columns["transaction_id"])
        department_code = cell(row, columns["department_code"])
        if not transaction_id or not department_code:
            continue
        if (
            leading_int(cell(row, columns["financial_year"])) != year
            or leading_int(cell(row, columns["period_number"])) != period
        ):
            filtered += 1
            continue
        # A tab can repeat a transaction id; only its first row counts.
        if transaction_id in seen or budget_repo.exists(session, transaction_id, sheet_name):
            skipped += 1
            continue
        seen.add(transaction_id)

        try:
            with session.begin_nested():
                session.add(_row_to_transaction(row, columns, sheet_name, year, period))
        except SQLAlchemyError as e:
            logger.warning("Failed to import transaction %s: %s", transaction_id, e)
            continue
        imported += 1

    logger.info(
        "'%s': imported=%s already_imported=%s other_periods=%s", sheet_name, imported, skipped, filtered
    )
    return imported


def sync_budget(
    sheets: GoogleSheetsClient,
    kissflow: KissflowClient | None,
    factory: sessionmaker,
    options: BudgetSyncOptions,
) -> BudgetSyncResult:
    options.validate()
    year = options.year or datetime.now().year
    month = options.month
    month_name = calendar.month_name[month]
    mode = "DRY RUN" if options.dry_run else ("IMPORT ONLY" if options.import_only else "LIVE")
    logger.info("Budget sync: financial year %s, period %s (%s), mode %s", year, month, month_name, mode)
    if options.force:
        logger.warning("Force mode: already synced transactions are included")

    result = BudgetSyncResult(imported={}, dry_run=options.dry_run)
    with session_scope(factory) as session:
        for sheet_name in SOURCE_SHEETS:
            result.imported[sheet_name] = import_transactions_from_sheet(sheets, session, sheet_name, year, month)

    if options.import_only:
        logger.info("Import-only mode, skipping Kissflow update")
        return result

    with session_scope(factory) as session:
        totals = budget_repo.get_aggregated_by_department(session, year, month, unsynced_only=not options.force)
    if not totals:
        logger.warning("No unsynced transactions found for the specified period")
        return result
    result.departments = len(totals)

    if kissflow is None:
        raise ValueError("A Kissflow client is required unless import_only is set")
    budget_lookup: dict[str, dict[str, Any]] = {}
    for item in kissflow.get_budget_items():
        name = item.get("Name") or item.get("name")
        if name:
            budget_lookup[name] = item

    for code, total in totals.items():
        item = budget_lookup.get(code)
        if item is None:
            logger.warning("No Kissflow budget item found for: %s", code)
            result.not_found += 1
            continue
        kissflow_id = item.get("_id")
        if not kissflow_id:
            logger.error("No _id found for Kissflow item: %s", code)
            result.errors += 1
            continue

        current = float(item.get("Budget_Spent") or 0)
        amount = float(total.total_amount)
        new_value = current + amount
        if options.dry_run:
            logger.info("[dry run] %s: %.2f + %.2f = %.2f", code, current, amount, new_value)
            result.updated += 1
            time.sleep(UPDATE_PAUSE_SECONDS)
            continue

        outcome = kissflow.update_budget_spent(kissflow_id, new_value)
        if not outcome.success:
            logger.error("Failed to update %s: %s", code, outcome.error or "Unknown error")
            result.errors += 1
        else:
            with session_scope(factory) as session:
                budget_repo.mark_synced(session, total.transaction_ids, kissflow_id)
                budget_repo.create_snapshot(
                    session,
                    department_code=code,
                    kissflow_item_id=kissflow_id,
                    financial_year=year,
                    period_number=month,
                    period_name=month_name,
                    previous_value=current,
                    synced_amount=amount,
                    new_value=new_value,
                    transaction_ids=total.transaction_ids,
                )
            result.updated += 1
        time.sleep(UPDATE_PAUSE_SECONDS)

    logger.info(
        "Budget sync: departments=%s updated=%s not_found=%s errors=%s",
        result.departments,
        result.updated,
        result.not_found,
        result.errors,
    )
    if options.dry_run:
        logger.warning("This was a DRY RUN. No changes were made to Kissflow.")
    return result
