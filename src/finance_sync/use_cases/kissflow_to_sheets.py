"""Fill the intake tabs from Kissflow process items.

Jobs:
    EPR data       -> `KF ID` column B ids, written to tabs `PO` + `Items` (PO spreadsheet)
    Payment data   -> `KF ID` column A PR ids, written to tabs `PR` + `Line Item` (expense spreadsheet)
    Expense ids    -> `KF ID` column B ids, Non-Staff Payments split per payee into `PR` + `Line Item`
    Payment types  -> `PR` tab column D of the bill spreadsheet

Every job appends; rows already present in the target tabs are not deduplicated.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests
from googleapiclient.errors import HttpError

from src.finance_sync.integrations.google_sheets import GoogleSheetsClient, cell, col_to_a1, find_header_index
from src.finance_sync.integrations.kissflow_client import KissflowClient
from src.finance_sync.use_cases.sheet_intake import PR_ID_HEADERS

logger = logging.getLogger(__name__)

SOURCE_SHEET = "KF ID"
FETCH_PAUSE_SECONDS = 0.2
RANGE_PAUSE_SECONDS = 0.1

PO_TAB_HEADERS = ["ID", "Name", "Budget Code", "Subcode", "Location", "Vendor", "Timestamp", "PO", "Currency"]
ITEMS_TAB_HEADERS = ["ID", "EPR", "Name", "Quantity", "Unit Price", "Reference", "Discount"]
PR_TAB_HEADERS = ["PR ID", "Payee/Vendor", "Timestamp"]
LINE_ITEM_TAB_HEADERS = ["PR ID", "Payment Reference", "Memo", "Price", "Currency", "Budget Code", "Subcode"]

NON_STAFF_PAYMENT = "Non-Staff Payment"
PAYMENT_TYPE_COLUMN = 3

_ROW_ERRORS = (RuntimeError, requests.RequestException)
_TABLE_PREFIX = "Table::"


@dataclass(slots=True)
class KissflowSheetResult:
    synced: int = 0
    skipped: int = 0
    not_found: int = 0
    errors: int = 0
    header_rows: int = 0
    line_rows: int = 0


@dataclass(slots=True)
class PaymentTypeResult:
    found: int = 0
    skipped: int = 0
    errors: int = 0
    updated: int = 0
    ranges: list[str] = field(default_factory=list)
    fatal: str | None = None


def _lookup(data: Any, key: str) -> tuple[bool, Any]:
    if not isinstance(data, dict):
        return False, None
    if key in data:
        return True, data[key]
    lowered = key.lower()
    for k, v in data.items():
        if isinstance(k, str) and k.lower() == lowered:
            return True, v
    return False, None


def nested_value(data: Any, path: str, default: Any = "") -> Any:
    """Read `GL_Code_1.Name` style paths; `Table::` keys also match without the prefix.

    Keys compare case-insensitively when there is no exact hit.
    """

    if not path:
        return default
    found, value = _lookup(data, path)
    if found and value is not None:
        return value
    if path.startswith(_TABLE_PREFIX):
        path = path[len(_TABLE_PREFIX):]

    value = data
    for key in path.split("."):
        found, value = _lookup(value, key.strip("[]'\""))
        if not found:
            return default
    return default if value is None else value


def _first_value(data: Any, *paths: str, default: Any = "") -> Any:
    for path in paths:
        value = nested_value(data, path, None)
        if value not in (None, "", [], {}):
            return value
    return default


def map_delivery_location(location: str) -> str:
    """`Whole School` -> 3, `Secondary` -> 2, `Primary` -> 1; anything else passes through."""

    text = (location or "").strip()
    lowered = text.lower()
    if "whole school" in lowered:
        return "3"
    if "secondary" in lowered:
        return "2"
    if "primary" in lowered:
        return "1"
    return text


def format_timestamp(value: Any) -> str:
    if not value:
        return ""
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return text


# ----- EPR (purchase orders)


def epr_to_po_row(data: dict[str, Any]) -> dict[str, Any]:
    epr = nested_value(data, "ePR_Form_Number")
    table = nested_value(data, "Table::Untitled_Table", None)
    if isinstance(table, list) and table:
        first = table[0]
        created_at = first.get("_created_at", "") if isinstance(first, dict) else ""
    else:
        created_at = nested_value(data, "Untitled_Table._created_at")
    return {
        "ID": epr,
        "Name": epr,
        "Budget Code": nested_value(data, "GL_Code_1.Name"),
        "Subcode": nested_value(data, "Budget_Subcode_1.SubCode"),
        "Location": map_delivery_location(str(nested_value(data, "Delivery_Location"))),
        "Vendor": nested_value(data, "Supplier_Company_Name"),
        "Timestamp": format_timestamp(created_at),
        "PO": nested_value(data, "PO_Number"),
        "Currency": nested_value(data, "Supplier_Currency"),
    }


def epr_to_item_rows(data: dict[str, Any]) -> list[dict[str, Any]]:
    epr = nested_value(data, "ePR_Form_Number")
    items = nested_value(data, "Table::Model_DSakzWikms", None)
    if not isinstance(items, list) or not items:
        logger.warning(
            "No item table on EPR %s (keys: %s)", epr or "?", ", ".join(sorted(map(str, data)))
        )
        return []

    rows: list[dict[str, Any]] = []
    for item in items:
        item_epr = nested_value(item, "Hidden_Table_EPR_Number") or epr
        rows.append(
            {
                # Items rows need a unique key; the EPR alone repeats per line.
                "ID": f"{item_epr}_{uuid.uuid4().hex[:13]}",
                "EPR": item_epr,
                "Name": nested_value(item, "RFQ_Description"),
                "Quantity": nested_value(item, "RFQ_Quantity", "1"),
                "Unit Price": nested_value(item, "RFQ_Unit_Price", "0"),
                "Reference": nested_value(item, "KLASS_Item_Code"),
                "Discount": nested_value(item, "Enter_Discount_Amount", "0"),
            }
        )
    return rows


# ----- Payment Requests (bills and expenses)


def payment_request_to_pr_row(data: dict[str, Any]) -> dict[str, Any]:
    timestamp = _first_value(data, "_created_at", "Transaction_Date", "Date")
    return {
        "PR ID": nested_value(data, "PAY_Form_Number"),
        "Payee/Vendor": _first_value(data, "Payee_Name", "Supplier_Company_Name", "Vendor"),
        "Timestamp": format_timestamp(timestamp) if timestamp else datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    }


def payment_request_line_rows(data: dict[str, Any]) -> list[dict[str, Any]]:
    pr_id = nested_value(data, "PAY_Form_Number")
    lines = _first_value(data, "Table::Line_Items", "Line_Items", default=None)
    if not isinstance(lines, list) or not lines:
        logger.warning("No line items on Payment Request %s", pr_id or "?")
        return []

    rows: list[dict[str, Any]] = []
    for line in lines:
        reference = _first_value(line, "Payment_Reference", "Reference", "Description")
        rows.append(
            {
                "PR ID": pr_id,
                "Payment Reference": reference,
                "Memo": _first_value(line, "Memo", "Description", default=reference),
                "Price": _first_value(line, "Price", "Amount", "Rate", default="0"),
                "Currency": _first_value(line, "Currency") or nested_value(data, "Currency"),
                "Budget Code": _first_value(line, "Budget_Code", "GL_Code.Name")
                or nested_value(data, "Budget_Code"),
                "Subcode": _first_value(line, "Subcode", "Account_Number", "Budget_Subcode.SubCode"),
            }
        )
    return rows


def _finance_processing_table(data: dict[str, Any]) -> Any:
    table = _first_value(data, "Table::Finance_Processing_Table", "Finance_Processing_Table", default=None)
    if table is not None:
        return table
    for key, value in data.items():
        lowered = str(key).lower()
        if "finance_processing_table" in lowered or "finance processing table" in lowered:
            return value
    return None


def non_staff_payment_rows(data: dict[str, Any]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """One `PR` row per payee and one `Line Item` row per finance processing line.

    Returns empty lists for anything other than a Non-Staff Payment.
    """

    payment_type = str(nested_value(data, "Payment_Type")).strip()
    if payment_type != NON_STAFF_PAYMENT:
        return [], []

    table = _finance_processing_table(data)
    if not isinstance(table, list):
        return [], []

    pr_id = nested_value(data, "PAY_Form_Number")
    completed_at = format_timestamp(nested_value(data, "_completed_at"))
    by_payee: dict[str, list[dict[str, Any]]] = {}
    for line in table:
        payee = _first_value(line, "Actual_Payee.Supplier_Name", "Actual_Payee", "Supplier_Name")
        if not payee or not isinstance(payee, str):
            continue
        by_payee.setdefault(payee, []).append(line)

    pr_rows: list[dict[str, Any]] = []
    line_rows: list[dict[str, Any]] = []
    for payee, lines in by_payee.items():
        pr_rows.append({"PR ID": pr_id, "Payee/Vendor": payee, "Timestamp": completed_at})
        for line in lines:
            line_rows.append(
                {
                    "PR ID": pr_id,
                    "Payment Reference": nested_value(line, "Description"),
                    "Memo": nested_value(line, "Document_Reference"),
                    "Price": nested_value(line, "Amount_1", "0"),
                    "Currency": nested_value(line, "Currency_1"),
                    "Budget Code": nested_value(line, "Budget_Code_4"),
                    "Subcode": nested_value(line, "Subcode.SubCode"),
                }
            )
    return pr_rows, line_rows


# ----- Writing


def append_with_headers(
    sheets: GoogleSheetsClient, sheet_name: str, headers: list[str], rows: list[dict[str, Any]]
) -> None:
    """Append `rows` in `headers` order, writing the header row first when the tab is empty."""

    if not rows:
        return
    if not sheets.read_sheet(sheet_name):
        logger.info("Adding headers to %s sheet", sheet_name)
        sheets.append_to_sheet(sheet_name, [headers])
    sheets.append_to_sheet(sheet_name, [[row.get(h, "") for h in headers] for row in rows])
    logger.info("Written %s row(s) to %s sheet", len(rows), sheet_name)


def _source_rows(sheets: GoogleSheetsClient, sheet_name: str) -> list[list[str]]:
    rows = sheets.read_sheet(sheet_name)
    if len(rows) < 2:
        logger.warning("No data found in sheet %s (need at least header + 1 row)", sheet_name)
        return []
    return rows[1:]


def _log_result(label: str, result: KissflowSheetResult) -> None:
    logger.info(
        "%s: synced=%s header_rows=%s line_rows=%s not_found=%s skipped=%s errors=%s",
        label,
        result.synced,
        result.header_rows,
        result.line_rows,
        result.not_found,
        result.skipped,
        result.errors,
    )


def sync_epr_data_to_sheets(
    sheets: GoogleSheetsClient, kissflow: KissflowClient, *, sheet_name: str = SOURCE_SHEET
) -> KissflowSheetResult:
    """Column B of `sheet_name` holds EPR Kissflow ids; each id becomes a `PO` row plus `Items` rows."""

    result = KissflowSheetResult()
    po_rows: list[dict[str, Any]] = []
    item_rows: list[dict[str, Any]] = []
    for offset, row in enumerate(_source_rows(sheets, sheet_name)):
        kissflow_id = cell(row, 1)
        if not kissflow_id:
            result.skipped += 1
            continue
        try:
            data = kissflow.get_item_by_id(kissflow_id)
        except _ROW_ERRORS as e:
            result.errors += 1
            logger.warning("Row %s (%s): %s", offset + 2, kissflow_id, e)
            continue
        if not data:
            result.errors += 1
            logger.warning("No data found for Kissflow ID %s", kissflow_id)
            continue

        po_rows.append(epr_to_po_row(data))
        item_rows.extend(epr_to_item_rows(data))
        result.synced += 1
        time.sleep(FETCH_PAUSE_SECONDS)

    append_with_headers(sheets, "PO", PO_TAB_HEADERS, po_rows)
    append_with_headers(sheets, "Items", ITEMS_TAB_HEADERS, item_rows)
    result.header_rows = len(po_rows)
    result.line_rows = len(item_rows)
    _log_result("EPR data", result)
    return result


def sync_payment_requests_to_sheets(
    sheets: GoogleSheetsClient, kissflow: KissflowClient, *, sheet_name: str = SOURCE_SHEET
) -> KissflowSheetResult:
    """Column A holds PR numbers and column B their Kissflow ids.

    A blank id is looked up by PR number and written back to column B before
    the Payment Request is fetched.
    """

    result = KissflowSheetResult()
    pr_rows: list[dict[str, Any]] = []
    line_rows: list[dict[str, Any]] = []
    id_col = col_to_a1(1)
    for offset, row in enumerate(_source_rows(sheets, sheet_name)):
        sheet_row = offset + 2
        pr_id = cell(row, 0)
        if not pr_id:
            result.skipped += 1
            continue

        kissflow_id = cell(row, 1)
        try:
            if not kissflow_id:
                match = kissflow.search_payment_request_by_pr_number(pr_id)
                if not match:
                    result.not_found += 1
                    logger.warning("No Kissflow ID found for PR %s", pr_id)
                    continue
                kissflow_id = match.id
                sheets.update_cell(sheet_name, f"{id_col}{sheet_row}", kissflow_id)
                time.sleep(FETCH_PAUSE_SECONDS)
            data = kissflow.get_payment_request_by_id(kissflow_id)
        except (*_ROW_ERRORS, PermissionError, HttpError) as e:
            result.errors += 1
            logger.warning("Row %s (%s): %s", sheet_row, pr_id, e)
            continue
        if not data:
            result.errors += 1
            logger.warning("No data found for Kissflow ID %s", kissflow_id)
            continue

        pr_rows.append(payment_request_to_pr_row(data))
        line_rows.extend(payment_request_line_rows(data))
        result.synced += 1
        time.sleep(FETCH_PAUSE_SECONDS)

    append_with_headers(sheets, "PR", PR_TAB_HEADERS, pr_rows)
    append_with_headers(sheets, "Line Item", LINE_ITEM_TAB_HEADERS, line_rows)
    result.header_rows = len(pr_rows)
    result.line_rows = len(line_rows)
    _log_result("Payment Request data", result)
    return result


def sync_expense_ids_to_sheets(
    sheets: GoogleSheetsClient, kissflow: KissflowClient, *, sheet_name: str = SOURCE_SHEET
) -> KissflowSheetResult:
    """Column B holds Payment Request Kissflow ids; only Non-Staff Payments are written."""

    result = KissflowSheetResult()
    pr_rows: list[dict[str, Any]] = []
    line_rows: list[dict[str, Any]] = []
    for offset, row in enumerate(_source_rows(sheets, sheet_name)):
        kissflow_id = cell(row, 1)
        if not kissflow_id:
            result.skipped += 1
            continue
        try:
            data = kissflow.get_payment_request_by_id(kissflow_id)
        except _ROW_ERRORS as e:
            result.errors += 1
            logger.warning("Row %s (%s): %s", offset + 2, kissflow_id, e)
            continue
        if not data:
            result.errors += 1
            logger.warning("No data found for Kissflow ID %s", kissflow_id)
            continue

        payment_type = str(nested_value(data, "Payment_Type")).strip()
        if payment_type != NON_STAFF_PAYMENT:
            result.skipped += 1
            logger.info("Skipping %s: Payment_Type is %r", kissflow_id, payment_type)
            continue
        headers, lines = non_staff_payment_rows(data)
        if not headers:
            logger.warning("No Finance_Processing_Table found for Kissflow ID %s", kissflow_id)
            continue

        pr_rows.extend(headers)
        line_rows.extend(lines)
        result.synced += 1
        time.sleep(FETCH_PAUSE_SECONDS)

    append_with_headers(sheets, "PR", PR_TAB_HEADERS, pr_rows)
    append_with_headers(sheets, "Line Item", LINE_ITEM_TAB_HEADERS, line_rows)
    result.header_rows = len(pr_rows)
    result.line_rows = len(line_rows)
    _log_result("Expense ids", result)
    return result


def contiguous_ranges(updates: list[tuple[int, str]]) -> list[tuple[int, int, list[str]]]:
    """Group (row, value) pairs into runs of consecutive rows: (start, end, values)."""

    runs: list[tuple[int, int, list[str]]] = []
    for row, value in sorted(updates):
        if runs and row == runs[-1][1] + 1:
            start, _end, values = runs[-1]
            runs[-1] = (start, row, [*values, value])
        else:
            runs.append((row, row, [value]))
    return runs


def _payment_type_for(kissflow: KissflowClient, pr_id: str) -> str | None:
    match = kissflow.search_payment_request_by_pr_number(pr_id)
    if not match:
        logger.warning("No Payment Request found for PR %s", pr_id)
        return None
    value = match.data.get("Payment_Type")
    if value is None:
        data = kissflow.get_payment_request_by_id(match.id) or {}
        value = data.get("Payment_Type")
    return str(value).strip() if value else None


def sync_payment_types(
    sheets: GoogleSheetsClient, kissflow: KissflowClient, *, dry_run: bool = False
) -> PaymentTypeResult:
    """Fill column D of the bill spreadsheet's `PR` tab with each request's Payment_Type.

    Filled cells are left alone except in a dry run, which previews every row.
    """

    result = PaymentTypeResult()
    rows = sheets.read_sheet("PR")
    if len(rows) < 2:
        logger.warning("No data found in PR sheet (need at least header + 1 row)")
        return result

    pr_col = find_header_index(rows[0], PR_ID_HEADERS)
    if pr_col is None:
        result.fatal = (
            "PR ID column not found in PR sheet. Expected one of: "
            f"{', '.join(PR_ID_HEADERS)}. Available columns: {', '.join(rows[0])}"
        )
        logger.error(result.fatal)
        return result

    updates: list[tuple[int, str]] = []
    for offset, row in enumerate(rows[1:]):
        sheet_row = offset + 2
        pr_id = cell(row, pr_col)
        if not pr_id or (cell(row, PAYMENT_TYPE_COLUMN) and not dry_run):
            result.skipped += 1
            continue
        try:
            payment_type = _payment_type_for(kissflow, pr_id)
        except _ROW_ERRORS as e:
            result.errors += 1
            logger.warning("Row %s (%s): %s", sheet_row, pr_id, e)
            continue
        if not payment_type:
            result.errors += 1
            continue
        updates.append((sheet_row, payment_type))
        result.found += 1
        time.sleep(FETCH_PAUSE_SECONDS)

    letter = col_to_a1(PAYMENT_TYPE_COLUMN)
    runs = contiguous_ranges(updates)
    result.ranges = [f"{letter}{start}:{letter}{end}" for start, end, _values in runs]
    if dry_run:
        logger.info("Dry run: %s cell(s) would be updated in column %s", len(updates), letter)
        return result

    for idx, ((_start, _end, values), a1_range) in enumerate(zip(runs, result.ranges)):
        try:
            sheets.update_range("PR", a1_range, [[v] for v in values])
            result.updated += len(values)
        except (HttpError, PermissionError) as e:
            logger.error("Error updating range %s: %s", a1_range, e)
        if idx < len(runs) - 1:
            time.sleep(RANGE_PAUSE_SECONDS)

    logger.info(
        "Payment types: found=%s updated=%s skipped=%s errors=%s",
        result.found,
        result.updated,
        result.skipped,
        result.errors,
    )
    return result
