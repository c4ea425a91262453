"""Push spreadsheet intake rows (POs, Bills, Expense Reports) into NetSuite.

Goals
- One pass per intake tab: group the line tab by request id, resolve every
  header row against the local cache, create the transaction.
- Rows that made it into NetSuite move to `Synced`; rows that did not are
  appended to `Errors` with the reason.
- A broken row never stops the run. Only a missing required column does.

Sheet layout per flow:

    PO       -> header tab `PO`, lines tab `Items`, keyed by ID / EPR
    Bill     -> header tab `PR`, lines tab `Line Item`, keyed by PR ID
    Expense  -> header tab `PR`, lines tab `Line Item`, keyed by PR ID
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from googleapiclient.errors import HttpError
from sqlalchemy.orm import sessionmaker

from src.finance_sync.integrations.google_sheets import (
    GoogleSheetsClient,
    cell,
    find_header_index,
    first_available,
)
from src.finance_sync.integrations.netsuite_records import TransactionResult, format_netsuite_datetime
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteRestClient
from src.finance_sync.store.db import session_scope
from src.finance_sync.store.lookups import ReferenceLookup, load_po_items_map
from src.finance_sync.store.models import NetSuiteAccount, NetSuiteItem, NetSuiteVendor
from src.finance_sync.use_cases.transactions import (
    DEFAULT_SUPERVISOR_ID,
    BillService,
    ExpenseReportService,
    PurchaseOrderService,
)

logger = logging.getLogger(__name__)

DELETE_PAUSE_SECONDS = 0.1
DISCOUNT_COLUMN_INDEX = 6

PO_REQUIRED_HEADERS = ("ID", "Budget Code", "Subcode", "Location", "Vendor", "Currency")
PO_ERROR_HEADERS = [
    "Timestamp",
    "PO_ID",
    "Error_Message",
    "NetSuite_Response",
    "ID",
    "Name",
    "Budget Code",
    "Subcode",
    "Location",
    "Vendor",
]

TIMESTAMP_HEADERS = ("Timestamp", "Time", "Date", "DateTime", "Created")
PR_ID_HEADERS = ("PR ID", "PR", "EPR", "ID")
TRAN_DATE_HEADERS = ("Timestamp", "Transaction Date", "Tran Date", "Date", "PR Date")
CURRENCY_HEADERS = ("Currency", "Currency Code", "Currency ID")
SUPERVISOR_HEADERS = ("Supervisor", "Supervisor ID")
VENDOR_HEADERS = ("Payee/Vendor", "Payee", "Vendor")
EMPLOYEE_HEADERS = ("Employee", "Employee Name", "Employee ID")


class RowError(ValueError):
    """A sheet row that cannot be turned into a transaction."""


@dataclass(slots=True)
class IntakeResult:
    synced: int = 0
    errors: int = 0
    empty: int = 0
    already_synced: int = 0
    fatal: str | None = None

    @property
    def ok(self) -> bool:
        return self.fatal is None

    def fail(self, message: str) -> "IntakeResult":
        logger.error(message)
        self.fatal = message
        return self


def parse_number(raw: Any, default: float = 0.0) -> float:
    text = str(raw or "").replace(",", "").strip()
    if not text:
        return default
    try:
        return float(text)
    except ValueError:
        return default


def row_timestamp(row: list[Any], headers: list[str], column: int | None = None) -> str:
    """Timestamp cell for an error row, else now."""

    value = cell(row, column)
    if value:
        return value
    return first_available(row, headers, TIMESTAMP_HEADERS) or datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _move_synced(
    sheets: GoogleSheetsClient,
    source_sheet: str,
    rows: list[list[Any]],
    sheet_rows: list[int],
    *,
    header: list[str] | None = None,
) -> None:
    if not rows:
        return
    sheets.append_to_sheet("Synced", [header, *rows] if header else rows)
    logger.info("Moved %s synced row(s) to 'Synced'", len(rows))

    # Bottom-up so earlier deletes do not shift later row numbers.
    for sheet_row in sorted(sheet_rows, reverse=True):
        try:
            sheets.delete_rows(source_sheet, sheet_row, 1)
        except (HttpError, ValueError, PermissionError) as e:
            logger.error("Failed to delete row %s from %s sheet: %s", sheet_row, source_sheet, e)
        time.sleep(DELETE_PAUSE_SECONDS)


def _mapped_item(
    lookup: ReferenceLookup, account: NetSuiteAccount, po_items: dict[str, str]
) -> NetSuiteItem | None:
    mapped = po_items.get((account.account_number or "").strip())
    if not mapped:
        return None
    found = lookup.find_mapped_item(mapped)
    if found is None:
        logger.info("Mapped item '%s' for subcode %s not found, using an expense line", mapped, account.account_number)
    return found


def _warn_unsupported_currency(vendor: NetSuiteVendor, currency_id: str, currency_name: str) -> None:
    supported = vendor.supported_currencies or []
    if not supported:
        return
    ids = {str(c.get("id")) for c in supported if isinstance(c, dict) and c.get("id") is not None}
    names = {str(c.get("name")) for c in supported if isinstance(c, dict) and c.get("name")}
    if currency_id not in ids and currency_name not in names:
        logger.warning(
            "Currency %s may not be supported by vendor %s (supported: %s)",
            currency_name,
            vendor.name,
            ", ".join(sorted(names)) or "unknown",
        )


# ---------------------------------------------------------------------------
# Purchase Orders
# ---------------------------------------------------------------------------


def _group_po_items(item_rows: list[list[Any]]) -> tuple[dict[str, list[dict[str, Any]]] | None, str | None]:
    headers = [str(h).strip() for h in item_rows[0]]
    epr_col = find_header_index(headers, ("EPR", "ID", "EPR ID"))
    name_col = find_header_index(headers, ("Name", "Item Name", "Description"))
    qty_col = find_header_index(headers, ("Quantity", "Qty", "QTY"))
    price_col = find_header_index(headers, ("Unit Price", "Price", "Rate", "Unit Cost"))
    number_col = find_header_index(headers, ("Item Number", "Item", "Reference"))
    if len(headers) > DISCOUNT_COLUMN_INDEX:
        discount_col: int | None = DISCOUNT_COLUMN_INDEX
    else:
        discount_col = find_header_index(headers, ("Discount", "Enter_Discount_Amount", "Discount Amount"))

    if epr_col is None:
        return None, "EPR column not found in Items sheet. Expected one of: EPR, ID, EPR ID"
    if name_col is None:
        return None, "Name column not found in Items sheet. Expected one of: Name, Item Name, Description"
    if qty_col is None:
        return None, "Quantity column not found in Items sheet. Expected one of: Quantity, Qty, QTY"
    if price_col is None:
        return None, "Unit Price column not found in Items sheet. Expected one of: Unit Price, Price, Rate, Unit Cost"

    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in item_rows[1:]:
        epr_id = cell(row, epr_col)
        if not epr_id:
            continue
        quantity = parse_number(cell(row, qty_col), 1.0)
        unit_price = parse_number(cell(row, price_col))
        discount = parse_number(cell(row, discount_col)) if discount_col is not None else 0.0
        if discount > 0.01 and quantity > 0:
            unit_price = max(0.0, (unit_price * quantity - discount) / quantity)
        grouped.setdefault(epr_id, []).append(
            {
                "name": cell(row, name_col),
                "quantity": quantity,
                "unit_price": unit_price,
                "amount": unit_price * quantity,
                "discount": discount,
                "item_number": cell(row, number_col) or None,
            }
        )
    return grouped, None


def _po_exists(client: NetSuiteRestClient, po_id: str, existing_tran_id: str) -> str | None:
    env = client.environment
    if existing_tran_id and client.purchase_order_exists_by_tran_id(existing_tran_id):
        return f"Transaction ID (document number) '{existing_tran_id}' in {env}"
    if client.purchase_order_exists_by_tran_id(po_id):
        return f"document number '{po_id}' in {env}"
    if client.purchase_order_exists_by_memo(po_id):
        return f"memo '{po_id}' in {env}"
    return None


def _build_po_data(
    lookup: ReferenceLookup,
    row: list[Any],
    header_map: dict[str, int],
    po_id: str,
    items: list[dict[str, Any]],
    po_items: dict[str, str],
) -> dict[str, Any]:
    def value(header: str) -> str:
        return cell(row, header_map.get(header))

    budget_code = value("Budget Code")
    department = lookup.find_department(budget_code)
    if department is None:
        raise RowError(f"Department '{budget_code}' not found")

    subcode = value("Subcode")
    account = lookup.find_account(subcode)
    if account is None:
        raise RowError(f"Account '{subcode}' not found")

    location_name = value("Location")
    location = lookup.find_location(location_name)
    if location is None:
        raise RowError(f"Location '{location_name}' not found")

    vendor_name = value("Vendor")
    vendor = lookup.find_vendor(vendor_name)
    if vendor is None:
        raise RowError(f"Vendor '{vendor_name}' not found")

    currency = None
    currency_code = value("Currency")
    if currency_code:
        currency = lookup.find_currency(currency_code)
        if currency is None:
            raise RowError(
                f"Currency '{currency_code}' not found. Please run 'sync-currencies' to update currency codes."
            )
        _warn_unsupported_currency(vendor, currency.netsuite_id, currency.name)

    if not items:
        raise RowError(f"No items found for PO {po_id}")

    item_list: list[dict[str, Any]] = []
    expenses: list[dict[str, Any]] = []
    for item in items:
        ns_item = lookup.find_item(item["item_number"]) if item["item_number"] else None
        if ns_item is None:
            ns_item = _mapped_item(lookup, account, po_items)
        if ns_item is not None:
            item_list.append(
                {
                    "item_id": ns_item.netsuite_id,
                    "quantity": item["quantity"],
                    "rate": item["unit_price"],
                    "description": item["name"],
                    "department_id": department.netsuite_id,
                    "location_id": location.netsuite_id,
                }
            )
            continue
        expenses.append(
            {
                "account_id": account.netsuite_id,
                "amount": item["amount"],
                "memo": f"{item['quantity']:g} unit - {item['name']}",
                "department_id": department.netsuite_id,
                "location_id": location.netsuite_id,
            }
        )

    data: dict[str, Any] = {
        "vendor_id": vendor.netsuite_id,
        "memo": po_id,
        "location_id": location.netsuite_id,
        "department_id": department.netsuite_id,
        "supervisor_id": DEFAULT_SUPERVISOR_ID,
        "items": item_list,
        "expenses": expenses,
    }
    if currency is not None:
        data["currency_id"] = currency.netsuite_id
    return data


def sync_pos_from_sheets(
    sheets: GoogleSheetsClient,
    client: NetSuiteRestClient,
    factory: sessionmaker,
    *,
    force: bool = False,
    po_items_path: str | None = None,
) -> IntakeResult:
    result = IntakeResult()

    po_rows = sheets.read_sheet("PO")
    if len(po_rows) < 2:
        logger.warning("No PO data found in sheet (need at least header + 1 row)")
        return result

    headers = [str(h).strip() for h in po_rows[0]]
    header_map = {h: i for i, h in enumerate(headers)}
    missing = [h for h in PO_REQUIRED_HEADERS if h not in header_map]
    if missing:
        return result.fail(f"Required header(s) not found in PO sheet: {', '.join(missing)}")

    item_rows = sheets.read_sheet("Items")
    if len(item_rows) < 2:
        logger.warning("No item data found in Items sheet")
        return result
    items_by_po, problem = _group_po_items(item_rows)
    if items_by_po is None:
        return result.fail(problem or "Items sheet is not usable")

    po_items = load_po_items_map(po_items_path) if po_items_path else {}
    po_col = header_map.get("PO")
    error_rows: list[list[Any]] = []
    synced_rows: list[list[Any]] = []
    synced_sheet_rows: list[int] = []

    def error_row(row: list[Any], po_id: str, message: str, response: str = "") -> list[Any]:
        return [
            row_timestamp(row, headers),
            po_id,
            message,
            response,
            *(cell(row, header_map.get(h)) for h in ("ID", "Name", "Budget Code", "Subcode", "Location", "Vendor")),
        ]

    with session_scope(factory) as session:
        lookup = ReferenceLookup(session, is_sandbox=client.is_sandbox)
        service = PurchaseOrderService(client=client, session=session)

        for offset, row in enumerate(po_rows[1:]):
            sheet_row = offset + 2
            po_id = cell(row, header_map["ID"])
            if not po_id:
                result.empty += 1
                continue

            existing_tran_id = cell(row, po_col)
            try:
                if not force:
                    found_by = _po_exists(client, po_id, existing_tran_id)
                    if found_by:
                        logger.warning("PO %s already exists in NetSuite (found by %s), skipping", po_id, found_by)
                        error_rows.append(error_row(row, po_id, f"PO already exists in NetSuite (found by {found_by})"))
                        result.already_synced += 1
                        continue
                elif existing_tran_id:
                    logger.warning("Force mode: re-syncing PO %s (existing PO: %s)", po_id, existing_tran_id)

                data = _build_po_data(lookup, row, header_map, po_id, items_by_po.get(po_id, []), po_items)
                if existing_tran_id:
                    data["tran_id"] = existing_tran_id
                outcome: TransactionResult = service.create_from_mapping(data)
            except (RowError, RuntimeError) as e:
                logger.warning("Error processing PO %s: %s", po_id, e)
                error_rows.append(error_row(row, po_id, str(e)))
                continue

            if not outcome.success:
                logger.warning("Failed to create PO %s: %s", po_id, outcome.error)
                error_rows.append(error_row(row, po_id, outcome.error or "Unknown error", outcome.netsuite_response or ""))
                continue

            synced_row = list(row)
            if po_col is not None:
                synced_row.extend([""] * (po_col + 1 - len(synced_row)))
                synced_row[po_col] = outcome.transaction_id or outcome.internal_id
            synced_rows.append(synced_row)
            synced_sheet_rows.append(sheet_row)

    result.synced = len(synced_rows)
    _move_synced(sheets, "PO", synced_rows, synced_sheet_rows, header=headers)
    if error_rows:
        sheets.append_to_sheet("Errors", [PO_ERROR_HEADERS, *error_rows])
        logger.warning("%s PO(s) failed - see 'Errors' sheet", len(error_rows))
    result.errors = len(error_rows)
    logger.info(
        "PO intake: synced=%s errors=%s empty=%s already_synced=%s",
        result.synced,
        result.errors,
        result.empty,
        result.already_synced,
    )
    return result


# ---------------------------------------------------------------------------
# Payment requests (Bills and Expense Reports)
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _PrSheets:
    pr_rows: list[list[Any]]
    headers: list[str]
    pr_col: int
    result_col: int | None
    timestamp_col: int | None
    lines: dict[str, list[dict[str, Any]]]


def _group_lines(
    line_rows: list[list[Any]], columns: dict[str, tuple[str, ...]], required: dict[str, str]
) -> tuple[dict[str, list[dict[str, Any]]] | None, str | None]:
    headers = [str(h).strip() for h in line_rows[0]]
    index = {key: find_header_index(headers, candidates) for key, candidates in columns.items()}
    for key, message in required.items():
        if index.get(key) is None:
            return None, message

    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in line_rows[1:]:
        pr_id = cell(row, index["pr"])
        if not pr_id:
            continue
        line = {key: cell(row, idx) for key, idx in index.items() if key != "pr"}
        grouped.setdefault(pr_id, []).append(line)
    return grouped, None


def _read_pr_sheets(
    sheets: GoogleSheetsClient,
    result: IntakeResult,
    *,
    party_headers: tuple[str, ...],
    party_label: str,
    result_headers: tuple[str, ...],
    line_columns: dict[str, tuple[str, ...]],
    line_required: dict[str, str],
) -> _PrSheets | None:
    pr_rows = sheets.read_sheet("PR")
    if len(pr_rows) < 2:
        logger.warning("No PR data found in sheet (need at least header + 1 row)")
        return None

    headers = [str(h).strip() for h in pr_rows[0]]
    pr_col = find_header_index(headers, PR_ID_HEADERS)
    if pr_col is None:
        result.fail("Required header 'PR ID' (or 'PR') not found in PR sheet")
        return None
    if find_header_index(headers, party_headers) is None:
        result.fail(f"Required header '{party_label}' not found in PR sheet")
        return None

    line_rows = sheets.read_sheet("Line Item")
    if len(line_rows) < 2:
        logger.warning("No line item data found in Line Item sheet")
        return None
    lines, problem = _group_lines(line_rows, line_columns, line_required)
    if lines is None:
        result.fail(problem or "Line Item sheet is not usable")
        return None

    return _PrSheets(
        pr_rows=pr_rows,
        headers=headers,
        pr_col=pr_col,
        result_col=find_header_index(headers, result_headers),
        timestamp_col=find_header_index(headers, ("Timestamp", "Date", "Created")),
        lines=lines,
    )


def _pr_error_row(
    layout: _PrSheets, row: list[Any], pr_id: str, message: str, party: str, response: str = ""
) -> list[Any]:
    # Budget Code, Subcode and Location live on the line items.
    return [row_timestamp(row, layout.headers, layout.timestamp_col), pr_id, message, response, pr_id, "", "", "", party]


def _finish_pr_sync(
    sheets: GoogleSheetsClient,
    result: IntakeResult,
    label: str,
    synced_rows: list[list[Any]],
    synced_sheet_rows: list[int],
    error_rows: list[list[Any]],
) -> IntakeResult:
    result.synced = len(synced_rows)
    _move_synced(sheets, "PR", synced_rows, synced_sheet_rows)
    if error_rows:
        sheets.append_to_sheet("Errors", error_rows)
        logger.warning("%s %s(s) failed - see 'Errors' sheet", len(error_rows), label)
    result.errors = len(error_rows)
    logger.info(
        "%s intake: synced=%s errors=%s empty=%s already_synced=%s",
        label,
        result.synced,
        result.errors,
        result.empty,
        result.already_synced,
    )
    return result


def _record_success(
    layout: _PrSheets,
    row: list[Any],
    sheet_row: int,
    outcome: TransactionResult,
    synced_rows: list[list[Any]],
    synced_sheet_rows: list[int],
) -> None:
    synced_row = list(row)
    if layout.result_col is not None:
        synced_row.extend([""] * (layout.result_col + 1 - len(synced_row)))
        synced_row[layout.result_col] = outcome.transaction_id or outcome.internal_id
    synced_rows.append(synced_row)
    synced_sheet_rows.append(sheet_row)


def _trandate(row: list[Any], headers: list[str]) -> str:
    return format_netsuite_datetime(first_available(row, headers, TRAN_DATE_HEADERS)) or datetime.now().strftime(
        "%Y-%m-%dT%H:%M:%S"
    )


def _first_line_value(lines: list[dict[str, Any]], key: str) -> str:
    for line in lines:
        if line.get(key):
            return line[key]
    return ""


BILL_LINE_COLUMNS = {
    "pr": PR_ID_HEADERS,
    "subcode": ("Subcode", "Account", "Account Number"),
    "budget_code": ("Budget Code", "Department", "Dept"),
    "location": ("Location", "Loc"),
    "memo": ("Payment Reference", "Memo", "Name", "Description", "Item Name"),
    "price": ("Price", "Rate", "Amount", "Unit Price", "Unit Cost"),
    "currency": ("Currency", "Currency Code"),
    "item_number": ("Item Number", "Item", "Reference"),
}

BILL_LINE_REQUIRED = {
    "pr": "PR column not found in Line Item sheet. Expected one of: PR ID, PR, EPR, ID",
    "subcode": "Subcode/Account column not found in Line Item sheet.",
    "budget_code": "Budget Code/Department column not found in Line Item sheet.",
    "memo": "Payment Reference/Name column not found in Line Item sheet.",
    "price": "Price/Amount column not found in Line Item sheet.",
}


def _build_bill_data(
    lookup: ReferenceLookup,
    row: list[Any],
    layout: _PrSheets,
    pr_id: str,
    po_items: dict[str, str],
) -> dict[str, Any]:
    headers = layout.headers
    vendor_name = first_available(row, headers, VENDOR_HEADERS)
    if not vendor_name:
        raise RowError("Vendor/Payee not found in PR sheet")
    vendor = lookup.find_vendor(vendor_name)
    if vendor is None:
        raise RowError(f"Vendor '{vendor_name}' not found")

    lines = layout.lines.get(pr_id, [])
    currency = None
    currency_value = first_available(row, headers, CURRENCY_HEADERS) or _first_line_value(lines, "currency")
    if currency_value:
        currency = lookup.find_currency(currency_value)
        if currency is None:
            raise RowError(f"Currency '{currency_value}' not found. Please sync currencies.")

    if not lines:
        raise RowError(f"No line items found for PR {pr_id}")
    default_budget = lines[0].get("budget_code") or ""
    default_location = lines[0].get("location") or ""

    item_list: list[dict[str, Any]] = []
    expenses: list[dict[str, Any]] = []
    for line in lines:
        subcode = line.get("subcode") or ""
        if not subcode:
            raise RowError(f"Subcode is required for line items in PR {pr_id}")
        account = lookup.find_account(subcode)
        if account is None:
            raise RowError(f"Account '{subcode}' not found for PR {pr_id}")

        budget_code = line.get("budget_code") or default_budget
        department = lookup.find_department(budget_code)
        if department is None:
            raise RowError(
                f"Department/Budget Code not found for PR {pr_id}. Budget Code: {budget_code or 'not provided'}"
            )

        location_name = line.get("location") or default_location
        location = lookup.find_location(location_name)
        if location is None and location_name:
            logger.warning("Location '%s' not found for PR %s, continuing without location", location_name, pr_id)

        amount = parse_number(line.get("price"))
        name = line.get("memo") or ""
        item_number = line.get("item_number") or ""
        ns_item = (lookup.find_item(item_number) or lookup.find_mapped_item(item_number)) if item_number else None
        if ns_item is None:
            ns_item = _mapped_item(lookup, account, po_items)

        placement = {"department_id": department.netsuite_id}
        if location is not None:
            placement["location_id"] = location.netsuite_id
        if ns_item is not None:
            item_list.append(
                {"item_id": ns_item.netsuite_id, "quantity": 1, "rate": amount, "description": name, **placement}
            )
        else:
            expenses.append({"account_id": account.netsuite_id, "amount": amount, "memo": name, **placement})

    if not item_list and not expenses:
        raise RowError(f"No valid item or expense lines for PR {pr_id}")

    existing = cell(row, layout.result_col)
    tran_id = existing or first_available(row, headers, ("Bill Ref", "Reference", "Reference No", "Tran ID")) or pr_id
    data: dict[str, Any] = {
        "vendor_id": vendor.netsuite_id,
        "memo": pr_id,
        "tran_id": tran_id,
        "trandate": _trandate(row, headers),
        "supervisor_id": first_available(row, headers, SUPERVISOR_HEADERS) or DEFAULT_SUPERVISOR_ID,
        "items": item_list,
        "expenses": expenses,
    }
    duedate = first_available(row, headers, ("Due Date", "Payment Due", "Payment Due Date"))
    if duedate:
        data["duedate"] = format_netsuite_datetime(duedate) or duedate
    if currency is not None:
        data["currency_id"] = currency.netsuite_id
    return data


def sync_bills_from_sheets(
    sheets: GoogleSheetsClient,
    client: NetSuiteRestClient,
    factory: sessionmaker,
    *,
    force: bool = False,
    po_items_path: str | None = None,
) -> IntakeResult:
    result = IntakeResult()
    layout = _read_pr_sheets(
        sheets,
        result,
        party_headers=VENDOR_HEADERS,
        party_label="Payee/Vendor",
        result_headers=("Bill", "Bill ID", "Bill Number", "NS Bill"),
        line_columns=BILL_LINE_COLUMNS,
        line_required=BILL_LINE_REQUIRED,
    )
    if layout is None:
        return result

    po_items = load_po_items_map(po_items_path) if po_items_path else {}
    env = client.environment
    error_rows: list[list[Any]] = []
    synced_rows: list[list[Any]] = []
    synced_sheet_rows: list[int] = []

    with session_scope(factory) as session:
        lookup = ReferenceLookup(session, is_sandbox=client.is_sandbox)
        service = BillService(client=client, session=session)

        for offset, row in enumerate(layout.pr_rows[1:]):
            sheet_row = offset + 2
            pr_id = first_available(row, layout.headers, PR_ID_HEADERS)
            if not pr_id:
                result.empty += 1
                continue
            vendor_value = first_available(row, layout.headers, VENDOR_HEADERS) or ""
            existing = cell(row, layout.result_col)

            try:
                if not force:
                    found_by = None
                    if existing and client.vendor_bill_exists_by_tran_id(existing):
                        found_by = f"Transaction ID '{existing}' in {env}"
                    elif client.vendor_bill_exists_by_memo(pr_id):
                        found_by = f"memo '{pr_id}' in {env}"
                    if found_by:
                        logger.warning("Bill for PR %s already exists (found by %s), skipping", pr_id, found_by)
                        error_rows.append(
                            _pr_error_row(
                                layout, row, pr_id, f"Bill already exists in NetSuite (found by {found_by})", vendor_value
                            )
                        )
                        result.already_synced += 1
                        continue

                data = _build_bill_data(lookup, row, layout, pr_id, po_items)
                outcome = service.create_from_mapping(data)
            except (RowError, RuntimeError) as e:
                logger.warning("Error processing PR %s: %s", pr_id, e)
                error_rows.append(_pr_error_row(layout, row, pr_id, str(e), vendor_value))
                continue

            if not outcome.success:
                logger.warning("Failed to create Bill %s: %s", pr_id, outcome.error)
                error_rows.append(
                    _pr_error_row(
                        layout, row, pr_id, outcome.error or "Unknown error", vendor_value, outcome.netsuite_response or ""
                    )
                )
                continue
            _record_success(layout, row, sheet_row, outcome, synced_rows, synced_sheet_rows)

    return _finish_pr_sync(sheets, result, "Bill", synced_rows, synced_sheet_rows, error_rows)


EXPENSE_LINE_COLUMNS = {
    "pr": PR_ID_HEADERS,
    "category": ("Category", "Expense Category", "Category Name"),
    "amount": ("Amount", "Price", "Rate"),
    "expense_date": ("Expense Date", "Date", "Transaction Date"),
    "memo": ("Memo", "Payment Reference", "Description", "Name"),
    "subcode": ("Subcode", "Account", "Account Number"),
    "budget_code": ("Budget Code", "Department", "Dept"),
    "location": ("Location", "Loc"),
    "currency": ("Currency", "Currency Code"),
}

EXPENSE_LINE_REQUIRED = {
    "pr": "PR column not found in Line Item sheet. Expected one of: PR ID, PR, EPR, ID",
    "category": "Category/Expense Category column not found in Line Item sheet.",
    "amount": "Amount column not found in Line Item sheet.",
    "expense_date": "Expense Date column not found in Line Item sheet.",
}


def _build_expense_data(lookup: ReferenceLookup, row: list[Any], layout: _PrSheets, pr_id: str) -> dict[str, Any]:
    headers = layout.headers
    employee_name = first_available(row, headers, EMPLOYEE_HEADERS)
    if not employee_name:
        raise RowError("Employee not found in PR sheet")
    employee = lookup.find_employee(employee_name)
    if employee is None:
        raise RowError(f"Employee '{employee_name}' not found")

    trandate = _trandate(row, headers)
    lines = layout.lines.get(pr_id, [])
    currency_value = first_available(row, headers, CURRENCY_HEADERS) or _first_line_value(lines, "currency")
    if not currency_value:
        raise RowError(
            "Currency is required for Expense Report. Please provide Currency in PR sheet or Line Item sheet."
        )
    currency = lookup.find_currency(currency_value)
    if currency is None:
        raise RowError(f"Currency '{currency_value}' not found. Please sync currencies.")

    if not lines:
        raise RowError(f"No line items found for PR {pr_id}")
    default_budget = lines[0].get("budget_code") or ""
    default_location = lines[0].get("location") or ""

    expense_lines: list[dict[str, Any]] = []
    for line in lines:
        category_name = line.get("category") or ""
        if not category_name:
            raise RowError(f"Category is required for line items in PR {pr_id}")
        category = lookup.find_expense_category(category_name)
        if category is None:
            raise RowError(f"Expense Category '{category_name}' not found for PR {pr_id}")
        amount = parse_number(line.get("amount"))
        if amount <= 0:
            raise RowError(f"Amount must be greater than 0 for line items in PR {pr_id}")

        expense_line: dict[str, Any] = {
            "category_id": category.netsuite_id,
            "amount": amount,
            "expense_date": format_netsuite_datetime(line.get("expense_date")) or trandate,
            "memo": line.get("memo") or pr_id,
        }
        account = lookup.find_account(line.get("subcode") or "")
        if account is not None:
            expense_line["expense_account_id"] = account.netsuite_id
        department = lookup.find_department(line.get("budget_code") or default_budget)
        if department is not None:
            expense_line["department_id"] = department.netsuite_id
        location = lookup.find_location(line.get("location") or default_location)
        if location is not None:
            expense_line["location_id"] = location.netsuite_id
        expense_lines.append(expense_line)

    tran_id = (
        cell(row, layout.result_col)
        or first_available(row, headers, ("Expense Report Ref", "Reference", "Reference No", "Tran ID"))
        or pr_id
    )
    return {
        "employee_id": employee.netsuite_id,
        "memo": pr_id,
        "payment_request_reference": pr_id,
        "supervisor_id": first_available(row, headers, SUPERVISOR_HEADERS) or DEFAULT_SUPERVISOR_ID,
        "trandate": trandate,
        "currency_id": currency.netsuite_id,
        "tran_id": tran_id,
        "expenses": expense_lines,
    }


def sync_expenses_from_sheets(
    sheets: GoogleSheetsClient,
    client: NetSuiteRestClient,
    factory: sessionmaker,
    *,
    force: bool = False,
) -> IntakeResult:
    result = IntakeResult()
    layout = _read_pr_sheets(
        sheets,
        result,
        party_headers=EMPLOYEE_HEADERS,
        party_label="Employee",
        result_headers=("Expense Report", "Expense Report ID", "Expense Report Number", "NS Expense Report"),
        line_columns=EXPENSE_LINE_COLUMNS,
        line_required=EXPENSE_LINE_REQUIRED,
    )
    if layout is None:
        return result

    env = client.environment
    error_rows: list[list[Any]] = []
    synced_rows: list[list[Any]] = []
    synced_sheet_rows: list[int] = []

    with session_scope(factory) as session:
        lookup = ReferenceLookup(session, is_sandbox=client.is_sandbox)
        service = ExpenseReportService(client=client, session=session)

        for offset, row in enumerate(layout.pr_rows[1:]):
            sheet_row = offset + 2
            pr_id = first_available(row, layout.headers, PR_ID_HEADERS)
            if not pr_id:
                result.empty += 1
                continue
            employee_value = first_available(row, layout.headers, EMPLOYEE_HEADERS) or ""
            existing = cell(row, layout.result_col)

            try:
                if not force and existing and client.expense_report_exists_by_tran_id(existing):
                    message = f"Expense Report already exists in NetSuite (found by Transaction ID '{existing}' in {env})"
                    logger.warning("PR %s: %s, skipping", pr_id, message)
                    error_rows.append(_pr_error_row(layout, row, pr_id, message, employee_value))
                    result.already_synced += 1
                    continue
                if force and existing:
                    logger.warning("Force mode: re-syncing PR %s (existing Expense Report: %s)", pr_id, existing)

                data = _build_expense_data(lookup, row, layout, pr_id)
                outcome = service.create_from_mapping(data)
            except (RowError, RuntimeError) as e:
                logger.warning("Error processing PR %s: %s", pr_id, e)
                error_rows.append(_pr_error_row(layout, row, pr_id, str(e), employee_value))
                continue

            if not outcome.success:
                logger.warning("Failed to create Expense Report %s: %s", pr_id, outcome.error)
                error_rows.append(
                    _pr_error_row(
                        layout,
                        row,
                        pr_id,
                        outcome.error or "Unknown error",
                        employee_value,
                        outcome.netsuite_response or "",
                    )
                )
                continue
            _record_success(layout, row, sheet_row, outcome, synced_rows, synced_sheet_rows)

    return _finish_pr_sync(sheets, result, "Expense Report", synced_rows, synced_sheet_rows, error_rows)
