from __future__ import annotations

import pytest

from src.finance_sync.store.db import get_engine, get_session_factory
from src.finance_sync.store.models import (
    NetSuiteAccount,
    NetSuiteCurrency,
    NetSuiteDepartment,
    NetSuiteEmployee,
    NetSuiteExpenseCategory,
    NetSuiteLocation,
    NetSuiteVendor,
)
from src.finance_sync.use_cases.sheet_intake import (
    PO_ERROR_HEADERS,
    parse_number,
    row_timestamp,
    sync_bills_from_sheets,
    sync_expenses_from_sheets,
    sync_pos_from_sheets,
)


class _StubSheets:
    def __init__(self, tabs: dict[str, list[list[str]]]) -> None:
        self.tabs = tabs
        self.appended: dict[str, list[list[str]]] = {}
        self.deleted: list[tuple[str, int]] = []

    def read_sheet(self, sheet_name):
        return self.tabs.get(sheet_name, [])

    def append_to_sheet(self, sheet_name, rows):
        self.appended.setdefault(sheet_name, []).extend(rows)
        return {}

    def delete_rows(self, sheet_name, start_row, num_rows=1):
        self.deleted.append((sheet_name, start_row))


class _StubNetSuite:
    is_sandbox = True
    environment = "sandbox"

    def __init__(self, *, existing: set[str] | None = None) -> None:
        self.created: list[tuple[str, dict]] = []
        self._existing = existing or set()

    def _found(self, value):
        return {"id": "77", "tranid": value} if value in self._existing else None

    def purchase_order_exists_by_tran_id(self, tran_id):
        return self._found(tran_id)

    def purchase_order_exists_by_memo(self, memo):
        return self._found(f"memo:{memo}")

    def vendor_bill_exists_by_tran_id(self, tran_id):
        return self._found(tran_id)

    def vendor_bill_exists_by_memo(self, memo):
        return self._found(f"memo:{memo}")

    def expense_report_exists_by_tran_id(self, tran_id):
        return self._found(tran_id)

    def get_vendor(self, vendor_id, *, expand=False):
        return {"id": vendor_id, "companyName": "Acme Sdn Bhd"}

    def create_record(self, record_type, payload):
        self.created.append((record_type, payload))
        return {"id": str(9000 + len(self.created))}

    def get_record(self, record_type, record_id, *, expand=False):
        return {"tranId": f"TX-{record_id}"}


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch) -> None:
    monkeypatch.setattr("time.sleep", lambda _s: None)


@pytest.fixture
def factory():
    factory = get_session_factory(get_engine("sqlite://"))
    with factory() as session:
        session.add_all(
            [
                NetSuiteDepartment(netsuite_id="10", name="JB-C030", is_sandbox=True),
                NetSuiteAccount(netsuite_id="20", name="61100 Stationery", account_number="61100", is_sandbox=True),
                NetSuiteLocation(netsuite_id="5", name="Johor Bahru", is_sandbox=True),
                NetSuiteVendor(netsuite_id="30", name="Acme Sdn Bhd", is_sandbox=True),
                NetSuiteCurrency(netsuite_id="1", name="Malaysian Ringgit", currency_code="MYR", is_sandbox=True),
                NetSuiteEmployee(netsuite_id="40", name="Aina Rahman", is_sandbox=True),
                NetSuiteExpenseCategory(netsuite_id="60", name="Travel", is_sandbox=True),
            ]
        )
        session.commit()
    return factory


PO_HEADERS = ["Timestamp", "ID", "Name", "Budget Code", "Subcode", "Location", "Vendor", "Currency", "PO"]


def test_parse_number_and_timestamp() -> None:
    assert parse_number("1,250.50") == 1250.5
    assert parse_number("", 1.0) == 1.0
    assert parse_number("n/a") == 0.0
    assert row_timestamp(["x", "2025-01-01"], ["Name", "Date"]) == "2025-01-01"
    assert row_timestamp(["T1"], ["Name"], column=0) == "T1"


def test_sync_pos_from_sheets(factory) -> None:
    sheets = _StubSheets(
        {
            "PO": [
                PO_HEADERS,
                ["2025-01-05 10:00:00", "EPR-1", "Paper order", "JB-C030-26", "61100", "Johor Bahru", "Acme Sdn Bhd", "MYR"],
                ["2025-01-05 11:00:00", "EPR-2", "Pens", "JB-C030", "61100", "Johor Bahru", "Initech", "MYR"],
                ["", "", "", "", "", "", "", ""],
                ["2025-01-06 09:00:00", "EPR-3", "Dup", "JB-C030", "61100", "Johor Bahru", "Acme Sdn Bhd", "MYR", "PO-77"],
            ],
            "Items": [
                ["EPR", "Name", "Quantity", "Unit Price", "Item Number", "Notes", "Discount"],
                ["EPR-1", "A4 Paper", "2", "10.00", "", "", "5"],
                ["EPR-2", "Pens", "1", "3", "", "", ""],
            ],
        }
    )
    client = _StubNetSuite(existing={"PO-77"})

    result = sync_pos_from_sheets(sheets, client, factory)

    assert (result.synced, result.errors, result.empty, result.already_synced) == (1, 2, 1, 1)
    assert result.ok

    record_type, body = client.created[0]
    assert record_type == "purchaseOrder"
    assert body["memo"] == "EPR-1"
    assert body["entity"] == {"id": "30"}
    assert body["currency"] == {"id": "1"}
    assert body["department"] == {"id": "10"}
    assert body["location"] == {"id": "5"}
    # Discount 5 over 2 units: 10.00 -> 7.50 each.
    assert body["expense"]["items"] == [
        {
            "account": {"id": "20"},
            "amount": 15.0,
            "memo": "2 unit - A4 Paper",
            "department": {"id": "10"},
            "location": {"id": "5"},
        }
    ]

    synced = sheets.appended["Synced"]
    assert synced[0] == PO_HEADERS
    assert synced[1][1] == "EPR-1"
    assert synced[1][8] == "TX-9001"
    assert sheets.deleted == [("PO", 2)]

    errors = sheets.appended["Errors"]
    assert errors[0] == PO_ERROR_HEADERS
    assert errors[1] == [
        "2025-01-05 11:00:00",
        "EPR-2",
        "Vendor 'Initech' not found",
        "",
        "EPR-2",
        "Pens",
        "JB-C030",
        "61100",
        "Johor Bahru",
        "Initech",
    ]
    assert errors[2][1] == "EPR-3"
    assert errors[2][2].startswith("PO already exists in NetSuite (found by Transaction ID")


def test_sync_pos_force_skips_existence_check(factory) -> None:
    sheets = _StubSheets(
        {
            "PO": [
                PO_HEADERS,
                ["", "EPR-3", "Dup", "JB-C030", "61100", "Johor Bahru", "Acme Sdn Bhd", "", "PO-77"],
            ],
            "Items": [["EPR", "Name", "Quantity", "Unit Price"], ["EPR-3", "Toner", "1", "80"]],
        }
    )
    client = _StubNetSuite(existing={"PO-77"})

    result = sync_pos_from_sheets(sheets, client, factory, force=True)

    assert result.synced == 1
    body = client.created[0][1]
    assert body["tranId"] == "PO-77"
    assert "currency" not in body


def test_sync_pos_missing_required_header(factory) -> None:
    sheets = _StubSheets({"PO": [PO_HEADERS[:7], ["t", "EPR-1", "", "", "", "", ""]]})

    result = sync_pos_from_sheets(sheets, _StubNetSuite(), factory)

    assert not result.ok
    assert result.fatal == "Required header(s) not found in PO sheet: Currency"
    assert sheets.appended == {}


def test_sync_pos_items_sheet_needs_quantity_column(factory) -> None:
    sheets = _StubSheets(
        {
            "PO": [PO_HEADERS, ["t", "EPR-1", "", "JB-C030", "61100", "Johor Bahru", "Acme Sdn Bhd", "MYR"]],
            "Items": [["EPR", "Name", "Unit Price"], ["EPR-1", "A4 Paper", "10"]],
        }
    )

    result = sync_pos_from_sheets(sheets, _StubNetSuite(), factory)

    assert result.fatal.startswith("Quantity column not found in Items sheet")


def test_sync_bills_from_sheets(factory) -> None:
    sheets = _StubSheets(
        {
            "PR": [
                ["Timestamp", "PR ID", "Payee/Vendor", "Currency", "Bill"],
                ["2025-02-10", "PR-1", "Acme Sdn Bhd", "", ""],
                ["2025-02-11", "PR-2", "Acme Sdn Bhd", "", ""],
                ["2025-02-12", "PR-3", "Acme Sdn Bhd", "", "BILL-3"],
            ],
            "Line Item": [
                ["PR ID", "Subcode", "Budget Code", "Location", "Payment Reference", "Price", "Currency"],
                ["PR-1", "61100", "JB-C030", "Johor Bahru", "Printer toner", "250.00", "MYR"],
                ["PR-2", "61100", "JB-C030", "", "Yen invoice", "100", "JPY"],
                ["PR-3", "61100", "JB-C030", "", "Repeat", "1", "MYR"],
            ],
        }
    )
    client = _StubNetSuite(existing={"BILL-3"})

    result = sync_bills_from_sheets(sheets, client, factory)

    assert (result.synced, result.errors, result.already_synced) == (1, 2, 1)

    record_type, body = client.created[0]
    assert record_type == "vendorBill"
    assert body["tranId"] == "PR-1"
    assert body["tranDate"] == "2025-02-10"
    assert body["memo"] == "PR-1"
    assert body["currency"] == {"id": "1"}
    assert body["custbody_itg_supervisor"] == {"id": "3467"}
    assert body["expense"]["items"] == [
        {
            "account": {"id": "20"},
            "amount": 250.0,
            "memo": "Printer toner",
            "department": {"id": "10"},
            "location": {"id": "5"},
        }
    ]

    assert sheets.appended["Synced"] == [["2025-02-10", "PR-1", "Acme Sdn Bhd", "", "TX-9001"]]
    assert sheets.deleted == [("PR", 2)]
    # Each PR takes its currency from its own lines.
    assert sheets.appended["Errors"][0] == [
        "2025-02-11",
        "PR-2",
        "Currency 'JPY' not found. Please sync currencies.",
        "",
        "PR-2",
        "",
        "",
        "",
        "Acme Sdn Bhd",
    ]
    assert "Bill already exists" in sheets.appended["Errors"][1][2]


def test_sync_bills_missing_vendor_header(factory) -> None:
    sheets = _StubSheets({"PR": [["PR ID", "Amount"], ["PR-1", "5"]]})

    result = sync_bills_from_sheets(sheets, _StubNetSuite(), factory)

    assert result.fatal == "Required header 'Payee/Vendor' not found in PR sheet"


def test_sync_expenses_from_sheets(factory) -> None:
    sheets = _StubSheets(
        {
            "PR": [
                ["Timestamp", "PR ID", "Employee", "Currency", "Expense Report"],
                ["2025-03-01", "PR-10", "Aina Rahman", "MYR", ""],
                ["2025-03-02", "PR-11", "Nobody", "MYR", ""],
                ["2025-03-03", "PR-12", "Aina Rahman", "", ""],
            ],
            "Line Item": [
                ["PR ID", "Category", "Amount", "Expense Date", "Memo", "Budget Code"],
                ["PR-10", "Travel", "45.50", "2025-02-28", "Grab to client", "JB-C030"],
                ["PR-12", "Travel", "10", "2025-03-03", "Parking", ""],
            ],
        }
    )
    client = _StubNetSuite()

    result = sync_expenses_from_sheets(sheets, client, factory)

    assert (result.synced, result.errors) == (1, 2)
    record_type, body = client.created[0]
    assert record_type == "expenseReport"
    assert body["entity"] == {"id": "40"}
    assert body["tranId"] == "PR-10"
    assert body["tranDate"] == "2025-03-01"
    assert body["custbody_assa_pr_reference"] == "PR-10"
    assert body["expense"]["items"] == [
        {
            "category": {"id": "60"},
            "amount": 45.5,
            "expenseDate": "2025-02-28",
            "currency": {"id": "1"},
            "memo": "Grab to client",
            "department": {"id": "10"},
        }
    ]
    messages = [row[2] for row in sheets.appended["Errors"]]
    assert messages == [
        "Employee 'Nobody' not found",
        "Currency is required for Expense Report. Please provide Currency in PR sheet or Line Item sheet.",
    ]


def test_sync_expenses_existing_report_is_skipped(factory) -> None:
    sheets = _StubSheets(
        {
            "PR": [
                ["PR ID", "Employee", "Currency", "Expense Report"],
                ["PR-10", "Aina Rahman", "MYR", "EXP-1"],
            ],
            "Line Item": [["PR ID", "Category", "Amount", "Expense Date"], ["PR-10", "Travel", "5", "2025-03-01"]],
        }
    )
    client = _StubNetSuite(existing={"EXP-1"})

    result = sync_expenses_from_sheets(sheets, client, factory)

    assert result.already_synced == 1
    assert client.created == []
    assert "Synced" not in sheets.appended
