"""Create Purchase Orders, Vendor Bills and Expense Reports in NetSuite.

Goals
- Accept a plain mapping (from a sheet row, a JSON file, or tests).
- Resolve every reference against the local cache before sending it.
- Never raise for NetSuite-side rejections: return a `TransactionResult`.

References that are not cached are dropped from the body rather than sent,
except for the ones a record cannot exist without (vendor, currency).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from sqlalchemy.orm import Session

from src.finance_sync.integrations.netsuite_records import (
    TransactionResult,
    build_transaction_einvoice_fields,
    to_rest_date,
)
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteApiError, NetSuiteRestClient
from src.finance_sync.store.lookups import ReferenceLookup
from src.finance_sync.store.models import (
    NetSuiteAccount,
    NetSuiteCurrency,
    NetSuiteDepartment,
    NetSuiteLocation,
    NetSuiteVendor,
)

logger = logging.getLogger(__name__)

DEFAULT_SUPERVISOR_ID = "3467"


def _as_id(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return str(value).strip()


RecordId = Annotated[str | None, BeforeValidator(_as_id)]


class _Input(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class ItemLine(_Input):
    item_id: RecordId = None
    quantity: float | None = None
    rate: float | None = None
    description: str | None = None
    department_id: RecordId = None
    location_id: RecordId = None


class ExpenseLine(_Input):
    account_id: RecordId = None
    amount: float | None = None
    memo: str | None = None
    department_id: RecordId = None
    location_id: RecordId = None
    tax_code_id: RecordId = None


class PurchaseOrderInput(_Input):
    vendor_id: RecordId = None
    memo: str | None = None
    tran_id: str | None = None
    location_id: RecordId = None
    department_id: RecordId = None
    currency_id: RecordId = None
    supervisor_id: RecordId = None
    items: list[ItemLine] = Field(default_factory=list)
    expenses: list[ExpenseLine] = Field(default_factory=list)


class BillInput(PurchaseOrderInput):
    reference_no: str | None = None
    trandate: str | None = None
    duedate: str | None = None


class ExpenseReportLine(_Input):
    category_id: RecordId = None
    amount: float | None = None
    expense_date: str | None = None
    expense_account_id: RecordId = None
    memo: str | None = None
    department_id: RecordId = None
    location_id: RecordId = None
    tax_code_id: RecordId = None
    quantity: float | None = None
    rate: float | None = None
    customer_id: RecordId = None
    is_billable: bool | None = None


class ExpenseReportInput(_Input):
    employee_id: RecordId = None
    currency_id: RecordId = None
    memo: str | None = None
    tran_id: str | None = None
    reference_no: str | None = None
    trandate: str | None = None
    duedate: str | None = None
    supervisor_id: RecordId = None
    payment_request_reference: str | None = None
    pr_reference: str | None = None
    expenses: list[ExpenseReportLine] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


class _TransactionService(ABC):
    record_type = ""
    label = ""

    def __init__(
        self,
        *,
        client: NetSuiteRestClient,
        session: Session,
        is_sandbox: bool | None = None,
    ) -> None:
        self._client = client
        self._is_sandbox = client.is_sandbox if is_sandbox is None else is_sandbox
        self._lookup = ReferenceLookup(session, is_sandbox=self._is_sandbox)

    def _ref(self, model: type, record_id: str | None) -> dict[str, str] | None:
        found = self._lookup.by_netsuite_id(model, record_id)
        return {"id": found.netsuite_id} if found else None

    def _place(self, body: dict[str, Any], department_id: str | None, location_id: str | None) -> None:
        department = self._ref(NetSuiteDepartment, department_id)
        if department:
            body["department"] = department
        location = self._ref(NetSuiteLocation, location_id)
        if location:
            body["location"] = location

    def _item_lines(self, items: list[ItemLine]) -> list[dict[str, Any]]:
        lines = []
        for item in items:
            if not item.item_id:
                logger.warning("Item missing item_id, skipping")
                continue
            line: dict[str, Any] = {"item": {"id": item.item_id}}
            if item.quantity is not None:
                line["quantity"] = item.quantity
            if item.rate is not None:
                line["rate"] = item.rate
            if item.description is not None:
                line["description"] = item.description
            self._place(line, item.department_id, item.location_id)
            lines.append(line)
        return lines

    def _expense_lines(self, expenses: list[ExpenseLine]) -> list[dict[str, Any]]:
        lines = []
        for expense in expenses:
            if not expense.account_id or expense.amount is None:
                continue
            account = self._ref(NetSuiteAccount, expense.account_id)
            if not account:
                logger.warning("Account %s not found, skipping expense line", expense.account_id)
                continue
            line: dict[str, Any] = {"account": account, "amount": expense.amount}
            if expense.memo is not None:
                line["memo"] = expense.memo
            self._place(line, expense.department_id, expense.location_id)
            if expense.tax_code_id:
                line["taxCode"] = {"id": expense.tax_code_id}
            lines.append(line)
        return lines

    def _vendor_body(self, data: PurchaseOrderInput) -> tuple[NetSuiteVendor, dict[str, Any]]:
        if not data.vendor_id:
            raise ValueError("Vendor ID is required")
        vendor = self._lookup.by_netsuite_id(NetSuiteVendor, data.vendor_id)
        if vendor is None:
            raise ValueError(f"Vendor with ID {data.vendor_id} not found")

        body: dict[str, Any] = {"entity": {"id": vendor.netsuite_id}}
        if data.memo is not None:
            body["memo"] = data.memo
        currency = self._ref(NetSuiteCurrency, data.currency_id)
        if currency:
            body["currency"] = currency

        items = self._item_lines(data.items)
        expenses = self._expense_lines(data.expenses)
        if not items and not expenses:
            raise ValueError("At least one item or expense line is required")
        if items:
            body["item"] = {"items": items}
        if expenses:
            body["expense"] = {"items": expenses}
        return vendor, body

    @abstractmethod
    def build_payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Validate `data` and return the REST body for `record_type`."""

    def _read_tran_id(self, internal_id: str | None) -> str | None:
        if not internal_id:
            return None
        try:
            return self._client.get_record(self.record_type, internal_id).get("tranId")
        except RuntimeError as e:
            logger.warning("Could not retrieve tranId for created %s: %s", self.label, e)
            return None

    def create_from_mapping(self, data: Mapping[str, Any]) -> TransactionResult:
        try:
            payload = self.build_payload(data)
            response = self._client.create_record(self.record_type, payload)
        except (RuntimeError, ValueError) as e:
            logger.error("%s creation error: %s", self.label, e)
            result = TransactionResult.from_error(e)
            if isinstance(e, NetSuiteApiError):
                result.error = f"{self.label} creation failed: {result.error}"
            return result

        internal_id = response.get("id")
        internal_id = str(internal_id) if internal_id is not None else None
        tran_id = self._read_tran_id(internal_id)
        logger.info("Created %s internal_id=%s tranId=%s", self.label, internal_id, tran_id)
        return TransactionResult(success=True, internal_id=internal_id, transaction_id=tran_id)


class PurchaseOrderService(_TransactionService):
    record_type = "purchaseOrder"
    label = "PO"

    def build_payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        po = PurchaseOrderInput.model_validate(dict(data))
        vendor, body = self._vendor_body(po)
        if po.tran_id:
            body["tranId"] = po.tran_id
        self._place(body, po.department_id, po.location_id)
        if po.supervisor_id:
            body["custbody_itg_supervisor"] = {"id": po.supervisor_id}

        vendor_record = self._client.get_vendor(vendor.netsuite_id, expand=True)
        body.update(
            build_transaction_einvoice_fields(
                vendor_record,
                company_name=vendor.name,
                country_to_iso2=self._lookup.country_iso2,
            )
        )
        return body


class BillService(_TransactionService):
    record_type = "vendorBill"
    label = "Bill"

    def build_payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        bill = BillInput.model_validate(dict(data))
        _, body = self._vendor_body(bill)
        tran_id = bill.tran_id or bill.reference_no
        if tran_id:
            body["tranId"] = tran_id
        else:
            logger.info("Leaving tranId blank; NetSuite will auto-generate the document number")
        body["tranDate"] = to_rest_date(bill.trandate)
        if bill.duedate:
            body["dueDate"] = to_rest_date(bill.duedate)
        self._place(body, bill.department_id, bill.location_id)
        body["custbody_itg_supervisor"] = {"id": bill.supervisor_id or DEFAULT_SUPERVISOR_ID}
        return body


class ExpenseReportService(_TransactionService):
    record_type = "expenseReport"
    label = "Expense Report"

    def _report_lines(self, report: ExpenseReportInput, currency: dict[str, str]) -> list[dict[str, Any]]:
        lines = []
        for expense in report.expenses:
            if not expense.category_id or expense.amount is None or not expense.expense_date:
                logger.warning("Expense missing required fields (category_id, amount, expense_date), skipping")
                continue
            line: dict[str, Any] = {
                "category": {"id": expense.category_id},
                "amount": expense.amount,
                "expenseDate": to_rest_date(expense.expense_date),
                "currency": currency,
            }
            account = self._ref(NetSuiteAccount, expense.expense_account_id)
            if account:
                line["expenseAccount"] = account
            if expense.memo is not None:
                line["memo"] = expense.memo
            self._place(line, expense.department_id, expense.location_id)
            if expense.tax_code_id:
                line["taxCode"] = {"id": expense.tax_code_id}
            if expense.quantity is not None:
                line["quantity"] = expense.quantity
            if expense.rate is not None:
                line["rate"] = expense.rate
            if expense.customer_id:
                line["customer"] = {"id": expense.customer_id}
            if expense.is_billable is not None:
                line["isBillable"] = expense.is_billable
            lines.append(line)
        return lines

    def build_payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        report = ExpenseReportInput.model_validate(dict(data))
        if not report.employee_id:
            raise ValueError("Employee ID is required")
        if not report.currency_id:
            raise ValueError("Currency ID is required for Expense Report")
        currency = self._ref(NetSuiteCurrency, report.currency_id)
        if currency is None:
            raise ValueError(f"Currency with ID {report.currency_id} not found")
        if not report.expenses:
            raise ValueError("At least one expense line is required")

        lines = self._report_lines(report, currency)
        if not lines:
            raise ValueError("No valid expense lines found")

        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        body: dict[str, Any] = {
            "entity": {"id": report.employee_id},
            "expenseReportCurrency": currency,
            "tranId": report.tran_id or report.reference_no or f"DUMMY-EXP-{stamp}",
            "tranDate": to_rest_date(report.trandate),
            "expense": {"items": lines},
            "custbody_itg_supervisor": {"id": report.supervisor_id or DEFAULT_SUPERVISOR_ID},
            "custbody_assa_pr_reference": report.payment_request_reference
            or report.pr_reference
            or f"DUMMY-PR-{stamp}",
        }
        if report.memo is not None:
            body["memo"] = report.memo
        if report.duedate:
            body["dueDate"] = to_rest_date(report.duedate)
        return body
