"""Kissflow connector (access-key auth).

Goals
- Look up EPR / Payment Request process items by form number.
- Push vendor and employee rows into Kissflow datasets in batches.
- Read and update the budget dataset used for budget reconciliation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import requests
from dotenv import load_dotenv

from src.finance_sync.config.settings import env_first

load_dotenv(override=False)

logger = logging.getLogger(__name__)

DEFAULT_APP_ID = "AcflcLIlo4aq"
EPR_PROCESS = "Electronic_Payment_Requisition_EPR_"
PAYMENT_REQUEST_PROCESS = "Payment_Request"
DEFAULT_BUDGET_DATASET = "Budgets_01"


class KissflowApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(slots=True)
class BatchPushResult:
    success: bool
    count: int = 0
    response: Any = None
    error: str | None = None


@dataclass(slots=True)
class BudgetUpdateResult:
    success: bool
    response: Any = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class KissflowMatch:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


def vendor_to_dataset_row(vendor: dict[str, Any]) -> dict[str, Any]:
    internal_id = vendor.get("internal_id") or ""
    return {
        "_id": internal_id,
        "Name": internal_id,
        "Code": vendor.get("entity_id") or "",
        "Supplier_Name": vendor.get("company_name") or "",
        "Email_1": vendor.get("email") or "",
        "Phone": vendor.get("phone") or "",
        # The dataset column is fed the raw is_inactive flag.
        "Is_Active": bool(vendor.get("is_inactive") or False),
    }


def employee_to_dataset_row(employee: dict[str, Any]) -> dict[str, Any] | None:
    netsuite_id = str(employee.get("netsuite_id") or "")
    if not netsuite_id:
        return None
    return {
        "_id": netsuite_id,
        "Name": netsuite_id,
        "Employee_Name": employee.get("name") or "",
    }


class KissflowClient:
    def __init__(
        self,
        *,
        base_url: str,
        access_key_id: str,
        access_key_secret: str,
        process_app_id: str = DEFAULT_APP_ID,
        dataset_app_id: str = DEFAULT_APP_ID,
        timeout_seconds: int = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._process_app_id = process_app_id
        self._dataset_app_id = dataset_app_id
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_env(cls) -> "KissflowClient":
        load_dotenv(override=False)
        access_key_id = os.environ.get("KISSFLOW_ACCESS_KEY_ID")
        access_key_secret = os.environ.get("KISSFLOW_ACCESS_KEY_SECRET")
        if not access_key_id or not access_key_secret:
            raise ValueError(
                "Kissflow credentials not configured. Set KISSFLOW_ACCESS_KEY_ID and "
                "KISSFLOW_ACCESS_KEY_SECRET in .env"
            )
        base_url = os.environ.get("KISSFLOW_BASE_URL")
        if not base_url:
            raise ValueError("Missing KISSFLOW_BASE_URL")

        return cls(
            base_url=base_url,
            access_key_id=access_key_id,
            access_key_secret=access_key_secret,
            process_app_id=os.environ.get("KISSFLOW_PROCESS_APP_ID", DEFAULT_APP_ID),
            dataset_app_id=os.environ.get("KISSFLOW_DATASET_APP_ID", DEFAULT_APP_ID),
            timeout_seconds=int(os.environ.get("KISSFLOW_HTTP_TIMEOUT_SECONDS", "30")),
        )

    def _headers(self) -> dict[str, str]:
        return {
            "X-Access-Key-Id": self._access_key_id,
            "X-Access-Key-Secret": self._access_key_secret,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        error_prefix: str = "Kissflow API request failed",
        body_limit: int | None = None,
    ) -> Any:
        resp = requests.request(
            method,
            url,
            headers=self._headers(),
            params=params,
            json=json_body,
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            body = resp.text or ""
            shown = body[:body_limit] if body_limit else body
            raise KissflowApiError(
                f"{error_prefix}: HTTP {resp.status_code} - {shown}",
                status_code=resp.status_code,
                body=body,
            )
        if not resp.text:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise KissflowApiError("Invalid JSON response from Kissflow API") from e

    # --------------------------------------------------------------- process

    def _process_url(self, process: str) -> str:
        return f"{self._base_url}/process/2/{self._process_app_id}/admin/{process}/item"

    def _search(self, process: str, search_field: str, value: str) -> KissflowMatch | None:
        data = self._request(
            "GET",
            self._process_url(process),
            params={"page_number": 1, "page_size": 1, "q": value, "search_field": search_field},
        ) or {}
        rows = data.get("Data") or data.get("data") or []
        if not isinstance(rows, list) or not rows:
            return None
        item = rows[0]
        kissflow_id = item.get("_id") or item.get("id")
        if not kissflow_id:
            return None
        return KissflowMatch(id=str(kissflow_id), data=item)

    def search_by_po_number(self, po_number: str) -> KissflowMatch | None:
        return self._search(EPR_PROCESS, "PO_Number", po_number)

    def search_payment_request_by_pr_number(self, pr_number: str) -> KissflowMatch | None:
        return self._search(PAYMENT_REQUEST_PROCESS, "PAY_Form_Number", pr_number)

    def get_kissflow_id(self, po_number: str) -> str | None:
        match = self.search_by_po_number(po_number)
        return match.id if match else None

    def _get_process_item(self, process: str, kissflow_id: str) -> dict[str, Any] | None:
        data = self._request(
            "GET",
            f"{self._process_url(process)}/{kissflow_id}",
            body_limit=500,
        )
        if not isinstance(data, dict):
            return None
        item = data.get("Data") or data.get("data") or data
        return item or None

    def get_item_by_id(self, kissflow_id: str) -> dict[str, Any] | None:
        return self._get_process_item(EPR_PROCESS, kissflow_id)

    def get_payment_request_by_id(self, kissflow_id: str) -> dict[str, Any] | None:
        return self._get_process_item(PAYMENT_REQUEST_PROCESS, kissflow_id)

    # --------------------------------------------------------------- datasets

    def _dataset_url(self, dataset_id: str, suffix: str) -> str:
        return f"{self._base_url}/dataset/2/{self._dataset_app_id}/{dataset_id}/{suffix}"

    def employee_batch_url(self, is_sandbox: bool) -> str:
        configured = env_first(
            "KISSFLOW_EMPLOYEE_BATCH_URL_SANDBOX" if is_sandbox else "KISSFLOW_EMPLOYEE_BATCH_URL_PRODUCTION"
        )
        if configured:
            return configured

        if is_sandbox:
            dataset = env_first(
                "KISSFLOW_EMPLOYEE_DATASET_ID_SANDBOX", "KISSFLOW_EMPLOYEE_DATASET_ID"
            ) or "NetSuite_Employee_Sandbox"
        else:
            dataset = env_first(
                "KISSFLOW_EMPLOYEE_DATASET_ID_PRODUCTION", "KISSFLOW_EMPLOYEE_DATASET_ID"
            ) or "NetSuite_Employee"
        return self._dataset_url(dataset, "batch")

    def push_vendors_batch(self, vendors: list[dict[str, Any]], *, is_sandbox: bool = True) -> BatchPushResult:
        label = "sandbox" if is_sandbox else "production"
        try:
            url = env_first(
                "KISSFLOW_VENDORS_BATCH_URL_SANDBOX" if is_sandbox else "KISSFLOW_VENDORS_BATCH_URL_PRODUCTION"
            )
            if not url:
                raise ValueError(f"Kissflow vendor batch URL not configured for {label}")

            rows = [vendor_to_dataset_row(v) for v in vendors]
            logger.info("Pushing %s vendors to Kissflow (%s)", len(rows), label)
            response = self._request(
                "POST", url, json_body=rows, error_prefix="Kissflow vendor batch push failed"
            )
        except (RuntimeError, ValueError) as e:
            logger.error("Kissflow vendor batch push error (%s vendors): %s", len(vendors), e)
            return BatchPushResult(success=False, error=str(e))

        return BatchPushResult(success=True, count=len(rows), response=response)

    def push_employees_batch(
        self, employees: list[dict[str, Any]], *, is_sandbox: bool = True
    ) -> BatchPushResult:
        label = "sandbox" if is_sandbox else "production"
        try:
            rows = [r for r in (employee_to_dataset_row(e) for e in employees) if r]
            if not rows:
                raise ValueError("No valid employees to push (missing NetSuite IDs)")

            url = self.employee_batch_url(is_sandbox)
            logger.info("Pushing %s employees to Kissflow (%s)", len(rows), label)
            response = self._request(
                "POST", url, json_body=rows, error_prefix="Kissflow employee batch push failed"
            )
        except (RuntimeError, ValueError) as e:
            logger.error("Kissflow employee batch push error (%s employees): %s", len(employees), e)
            return BatchPushResult(success=False, error=str(e))

        return BatchPushResult(success=True, count=len(rows), response=response)

    def get_budget_items(self, *, page_size: int = 1000) -> list[dict[str, Any]]:
        """All rows of the budget dataset, following pages until a short one."""

        dataset = os.environ.get("KISSFLOW_BUDGET_DATASET_ID", DEFAULT_BUDGET_DATASET)
        url = self._dataset_url(dataset, "list")
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._request(
                "GET", url, params={"page_number": page, "page_size": page_size}
            ) or {}
            rows = data.get("Data") or data.get("data") or []
            items.extend(rows)
            if len(rows) < page_size:
                break
            page += 1
        logger.info("Fetched %s budget items from Kissflow", len(items))
        return items

    def update_budget_spent(self, kissflow_id: str, budget_spent: float) -> BudgetUpdateResult:
        dataset = os.environ.get("KISSFLOW_BUDGET_DATASET_ID", DEFAULT_BUDGET_DATASET)
        try:
            response = self._request(
                "POST",
                self._dataset_url(dataset, "batch"),
                json_body=[{"_id": kissflow_id, "Budget_Spent": budget_spent}],
                error_prefix="Kissflow budget update failed",
            )
        except RuntimeError as e:
            logger.error("Kissflow budget update failed for %s: %s", kissflow_id, e)
            return BudgetUpdateResult(success=False, error=str(e))
        return BudgetUpdateResult(success=True, response=response)
