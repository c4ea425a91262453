"""Google Sheets client (service-account based).

Goals
- Wrap the handful of Sheets API calls the intake and export jobs need.
- Keep header/column matching deterministic and unit-testable.

Sheets are the intake surface: rows are read, pushed to NetSuite, then moved
to a `Synced` or `Errors` tab and deleted from the source tab.
"""

from __future__ import annotations

import json
import os
import re
from typing import Any

from dotenv import load_dotenv

from src.finance_sync.config.settings import env_first

load_dotenv(override=False)

_SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


def col_to_a1(index: int) -> str:
    """Sheet column letters for a 0-based index; the Kissflow id column (1) is "B"."""

    if index < 0:
        raise ValueError("column index must be >= 0")

    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def extract_spreadsheet_id(url_or_id: str) -> str | None:
    if not url_or_id:
        return None
    m = _SPREADSHEET_URL_RE.search(url_or_id)
    if m:
        return m.group(1)
    if re.fullmatch(r"[a-zA-Z0-9-_]{20,}", url_or_id.strip()):
        return url_or_id.strip()
    return None


def cell(row: list[Any], idx: int | None) -> str:
    if idx is None or idx >= len(row) or row[idx] is None:
        return ""
    return str(row[idx]).strip()


def find_header_index(headers: list[str], candidates: list[str] | tuple[str, ...]) -> int | None:
    """Index of the first header matching a candidate (case-insensitive, candidates in order)."""

    lowered = [(h or "").strip().lower() for h in headers]
    for candidate in candidates:
        wanted = candidate.strip().lower()
        for idx, header in enumerate(lowered):
            if header == wanted:
                return idx
    return None


def first_available(
    row: list[Any], headers: list[str], candidates: list[str] | tuple[str, ...]
) -> str | None:
    """First non-blank cell among the candidate columns, in candidate order."""

    lowered = [(h or "").strip().lower() for h in headers]
    for candidate in candidates:
        wanted = candidate.strip().lower()
        for idx, header in enumerate(lowered):
            if header == wanted:
                value = cell(row, idx)
                if value:
                    return value
    return None


def spreadsheet_id_for(kind: str, environment: str) -> str:
    """Resolve the intake spreadsheet for `po`, `bill` or `expense` in an environment."""

    production = environment == "production"
    if kind == "po":
        names = (
            ("PROD_GOOGLE_SHEETS_SPREADSHEET_ID", "GOOGLE_SHEETS_SPREADSHEET_ID")
            if production
            else ("GOOGLE_SHEETS_SPREADSHEET_ID",)
        )
        label = "Google Sheets Spreadsheet ID"
    elif kind == "bill":
        names = ("PROD_BILL_SHEET_ID",) if production else ("SANDBOX_BILL_SHEET_ID", "BILL_SHEET_ID")
        label = "Bill Spreadsheet ID"
    elif kind == "expense":
        names = (
            ("PROD_EXPENSE_SHEET_ID",)
            if production
            else ("SANDBOX_EXPENSE_SHEET_ID", "EXPENSE_SHEET_ID")
        )
        label = "Expense Spreadsheet ID"
    else:
        raise ValueError(f"Unknown spreadsheet kind: {kind}")

    value = env_first(*names)
    if not value:
        raise ValueError(f"{label} not configured. Set {names[0]} in .env")
    return value


class GoogleSheetsClient:
    def __init__(
        self,
        *,
        spreadsheet_id: str,
        service_account_path: str,
        timeout_seconds: int = 30,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._service_account_path = os.path.expanduser(service_account_path)
        self._timeout_seconds = timeout_seconds
        self._service: Any = None

    @classmethod
    def from_env(cls, environment: str | None = None, *, kind: str = "po") -> "GoogleSheetsClient":
        load_dotenv(override=False)
        env = environment or os.environ.get("NETSUITE_ENVIRONMENT", "sandbox")
        return cls.for_spreadsheet(spreadsheet_id_for(kind, env))

    @classmethod
    def for_spreadsheet(cls, spreadsheet_id: str) -> "GoogleSheetsClient":
        service_account_path = os.environ.get("GOOGLE_SA_FILE") or os.path.abspath(
            "service-account.json"
        )
        timeout_seconds = int(os.environ.get("GOOGLE_HTTP_TIMEOUT_SECONDS", "30"))
        return cls(
            spreadsheet_id=extract_spreadsheet_id(spreadsheet_id) or spreadsheet_id,
            service_account_path=service_account_path,
            timeout_seconds=timeout_seconds,
        )

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    def _sheets(self) -> Any:
        if self._service is not None:
            return self._service

        # Lazy import so the pure helpers above work without Google client libs.
        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        if not os.path.exists(self._service_account_path):
            raise FileNotFoundError(
                f"Service account file not found: {self._service_account_path}"
            )

        with open(self._service_account_path, "r", encoding="utf-8") as f:
            sa = json.load(f)
        creds = service_account.Credentials.from_service_account_info(
            sa,
            scopes=["https://www.googleapis.com/auth/spreadsheets"],
        )
        self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service

    def _check_writable(self) -> None:
        if os.environ.get("GOOGLE_SHEETS_READ_ONLY", "").strip() == "1":
            raise PermissionError(
                "Google Sheets writes disabled (GOOGLE_SHEETS_READ_ONLY=1)."
            )

    def read_sheet(
        self,
        sheet_name: str,
        a1_range: str | None = None,
        *,
        spreadsheet_id: str | None = None,
    ) -> list[list[str]]:
        rng = f"{sheet_name}!{a1_range}" if a1_range else sheet_name
        resp = (
            self._sheets()
            .spreadsheets()
            .values()
            .get(spreadsheetId=spreadsheet_id or self._spreadsheet_id, range=rng)
            .execute(num_retries=2)
        )
        rows = resp.get("values", [])
        return rows if isinstance(rows, list) else []

    def append_to_sheet(
        self,
        sheet_name: str,
        rows: list[list[Any]],
        *,
        spreadsheet_id: str | None = None,
    ) -> dict[str, Any]:
        self._check_writable()
        return (
            self._sheets()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=spreadsheet_id or self._spreadsheet_id,
                range=sheet_name,
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": rows},
            )
            .execute(num_retries=2)
        )

    def _sheet_id(self, sheet_name: str, spreadsheet_id: str) -> int:
        meta = (
            self._sheets()
            .spreadsheets()
            .get(spreadsheetId=spreadsheet_id, fields="sheets(properties(title,sheetId))")
            .execute(num_retries=2)
        )
        for sheet in meta.get("sheets", []):
            props = sheet.get("properties", {})
            if props.get("title") == sheet_name:
                return props["sheetId"]
        raise ValueError(f"Sheet '{sheet_name}' not found")

    def delete_rows(
        self,
        sheet_name: str,
        start_row: int,
        num_rows: int = 1,
        *,
        spreadsheet_id: str | None = None,
    ) -> None:
        """Delete `num_rows` rows starting at 1-based `start_row`."""

        self._check_writable()
        target = spreadsheet_id or self._spreadsheet_id
        sheet_id = self._sheet_id(sheet_name, target)
        body = {
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": start_row - 1,
                            "endIndex": start_row - 1 + num_rows,
                        }
                    }
                }
            ]
        }
        self._sheets().spreadsheets().batchUpdate(spreadsheetId=target, body=body).execute(
            num_retries=2
        )

    def update_range(self, sheet_name: str, a1_range: str, rows: list[list[Any]]) -> dict[str, Any]:
        self._check_writable()
        return (
            self._sheets()
            .spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=f"{sheet_name}!{a1_range}",
                valueInputOption="RAW",
                body={"values": rows},
            )
            .execute(num_retries=2)
        )

    def update_cell(self, sheet_name: str, a1_cell: str, value: Any) -> dict[str, Any]:
        return self.update_range(sheet_name, a1_cell, [[value]])

    def clear_range(self, sheet_name: str, a1_range: str) -> dict[str, Any]:
        self._check_writable()
        return (
            self._sheets()
            .spreadsheets()
            .values()
            .clear(
                spreadsheetId=self._spreadsheet_id,
                range=f"{sheet_name}!{a1_range}",
                body={},
            )
            .execute(num_retries=2)
        )
