"""Resolve spreadsheet values to cached NetSuite reference records.

Sheet values are typed by people, so most lookups fall through several
strategies (exact, case-insensitive, prefix, contains) before giving up.
Every query is scoped to one environment (`is_sandbox`).
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, TypeVar

from sqlalchemy import func, literal, or_, select
from sqlalchemy.orm import Session

from src.finance_sync.store.models import (
    NetSuiteAccount,
    NetSuiteCountry,
    NetSuiteCurrency,
    NetSuiteDepartment,
    NetSuiteEmployee,
    NetSuiteExpenseCategory,
    NetSuiteItem,
    NetSuiteLocation,
    NetSuiteMSIC,
    NetSuiteVendor,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXCLUDED_ITEM_NUMBER = "Teaching Materials_Sales"

CURRENCY_NAME_TERMS: tuple[tuple[tuple[str, ...], list[str]], ...] = (
    (("GBP", "POUND", "STERLING"), ["Pound", "Poundsterling", "Pound Sterling", "British", "Great Britain"]),
    (("USD", "DOLLAR"), ["Dollar", "US Dollar"]),
    (("EUR", "EURO"), ["Euro"]),
    (("MYR", "RINGGIT"), ["Ringgit", "Malaysian"]),
    (("SGD", "SINGAPORE"), ["Singapore"]),
)


def budget_code_prefix(budget_code: str) -> str:
    """'JB-C030-26' -> 'JB-C030' (drop a trailing -NN / _NN suffix)."""

    return re.sub(r"[-_]\d+$", "", budget_code).rstrip("-_")


def load_po_items_map(path: str) -> dict[str, str]:
    """account_number -> item name/number, from a JSON list of {account_number, name}."""

    if not os.path.exists(path):
        logger.warning("PO items map not found at %s, skipping mapped items", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Failed to load PO items map %s: %s", path, e)
        return {}
    if not isinstance(data, list):
        logger.warning("PO items map %s is not a list, skipping mapped items", path)
        return {}

    mapping: dict[str, str] = {}
    for entry in data:
        if isinstance(entry, dict) and "account_number" in entry and "name" in entry:
            mapping[str(entry["account_number"]).strip()] = str(entry["name"]).strip()
    return mapping


class ReferenceLookup:
    def __init__(self, session: Session, *, is_sandbox: bool) -> None:
        self._session = session
        self._is_sandbox = is_sandbox

    @property
    def session(self) -> Session:
        return self._session

    def _first(self, model: type[T], *criteria: Any, active_only: bool = False) -> T | None:
        stmt = select(model).where(model.is_sandbox == self._is_sandbox, *criteria)
        if active_only:
            stmt = stmt.where(model.is_inactive.is_(False))
        return self._session.scalars(stmt.order_by(model.id).limit(1)).first()

    def _fuzzy_name(self, model: type[T], value: str, *, active_only: bool = False) -> T | None:
        return (
            self._first(model, model.name == value, active_only=active_only)
            or self._first(model, func.upper(model.name) == value.upper(), active_only=active_only)
            or self._first(model, model.name.like(f"%{value}%"), active_only=active_only)
        )

    def by_netsuite_id(self, model: type[T], netsuite_id: str | int | None) -> T | None:
        if netsuite_id in (None, ""):
            return None
        return self._first(model, model.netsuite_id == str(netsuite_id))

    def find_department(self, budget_code: str) -> NetSuiteDepartment | None:
        code = (budget_code or "").strip()
        if not code:
            return None
        found = self._first(NetSuiteDepartment, NetSuiteDepartment.name == code)
        if found:
            return found
        prefix = budget_code_prefix(code)
        return self._first(
            NetSuiteDepartment, NetSuiteDepartment.name.like(f"{prefix}%")
        ) or self._first(NetSuiteDepartment, NetSuiteDepartment.name.like(f"%{prefix}%"))

    def find_account(self, subcode: str) -> NetSuiteAccount | None:
        code = (subcode or "").strip()
        if not code:
            return None
        return (
            self._first(NetSuiteAccount, NetSuiteAccount.name == code)
            or self._first(NetSuiteAccount, NetSuiteAccount.account_number == code)
            or self._first(NetSuiteAccount, NetSuiteAccount.name.like(f"{code}%"))
            or self._first(NetSuiteAccount, NetSuiteAccount.name.like(f"%{code}%"))
        )

    def find_location(self, location: str) -> NetSuiteLocation | None:
        value = (location or "").strip()
        if not value:
            return None
        found = self._first(NetSuiteLocation, NetSuiteLocation.name == value)
        if not found and value.isdigit():
            found = self._first(NetSuiteLocation, NetSuiteLocation.netsuite_id == value)
        return found

    def _vendor_pass(self, name: str) -> NetSuiteVendor | None:
        V = NetSuiteVendor
        return (
            self._first(V, V.name == name)
            or self._first(V, func.upper(V.name) == name.upper())
            or self._first(V, V.name.like(f"%{name}%"))
            # Reverse contains: the sheet value contains the cached name.
            or self._first(V, literal(name).like(literal("%") + V.name + literal("%")))
        )

    def find_vendor(self, vendor_name: str) -> NetSuiteVendor | None:
        name = (vendor_name or "").strip()
        if not name:
            return None

        found = self._vendor_pass(name)
        if found:
            return found

        normalized = re.sub(r"\s*\([^)]*\)\s*", "", name).strip()
        if normalized and normalized != name:
            found = self._vendor_pass(normalized)
            if found:
                return found

        words = [w for w in re.split(r"[\s\-_]+", normalized or name) if len(w) > 2]
        for word in sorted(words, key=len, reverse=True):
            found = self._first(NetSuiteVendor, NetSuiteVendor.name.like(f"%{word}%"))
            if found:
                return found
        return None

    def find_currency(self, currency: str) -> NetSuiteCurrency | None:
        raw = (currency or "").strip()
        if not raw:
            return None
        code = raw.upper()
        C = NetSuiteCurrency

        found = (
            self._first(C, C.currency_code == code, C.currency_code.is_not(None))
            or self._first(C, func.upper(C.currency_code) == code, C.currency_code.is_not(None))
            or self._first(C, C.name == raw)
        )
        if found:
            return found

        for triggers, terms in CURRENCY_NAME_TERMS:
            if any(t in code for t in triggers):
                return self._first(C, or_(*[C.name.like(f"%{term}%") for term in terms]))
        return None

    def find_employee(self, employee: str) -> NetSuiteEmployee | None:
        value = (employee or "").strip()
        if not value:
            return None
        found = self._fuzzy_name(NetSuiteEmployee, value, active_only=True)
        if not found and value.isdigit():
            found = self._first(
                NetSuiteEmployee, NetSuiteEmployee.entity_id == value, active_only=True
            )
        return found

    def find_expense_category(self, category: str) -> NetSuiteExpenseCategory | None:
        value = (category or "").strip()
        if not value:
            return None
        return self._fuzzy_name(NetSuiteExpenseCategory, value, active_only=True)

    def find_item(self, item_number: str) -> NetSuiteItem | None:
        value = (item_number or "").strip()
        if not value:
            return None
        found = self._first(NetSuiteItem, NetSuiteItem.item_number == value, active_only=True)
        if found and found.item_number == EXCLUDED_ITEM_NUMBER:
            return None
        return found

    def find_mapped_item(self, mapped: str) -> NetSuiteItem | None:
        """Item for a po_items.json mapping: item_number, then name, then non-inventory scope."""

        I = NetSuiteItem
        not_excluded = or_(I.item_number.is_(None), I.item_number != EXCLUDED_ITEM_NUMBER)
        pattern = f"%{mapped}%"
        return (
            self._first(I, I.item_number.like(pattern), not_excluded, active_only=True)
            or self._first(I, I.name.like(pattern), not_excluded, active_only=True)
            or self._first(
                I,
                or_(I.item_number.like(pattern), I.name.like(pattern)),
                not_excluded,
                or_(I.item_type.is_(None), I.item_type.like("%noninventory%")),
                active_only=True,
            )
        )

    def find_country(self, identifier: str) -> NetSuiteCountry | None:
        value = (identifier or "").strip().upper()
        if not value:
            return None
        C = NetSuiteCountry
        found = self._first(
            C,
            or_(
                C.iso_code_2 == value,
                C.iso_code_3 == value,
                C.country_code == value,
                func.upper(C.country_code) == value,
                func.upper(C.name) == value,
            ),
        )
        return found or self._first(C, func.upper(C.name).like(f"%{value}%"))

    def country_iso2(self, identifier: str) -> str | None:
        country = self.find_country(identifier)
        return country.iso_code_2 if country and country.iso_code_2 else None

    def find_msic(self, identifier: str) -> NetSuiteMSIC | None:
        value = (identifier or "").strip()
        if not value:
            return None
        M = NetSuiteMSIC
        upper = value.upper()
        return (
            self._first(M, M.msic_code == value)
            or self._first(M, M.ref_name == value)
            or self._first(M, func.upper(M.ref_name) == upper)
            or self._first(
                M,
                or_(
                    func.upper(M.description).like(f"%{upper}%"),
                    func.upper(M.ref_name).like(f"%{upper}%"),
                ),
            )
        )

    def default_msic(self) -> NetSuiteMSIC | None:
        return self._first(NetSuiteMSIC, NetSuiteMSIC.msic_code == "00000")

    def currency_code_for(self, currency_id: str | None, currency_name: str | None) -> str:
        """ISO-ish code for a NetSuite currency reference; MYR when unknown."""

        if currency_id:
            found = self.by_netsuite_id(NetSuiteCurrency, currency_id)
            if found and found.currency_code:
                return found.currency_code
        if currency_name:
            found = self._first(NetSuiteCurrency, NetSuiteCurrency.name == currency_name) or self._first(
                NetSuiteCurrency, func.lower(NetSuiteCurrency.name) == currency_name.lower()
            )
            if found and found.currency_code:
                return found.currency_code
            if len(currency_name) <= 3 and currency_name.isupper():
                return currency_name
        logger.warning("Currency not found in cache (id=%s, name=%s); using MYR", currency_id, currency_name)
        return "MYR"
