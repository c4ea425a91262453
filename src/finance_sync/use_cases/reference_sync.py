"""Reference data sync: NetSuite -> local cache.

Goals
- One job per entity: fetch through the REST client, map, upsert on
  (netsuite_id, is_sandbox).
- A bad row is logged and counted; it never aborts the job.

Mappers are plain functions so they can be tested without a database.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.finance_sync.integrations.netsuite_rest_client import NetSuiteRestClient
from src.finance_sync.store.db import session_scope
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

MappedRow = tuple[str, dict[str, Any]]

_MSIC_NAME_RE = re.compile(r"^(\d+)\s*:\s*(.+)$", re.IGNORECASE)


@dataclass(slots=True)
class SyncResult:
    entity: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def summary(self) -> str:
        return (
            f"{self.entity}: fetched={self.fetched} created={self.created} "
            f"updated={self.updated} skipped={self.skipped} failed={self.failed}"
        )


def parse_bool(value: Any) -> bool:
    """SuiteQL booleans come back as 'T'/'F'; records use real bools."""

    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().upper() in {"T", "TRUE", "1", "Y", "YES"}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# --------------------------------------------------------------------- mappers


def map_vendor(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    return netsuite_id, {
        "name": _text(row.get("companyname")) or _text(row.get("entityid")) or "Unknown",
        "entity_id": _text(row.get("entityid")),
        "email": _text(row.get("email")),
        "phone": _text(row.get("phone")),
        "default_currency_id": _text(row.get("currency")),
        # SuiteQL has no currency list; it needs a per-vendor GET.
        "supported_currencies": [],
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_employee(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    first = _text(row.get("firstname"))
    last = _text(row.get("lastname"))
    if first and last:
        name = f"{first} {last}"
    else:
        name = last or first or _text(row.get("entityid")) or "Unknown"
    return netsuite_id, {
        "name": name,
        # Only the identifiers are relied upon.
        "entity_id": None,
        "email": None,
        "phone": None,
        "employee_type": None,
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_item(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    item_number = _text(row.get("itemid"))
    base_price = _float(row.get("baseprice"))
    if base_price is None:
        base_price = _float(row.get("rate"))
    return netsuite_id, {
        "name": _text(row.get("displayname")) or item_number or "Unknown",
        "item_number": item_number,
        "item_type": _text(row.get("itemtype")),
        "description": _text(row.get("description")),
        "base_price": base_price,
        "unit_of_measure": _text(row.get("unitstype")) or _text(row.get("saleunit")),
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_department(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    return netsuite_id, {
        "name": _text(row.get("name")) or "Unknown",
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_account(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    return netsuite_id, {
        "name": _text(row.get("fullname")) or _text(row.get("acctname")) or "Unknown",
        "account_type": _text(row.get("accttype")),
        "account_number": _text(row.get("acctnumber")),
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_location(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    return netsuite_id, {
        "name": _text(row.get("name")) or "Unknown",
        "location_type": _text(row.get("locationtype")),
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_expense_category(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    return netsuite_id, {
        "name": _text(row.get("name")) or "Unknown",
        "description": _text(row.get("description")),
        "is_inactive": parse_bool(row.get("isinactive")),
    }


def map_currency(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    if not netsuite_id:
        return None
    # `symbol` on the REST record carries the ISO code.
    code = _text(row.get("symbol"))
    rate = _float(row.get("exchangeRate"))
    values: dict[str, Any] = {
        "name": _text(row.get("refName")) or _text(row.get("name")) or "Unknown",
        "symbol": code,
        "exchange_rate": rate,
        "is_base_currency": rate == 1,
        "is_inactive": False,
    }
    if code:
        values["currency_code"] = code
    return netsuite_id, values


def map_country(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    country_code = _text(row.get("country_code"))
    name = _text(row.get("name"))
    if not netsuite_id or not country_code or not name:
        return None
    return netsuite_id, {
        "name": name,
        "country_code": country_code,
        "iso_code_2": _text(row.get("iso_code_2")),
        "iso_code_3": _text(row.get("iso_code_3")),
    }


def map_msic(row: dict[str, Any]) -> MappedRow | None:
    netsuite_id = _text(row.get("id"))
    name = _text(row.get("name"))
    if not netsuite_id or not name:
        return None
    m = _MSIC_NAME_RE.match(name)
    if m:
        code, description = m.group(1), m.group(2).strip()
    else:
        code, description = netsuite_id, name
    return netsuite_id, {"name": name, "msic_code": code, "description": description, "ref_name": name}


# ---------------------------------------------------------------------- upsert


def upsert(session: Session, model: type, netsuite_id: str, is_sandbox: bool, values: dict[str, Any]) -> bool:
    """Insert or update one cached record. Returns True when a row was created."""

    existing = session.scalars(
        select(model).where(model.netsuite_id == netsuite_id, model.is_sandbox == is_sandbox)
    ).first()
    if existing is None:
        session.add(model(netsuite_id=netsuite_id, is_sandbox=is_sandbox, **values))
        return True
    for key, value in values.items():
        setattr(existing, key, value)
    return False


def sync_rows(
    factory: sessionmaker,
    model: type,
    rows: Iterable[dict[str, Any]],
    mapper: Callable[[dict[str, Any]], MappedRow | None],
    *,
    is_sandbox: bool,
    entity: str,
) -> SyncResult:
    result = SyncResult(entity=entity)
    with session_scope(factory) as session:
        for row in rows:
            result.fetched += 1
            mapped = mapper(row)
            if mapped is None:
                result.skipped += 1
                continue
            netsuite_id, values = mapped
            try:
                with session.begin_nested():
                    created = upsert(session, model, netsuite_id, is_sandbox, values)
            except (SQLAlchemyError, TypeError, ValueError) as e:
                result.failed += 1
                result.errors.append(f"{netsuite_id}: {e}")
                logger.warning("Error processing %s %s: %s", entity, netsuite_id, e)
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

    logger.info("Synced %s", result.summary())
    return result


# ------------------------------------------------------------------------ jobs


def sync_vendors(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteVendor, client.search_vendors(), map_vendor,
        is_sandbox=client.is_sandbox, entity="vendors",
    )


def sync_employees(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteEmployee, client.search_employees(), map_employee,
        is_sandbox=client.is_sandbox, entity="employees",
    )


def sync_items(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteItem, client.search_items(), map_item,
        is_sandbox=client.is_sandbox, entity="items",
    )


def sync_departments(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteDepartment, client.search_departments(), map_department,
        is_sandbox=client.is_sandbox, entity="departments",
    )


def sync_accounts(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteAccount, client.search_accounts(), map_account,
        is_sandbox=client.is_sandbox, entity="accounts",
    )


def sync_locations(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteLocation, client.search_locations(), map_location,
        is_sandbox=client.is_sandbox, entity="locations",
    )


def sync_expense_categories(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteExpenseCategory, client.search_expense_categories(), map_expense_category,
        is_sandbox=client.is_sandbox, entity="expense categories",
    )


def sync_currencies(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    currencies = client.fetch_currencies()
    rows = [{**currency, "id": currency.get("id") or key} for key, currency in currencies.items()]
    return sync_rows(
        factory, NetSuiteCurrency, rows, map_currency,
        is_sandbox=client.is_sandbox, entity="currencies",
    )


def sync_countries(client: NetSuiteRestClient, factory: sessionmaker) -> SyncResult:
    return sync_rows(
        factory, NetSuiteCountry, client.fetch_countries(), map_country,
        is_sandbox=client.is_sandbox, entity="countries",
    )


def sync_msic_codes(
    client: NetSuiteRestClient, factory: sessionmaker, *, force: bool = False
) -> SyncResult:
    """MSIC codes; `force` replaces the environment's existing codes."""

    is_sandbox = client.is_sandbox
    rows = client.fetch_msic_codes()
    if not rows:
        logger.warning("No MSIC codes found in NetSuite")
        result = SyncResult(entity="msic codes")
        result.failed = 1
        result.errors.append("No MSIC codes found in NetSuite")
        return result

    if force:
        with session_scope(factory) as session:
            existing = session.scalar(
                select(func.count()).select_from(NetSuiteMSIC).where(NetSuiteMSIC.is_sandbox == is_sandbox)
            )
            if existing:
                logger.info("Clearing %s existing MSIC codes", existing)
                session.execute(delete(NetSuiteMSIC).where(NetSuiteMSIC.is_sandbox == is_sandbox))

    return sync_rows(factory, NetSuiteMSIC, rows, map_msic, is_sandbox=is_sandbox, entity="msic codes")


REFERENCE_JOBS: dict[str, Callable[[NetSuiteRestClient, sessionmaker], SyncResult]] = {
    "vendors": sync_vendors,
    "employees": sync_employees,
    "items": sync_items,
    "departments": sync_departments,
    "accounts": sync_accounts,
    "locations": sync_locations,
    "currencies": sync_currencies,
    "expense-categories": sync_expense_categories,
    "countries": sync_countries,
    "msic-codes": sync_msic_codes,
}
