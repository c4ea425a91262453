from __future__ import annotations

from types import SimpleNamespace

from sqlalchemy import select

from src.finance_sync.store.db import get_engine, get_session_factory
from src.finance_sync.store.models import NetSuiteCurrency, NetSuiteEmployee, NetSuiteMSIC, NetSuiteVendor
from src.finance_sync.use_cases import reference_sync
from src.finance_sync.use_cases.reference_sync import (
    map_currency,
    map_employee,
    map_msic,
    map_vendor,
    parse_bool,
    sync_msic_codes,
)


def _factory():
    return get_session_factory(get_engine("sqlite://"))


def test_parse_bool() -> None:
    assert parse_bool("T") is True
    assert parse_bool("F") is False
    assert parse_bool(None) is False
    assert parse_bool(True) is True


def test_mappers() -> None:
    assert map_vendor({"entityid": "V-1"}) is None
    vendor_id, vendor = map_vendor({"id": 5, "entityid": "V-5", "companyname": "", "isinactive": "T"})
    assert vendor_id == "5"
    assert vendor["name"] == "V-5"
    assert vendor["is_inactive"] is True

    _, employee = map_employee({"id": "9", "firstname": "Aina", "lastname": "Rahman", "email": "a@x.my"})
    assert employee["name"] == "Aina Rahman"
    assert employee["email"] is None
    assert map_employee({"id": "10", "entityid": "E-10"})[1]["name"] == "E-10"

    _, msic = map_msic({"id": "3", "name": "46900 : Wholesale trade"})
    assert (msic["msic_code"], msic["description"]) == ("46900", "Wholesale trade")
    _, odd = map_msic({"id": "4", "name": "Unclassified"})
    assert (odd["msic_code"], odd["description"]) == ("4", "Unclassified")

    _, currency = map_currency({"id": "1", "refName": "Malaysian Ringgit", "symbol": "MYR", "exchangeRate": "1.0"})
    assert currency["currency_code"] == "MYR"
    assert currency["is_base_currency"] is True
    _, no_code = map_currency({"id": "2", "name": "Odd"})
    assert "currency_code" not in no_code


def test_sync_vendors_creates_then_updates_per_environment() -> None:
    factory = _factory()
    rows = [
        {"id": "1", "entityid": "V-1", "companyname": "Acme", "isinactive": "F"},
        {"id": "2", "entityid": "V-2", "companyname": "Globex", "isinactive": "F"},
        {"entityid": "no-id"},
    ]
    sandbox = SimpleNamespace(is_sandbox=True, search_vendors=lambda: rows)
    production = SimpleNamespace(is_sandbox=False, search_vendors=lambda: rows[:1])

    first = reference_sync.sync_vendors(sandbox, factory)
    assert (first.fetched, first.created, first.updated, first.skipped) == (3, 2, 0, 1)
    assert first.ok

    rows[0]["companyname"] = "Acme Renamed"
    second = reference_sync.sync_vendors(sandbox, factory)
    assert (second.created, second.updated) == (0, 2)

    reference_sync.sync_vendors(production, factory)

    with factory() as session:
        vendors = session.scalars(select(NetSuiteVendor).order_by(NetSuiteVendor.id)).all()
        assert [(v.netsuite_id, v.is_sandbox, v.name) for v in vendors] == [
            ("1", True, "Acme Renamed"),
            ("2", True, "Globex"),
            ("1", False, "Acme Renamed"),
        ]


def test_sync_employees_summary() -> None:
    factory = _factory()
    client = SimpleNamespace(
        is_sandbox=True,
        search_employees=lambda: [{"id": "1", "firstname": "Aina", "lastname": "Rahman", "isinactive": "F"}],
    )

    result = reference_sync.REFERENCE_JOBS["employees"](client, factory)

    assert result.summary() == "employees: fetched=1 created=1 updated=0 skipped=0 failed=0"
    with factory() as session:
        assert session.scalars(select(NetSuiteEmployee.name)).all() == ["Aina Rahman"]


def test_sync_currencies_uses_dict_keys_as_fallback_ids() -> None:
    factory = _factory()
    client = SimpleNamespace(
        is_sandbox=True,
        fetch_currencies=lambda: {
            "1": {"id": "1", "refName": "Malaysian Ringgit", "symbol": "MYR", "exchangeRate": 1},
            "3": {"refName": "US Dollar", "symbol": "USD", "exchangeRate": 4.4},
        },
    )

    result = reference_sync.sync_currencies(client, factory)

    assert result.created == 2
    with factory() as session:
        codes = dict(session.execute(select(NetSuiteCurrency.netsuite_id, NetSuiteCurrency.currency_code)).all())
    assert codes == {"1": "MYR", "3": "USD"}


def test_sync_msic_codes_force_replaces_existing() -> None:
    factory = _factory()
    client = SimpleNamespace(
        is_sandbox=True,
        fetch_msic_codes=lambda: [{"id": "1", "name": "00000 : NOT APPLICABLE"}],
    )
    with factory() as session:
        session.add(
            NetSuiteMSIC(
                netsuite_id="99",
                name="stale",
                msic_code="99999",
                description="stale",
                ref_name="stale",
                is_sandbox=True,
            )
        )
        session.commit()

    result = sync_msic_codes(client, factory, force=True)

    assert result.created == 1
    with factory() as session:
        assert session.scalars(select(NetSuiteMSIC.netsuite_id)).all() == ["1"]


def test_sync_msic_codes_without_rows_fails() -> None:
    client = SimpleNamespace(is_sandbox=True, fetch_msic_codes=lambda: [])

    result = sync_msic_codes(client, _factory())

    assert not result.ok
    assert result.errors == ["No MSIC codes found in NetSuite"]
