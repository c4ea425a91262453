from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from src.finance_sync.integrations.kissflow_client import BudgetUpdateResult
from src.finance_sync.store.db import get_engine, get_session_factory
from src.finance_sync.store.models import BudgetSyncSnapshot, BudgetSyncTransaction
from src.finance_sync.use_cases.budget_sync import (
    BudgetSyncOptions,
    import_transactions_from_sheet,
    leading_int,
    parse_amount,
    parse_date,
    sync_budget,
)

HEADERS = [
    "Department Code (BI)",
    "Subcode (GL)",
    "Transaction Date",
    "Transaction ID",
    "Financial Year",
    "Period Number",
    "Period Name",
    "MYR Amount",
    "Currency Code",
]


class _StubSheets:
    def __init__(self, tabs) -> None:
        self.tabs = tabs

    def read_sheet(self, sheet_name):
        return self.tabs.get(sheet_name, [])


class _StubKissflow:
    def __init__(self, items, *, fail_ids: set[str] | None = None) -> None:
        self.items = items
        self.updates: list[tuple[str, float]] = []
        self._fail_ids = fail_ids or set()

    def get_budget_items(self):
        return self.items

    def update_budget_spent(self, kissflow_id, budget_spent):
        if kissflow_id in self._fail_ids:
            return BudgetUpdateResult(success=False, error="HTTP 500")
        self.updates.append((kissflow_id, budget_spent))
        return BudgetUpdateResult(success=True, response={})


def _sheets() -> _StubSheets:
    return _StubSheets(
        {
            "PO": [
                HEADERS,
                ["JB-C030", "61100", "15/03/2025", "PO-1", "2025/2026", "3", "March", "RM 1,000.50", "MYR"],
                ["JB-C030", "61100", "16/03/2025", "PO-2", "2025", "3", "March", "200", ""],
                ["KL-A100", "61100", "01/04/2025", "PO-3", "2025", "4", "April", "50", "MYR"],
                ["", "", "", "PO-4", "2025", "3", "March", "1", ""],
            ],
            "Others": [
                HEADERS,
                ["KL-A100", "62000", "2025-03-20", "OT-1", "2025", "3", "March", "99.50", "USD"],
                ["NOPE-1", "", "", "OT-2", "2025", "3", "March", "10", ""],
            ],
        }
    )


def _budget_items():
    return [
        {"_id": "Pk1", "Name": "JB-C030", "Budget_Spent": 100},
        {"_id": "Pk2", "Name": "KL-A100", "Budget_Spent": None},
        {"Name": "NO-ID"},
    ]


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch) -> None:
    monkeypatch.setattr("time.sleep", lambda _s: None)


@pytest.fixture
def factory():
    return get_session_factory(get_engine("sqlite://"))


def test_parsers() -> None:
    assert parse_amount("RM 1,234.50") == 1234.5
    assert parse_amount("-12") == -12.0
    assert parse_amount("abc") is None
    assert parse_amount("") is None
    assert parse_date("15/03/2025") == date(2025, 3, 15)
    assert parse_date("2025-03-20T10:00:00") == date(2025, 3, 20)
    assert parse_date("soon") is None
    assert leading_int("2025/2026") == 2025
    assert leading_int("P3") is None


def test_import_filters_period_and_dedupes(factory) -> None:
    sheets = _sheets()

    with factory() as session:
        assert import_transactions_from_sheet(sheets, session, "PO", 2025, 3) == 2
        session.commit()
        assert import_transactions_from_sheet(sheets, session, "PO", 2025, 3) == 0
        session.commit()

        tx = session.scalars(
            select(BudgetSyncTransaction).where(BudgetSyncTransaction.transaction_id == "PO-1")
        ).one()
    assert tx.myr_amount == Decimal("1000.5")
    assert tx.transaction_date == date(2025, 3, 15)
    assert tx.financial_year == 2025
    assert tx.currency_code == "MYR"


def test_import_keeps_first_row_of_a_repeated_transaction_id(factory) -> None:
    sheets = _StubSheets(
        {
            "PO": [
                HEADERS,
                ["JB-C030", "61100", "15/03/2025", "PO-1", "2025", "3", "March", "100", "MYR"],
                ["KL-A100", "61100", "16/03/2025", "PO-1", "2025", "3", "March", "900", "MYR"],
                ["JB-C030", "61100", "17/03/2025", "PO-2", "2025", "3", "March", "5", "MYR"],
            ]
        }
    )

    with factory() as session:
        assert import_transactions_from_sheet(sheets, session, "PO", 2025, 3) == 2
        session.commit()

        rows = session.scalars(
            select(BudgetSyncTransaction).where(BudgetSyncTransaction.transaction_id == "PO-1")
        ).all()
    assert len(rows) == 1
    assert rows[0].department_code == "JB-C030"
    assert rows[0].myr_amount == Decimal("100")


def test_import_requires_core_columns(factory) -> None:
    sheets = _StubSheets({"PO": [HEADERS[:4], ["JB-C030", "61100", "15/03/2025", "PO-1"]]})

    with factory() as session:
        assert import_transactions_from_sheet(sheets, session, "PO", 2025, 3) == 0


def test_sync_budget_updates_kissflow_and_records_snapshots(factory) -> None:
    kissflow = _StubKissflow(_budget_items())

    result = sync_budget(_sheets(), kissflow, factory, BudgetSyncOptions(month=3, year=2025))

    assert result.imported == {"Others": 2, "PO": 2}
    assert (result.departments, result.updated, result.not_found, result.errors) == (3, 2, 1, 0)
    assert result.ok
    assert sorted(kissflow.updates) == [("Pk1", 1300.5), ("Pk2", 99.5)]

    with factory() as session:
        unsynced = session.scalars(
            select(BudgetSyncTransaction.transaction_id).where(BudgetSyncTransaction.synced_at.is_(None))
        ).all()
        assert unsynced == ["OT-2"]
        snapshot = session.scalars(
            select(BudgetSyncSnapshot).where(BudgetSyncSnapshot.department_code == "JB-C030")
        ).one()
        assert snapshot.kissflow_item_id == "Pk1"
        assert float(snapshot.previous_value) == 100.0
        assert float(snapshot.synced_amount) == 1200.5
        assert float(snapshot.new_value) == 1300.5
        assert snapshot.period_name == "March"

    # A second run finds nothing new to push.
    again = sync_budget(_sheets(), kissflow, factory, BudgetSyncOptions(month=3, year=2025))
    assert again.imported == {"Others": 0, "PO": 0}
    assert (again.updated, again.not_found) == (0, 1)
    assert len(kissflow.updates) == 2


def test_sync_budget_failed_update_leaves_transactions_unsynced(factory) -> None:
    kissflow = _StubKissflow(_budget_items(), fail_ids={"Pk2"})

    result = sync_budget(_sheets(), kissflow, factory, BudgetSyncOptions(month=3, year=2025))

    assert result.errors == 1
    assert not result.ok
    with factory() as session:
        synced = session.scalars(
            select(BudgetSyncTransaction.transaction_id).where(BudgetSyncTransaction.synced_at.is_not(None))
        ).all()
    assert sorted(synced) == ["PO-1", "PO-2"]


def test_sync_budget_dry_run_changes_nothing(factory) -> None:
    kissflow = _StubKissflow(_budget_items())

    result = sync_budget(_sheets(), kissflow, factory, BudgetSyncOptions(month=3, year=2025, dry_run=True))

    assert result.dry_run
    assert result.updated == 2
    assert kissflow.updates == []
    with factory() as session:
        assert session.scalars(select(BudgetSyncSnapshot)).all() == []


def test_sync_budget_import_only_skips_kissflow(factory) -> None:
    result = sync_budget(_sheets(), None, factory, BudgetSyncOptions(month=3, year=2025, import_only=True))

    assert result.imported == {"Others": 2, "PO": 2}
    assert result.departments == 0


def test_sync_budget_needs_kissflow_for_updates(factory) -> None:
    with pytest.raises(ValueError, match="Kissflow client is required"):
        sync_budget(_sheets(), None, factory, BudgetSyncOptions(month=3, year=2025))


def test_month_is_validated(factory) -> None:
    with pytest.raises(ValueError, match="Month must be between 1 and 12"):
        sync_budget(_sheets(), None, factory, BudgetSyncOptions(month=13))
