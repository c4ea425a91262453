from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from src.finance_sync.store import budget_repo
from src.finance_sync.store.db import get_engine, get_session_factory
from src.finance_sync.store.models import BudgetSyncTransaction


def _tx(transaction_id: str, department: str, amount: str, *, period: int = 3, sheet: str = "PO"):
    return BudgetSyncTransaction(
        transaction_id=transaction_id,
        department_code=department,
        source_sheet=sheet,
        financial_year=2025,
        period_number=period,
        myr_amount=Decimal(amount),
    )


def _session():
    session = get_session_factory(get_engine("sqlite://"))()
    session.add_all(
        [
            _tx("PO-1", "JB-C030", "100.50"),
            _tx("PO-2", "JB-C030", "49.50"),
            _tx("OT-1", "KL-A100", "10.00", sheet="Others"),
            _tx("PO-3", "JB-C030", "999.00", period=4),
        ]
    )
    session.commit()
    return session


def test_exists_is_per_source_sheet() -> None:
    session = _session()

    assert budget_repo.exists(session, "PO-1", "PO")
    assert not budget_repo.exists(session, "PO-1", "Others")


def test_aggregate_by_department_for_period() -> None:
    session = _session()

    totals = budget_repo.get_aggregated_by_department(session, 2025, 3)

    assert set(totals) == {"JB-C030", "KL-A100"}
    assert totals["JB-C030"].total_amount == Decimal("150.00")
    assert totals["JB-C030"].transaction_count == 2
    assert len(totals["JB-C030"].transaction_ids) == 2


def test_mark_synced_excludes_from_unsynced_totals() -> None:
    session = _session()
    totals = budget_repo.get_aggregated_by_department(session, 2025, 3)

    updated = budget_repo.mark_synced(session, totals["JB-C030"].transaction_ids, "Pk-budget-1")
    session.commit()

    assert updated == 2
    assert set(budget_repo.get_aggregated_by_department(session, 2025, 3)) == {"KL-A100"}
    assert set(budget_repo.get_aggregated_by_department(session, 2025, 3, unsynced_only=False)) == {
        "JB-C030",
        "KL-A100",
    }
    synced = session.scalars(
        budget_repo.synced(select(BudgetSyncTransaction)).where(BudgetSyncTransaction.department_code == "JB-C030")
    ).all()
    assert {tx.kissflow_item_id for tx in synced} == {"Pk-budget-1"}
    assert all(tx.is_synced for tx in synced)
    assert budget_repo.mark_synced(session, [], "Pk-budget-1") == 0


def test_snapshots_track_synced_amounts() -> None:
    session = _session()

    budget_repo.create_snapshot(
        session,
        department_code="JB-C030",
        kissflow_item_id="Pk-budget-1",
        financial_year=2025,
        period_number=3,
        period_name="March",
        previous_value=1000,
        synced_amount=150,
        new_value=1150,
        transaction_ids=[1, 2],
    )
    latest = budget_repo.create_snapshot(
        session,
        department_code="JB-C030",
        kissflow_item_id="Pk-budget-1",
        financial_year=2025,
        period_number=4,
        period_name="April",
        previous_value=1150,
        synced_amount=999,
        new_value=2149,
        transaction_ids=[4],
    )
    session.commit()

    assert budget_repo.get_total_synced_for_department(session, "JB-C030", 2025) == 1149.0
    assert budget_repo.get_total_synced_for_department(session, "KL-A100", 2025) == 0.0
    assert budget_repo.get_latest_for_department(session, "JB-C030", 2025).id == latest.id
    assert latest.transaction_count == 1
    assert latest.transaction_ids == ["4"]
