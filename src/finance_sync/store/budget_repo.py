"""
Query helpers for budget reconciliation bookkeeping.

Dependencies: sqlalchemy, src.finance_sync.store.models
System role: Dedupe, aggregate and snapshot budget transactions pushed to Kissflow
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session

from src.finance_sync.store.db import utcnow
from src.finance_sync.store.models import BudgetSyncSnapshot, BudgetSyncTransaction

Tx = BudgetSyncTransaction


@dataclass(slots=True)
class DepartmentTotal:
    department_code: str
    total_amount: Decimal
    transaction_count: int
    transaction_ids: list[int] = field(default_factory=list)


def for_year(stmt: Select, year: int) -> Select:
    return stmt.where(Tx.financial_year == year)


def for_period(stmt: Select, period: int) -> Select:
    return stmt.where(Tx.period_number == period)


def for_department(stmt: Select, department_code: str) -> Select:
    return stmt.where(Tx.department_code == department_code)


def synced(stmt: Select) -> Select:
    return stmt.where(Tx.synced_at.is_not(None))


def unsynced(stmt: Select) -> Select:
    return stmt.where(Tx.synced_at.is_(None))


def from_sheet(stmt: Select, sheet: str) -> Select:
    return stmt.where(Tx.source_sheet == sheet)


def exists(session: Session, transaction_id: str, source_sheet: str) -> bool:
    stmt = select(Tx.id).where(Tx.transaction_id == transaction_id, Tx.source_sheet == source_sheet)
    return session.scalars(stmt.limit(1)).first() is not None


def get_aggregated_by_department(
    session: Session, year: int, period: int, *, unsynced_only: bool = True
) -> dict[str, DepartmentTotal]:
    """Sum of MYR amounts per department for one financial year and period."""

    stmt = for_period(for_year(select(Tx), year), period)
    if unsynced_only:
        stmt = unsynced(stmt)

    totals: dict[str, DepartmentTotal] = {}
    for tx in session.scalars(stmt.order_by(Tx.department_code, Tx.id)):
        entry = totals.setdefault(
            tx.department_code,
            DepartmentTotal(
                department_code=tx.department_code, total_amount=Decimal("0"), transaction_count=0
            ),
        )
        entry.total_amount += Decimal(tx.myr_amount or 0)
        entry.transaction_count += 1
        entry.transaction_ids.append(tx.id)
    return totals


def mark_synced(session: Session, transaction_ids: list[int], kissflow_item_id: str) -> int:
    if not transaction_ids:
        return 0
    result = session.execute(
        update(Tx)
        .where(Tx.id.in_(transaction_ids))
        .values(synced_at=utcnow(), kissflow_item_id=kissflow_item_id)
    )
    return result.rowcount or 0


def get_latest_for_department(
    session: Session, department_code: str, year: int
) -> BudgetSyncSnapshot | None:
    stmt = (
        select(BudgetSyncSnapshot)
        .where(
            BudgetSyncSnapshot.financial_year == year,
            BudgetSyncSnapshot.department_code == department_code,
        )
        .order_by(BudgetSyncSnapshot.synced_at.desc(), BudgetSyncSnapshot.id.desc())
    )
    return session.scalars(stmt.limit(1)).first()


def get_total_synced_for_department(session: Session, department_code: str, year: int) -> float:
    total = session.scalar(
        select(func.coalesce(func.sum(BudgetSyncSnapshot.synced_amount), 0)).where(
            BudgetSyncSnapshot.financial_year == year,
            BudgetSyncSnapshot.department_code == department_code,
        )
    )
    return float(total or 0)


def create_snapshot(
    session: Session,
    *,
    department_code: str,
    kissflow_item_id: str,
    financial_year: int,
    period_number: int,
    period_name: str | None,
    previous_value: float | None,
    synced_amount: float,
    new_value: float,
    transaction_ids: list[int] | None = None,
) -> BudgetSyncSnapshot:
    ids = list(transaction_ids or [])
    snapshot = BudgetSyncSnapshot(
        department_code=department_code,
        kissflow_item_id=kissflow_item_id,
        financial_year=financial_year,
        period_number=period_number,
        period_name=period_name,
        previous_value=Decimal(str(previous_value or 0)),
        synced_amount=Decimal(str(synced_amount)),
        new_value=Decimal(str(new_value)),
        transaction_count=len(ids),
        transaction_ids=[str(i) for i in ids],
        synced_at=utcnow(),
    )
    session.add(snapshot)
    session.flush()
    return snapshot
