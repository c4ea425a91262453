"""
ORM models for the local NetSuite cache and sync bookkeeping.

Reference tables mirror NetSuite records per environment: the same
`netsuite_id` may exist once for sandbox and once for production.

Dependencies: sqlalchemy
System role: Persistence schema for reference data, journal cache and budget sync
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.finance_sync.store.db import Base, TimestampMixin, utcnow


class ReferenceMixin(TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    netsuite_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, default=True, index=True, nullable=False)


class NetSuiteEmployee(ReferenceMixin, Base):
    __tablename__ = "netsuite_employees"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    entity_id: Mapped[str | None] = mapped_column(String(255), index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(64))
    employee_type: Mapped[str | None] = mapped_column(String(64))
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteDepartment(ReferenceMixin, Base):
    __tablename__ = "netsuite_departments"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteAccount(ReferenceMixin, Base):
    __tablename__ = "netsuite_accounts"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    account_type: Mapped[str | None] = mapped_column(String(64))
    account_number: Mapped[str | None] = mapped_column(String(64), index=True)
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteCurrency(ReferenceMixin, Base):
    __tablename__ = "netsuite_currencies"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    symbol: Mapped[str | None] = mapped_column(String(16))
    currency_code: Mapped[str | None] = mapped_column(String(16), index=True)
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 6))
    is_base_currency: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteLocation(ReferenceMixin, Base):
    __tablename__ = "netsuite_locations"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    location_type: Mapped[str | None] = mapped_column(String(64))
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteVendor(ReferenceMixin, Base):
    __tablename__ = "netsuite_vendors"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    entity_id: Mapped[str | None] = mapped_column(String(255), index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(64))
    default_currency_id: Mapped[str | None] = mapped_column(String(64))
    supported_currencies: Mapped[list[Any] | None] = mapped_column(JSON)
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteItem(ReferenceMixin, Base):
    __tablename__ = "netsuite_items"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    item_number: Mapped[str | None] = mapped_column(String(255), index=True)
    item_type: Mapped[str | None] = mapped_column(String(64), index=True)
    description: Mapped[str | None] = mapped_column(Text)
    base_price: Mapped[Decimal | None] = mapped_column(Numeric(15, 4))
    unit_of_measure: Mapped[str | None] = mapped_column(String(64))
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteExpenseCategory(ReferenceMixin, Base):
    __tablename__ = "netsuite_expense_categories"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    description: Mapped[str | None] = mapped_column(Text)
    is_inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetSuiteCountry(ReferenceMixin, Base):
    __tablename__ = "netsuite_countries"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    # NetSuite enum value, e.g. "_singapore".
    country_code: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    iso_code_2: Mapped[str | None] = mapped_column(String(2), index=True)
    iso_code_3: Mapped[str | None] = mapped_column(String(3), index=True)


class NetSuiteMSIC(ReferenceMixin, Base):
    __tablename__ = "netsuite_msic_codes"
    __table_args__ = (UniqueConstraint("netsuite_id", "is_sandbox"),)

    msic_code: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # e.g. "00000 : NOT APPLICABLE"
    ref_name: Mapped[str] = mapped_column(String(255), nullable=False)


class JournalPurchaseOrder(TimestampMixin, Base):
    __tablename__ = "journal_purchase_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    po_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tran_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    transaction_date: Mapped[date | None] = mapped_column(Date, index=True)
    department_code: Mapped[str | None] = mapped_column(String(64))
    subcode: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    currency_code: Mapped[str] = mapped_column(String(3), default="MYR", nullable=False)
    memo: Mapped[str | None] = mapped_column(Text)
    full_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )
    netsuite_last_modified: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )


class BudgetSyncTransaction(TimestampMixin, Base):
    __tablename__ = "budget_sync_transactions"
    __table_args__ = (
        UniqueConstraint("transaction_id", "source_sheet", name="unique_transaction_per_sheet"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    department_code: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    source_sheet: Mapped[str] = mapped_column(String(32), nullable=False)
    subcode: Mapped[str | None] = mapped_column(String(64))
    transaction_date: Mapped[date | None] = mapped_column(Date)
    transaction_type: Mapped[str | None] = mapped_column(String(64))
    external_reference: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    financial_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    period_name: Mapped[str | None] = mapped_column(String(32))
    myr_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    currency_code: Mapped[str | None] = mapped_column(String(10), default="MYR")
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(15, 6), default=Decimal("1"))
    finance_staff: Mapped[str | None] = mapped_column(String(255))
    invoice_id: Mapped[str | None] = mapped_column(String(255))
    kissflow_item_id: Mapped[str | None] = mapped_column(String(64), index=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def is_synced(self) -> bool:
        return self.synced_at is not None

    def mark_as_synced(self, kissflow_item_id: str | None = None) -> None:
        self.synced_at = utcnow()
        if kissflow_item_id:
            self.kissflow_item_id = kissflow_item_id


class BudgetSyncSnapshot(TimestampMixin, Base):
    __tablename__ = "budget_sync_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    department_code: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    kissflow_item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    financial_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    period_name: Mapped[str | None] = mapped_column(String(32))
    previous_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    synced_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    new_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transaction_ids: Mapped[list[str] | None] = mapped_column(JSON)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )
