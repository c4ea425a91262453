"""Push cached NetSuite records into Kissflow, and Kissflow ids back into Sheets."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from googleapiclient.errors import HttpError
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from src.finance_sync.integrations.google_sheets import GoogleSheetsClient, cell, col_to_a1
from src.finance_sync.integrations.kissflow_client import BatchPushResult, KissflowClient
from src.finance_sync.store.db import session_scope
from src.finance_sync.store.models import NetSuiteEmployee, NetSuiteVendor

logger = logging.getLogger(__name__)

BATCH_SIZE = 500
BATCH_PAUSE_SECONDS = 0.5
CELL_WRITE_PAUSE_SECONDS = 0.2


@dataclass(slots=True)
class PushResult:
    synced: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.errors == 0


@dataclass(slots=True)
class KissflowIdSyncResult:
    success: int = 0
    not_found: int = 0
    skipped: int = 0
    errors: int = 0


def resolve_targets(
    *, sandbox: bool = False, production: bool = False, both: bool = False, default_is_sandbox: bool = True
) -> list[bool]:
    """Environments to push, as a list of is_sandbox flags."""

    if sandbox and production:
        raise ValueError(
            "Cannot specify both sandbox and production. Use --all to sync both, "
            "or omit flags to follow NETSUITE_ENVIRONMENT."
        )
    if both:
        return [True, False]
    if sandbox:
        return [True]
    if production:
        return [False]
    return [default_is_sandbox]


def _chunks(rows: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]


def _push_in_batches(
    rows: list[dict[str, Any]],
    push,
    *,
    label: str,
) -> PushResult:
    result = PushResult()
    batches = _chunks(rows, BATCH_SIZE)
    for idx, batch in enumerate(batches, start=1):
        outcome: BatchPushResult = push(batch)
        if outcome.success:
            result.synced += outcome.count
        else:
            msg = f"Failed to push {label} batch {idx}: {outcome.error or 'Unknown error'}"
            logger.error(msg)
            result.messages.append(msg)
            result.errors += len(batch)
        if idx < len(batches):
            time.sleep(BATCH_PAUSE_SECONDS)
    return result


def _vendor_rows(factory: sessionmaker, is_sandbox: bool) -> list[dict[str, Any]]:
    with session_scope(factory) as session:
        vendors = session.scalars(
            select(NetSuiteVendor).where(NetSuiteVendor.is_sandbox == is_sandbox).order_by(NetSuiteVendor.id)
        ).all()
        return [
            {
                "internal_id": v.netsuite_id,
                "entity_id": v.entity_id or "",
                "company_name": v.name or "",
                "email": v.email or "",
                "phone": v.phone or "",
                "is_inactive": bool(v.is_inactive),
            }
            for v in vendors
        ]


def _employee_rows(factory: sessionmaker, is_sandbox: bool) -> list[dict[str, Any]]:
    with session_scope(factory) as session:
        employees = session.scalars(
            select(NetSuiteEmployee)
            .where(NetSuiteEmployee.is_sandbox == is_sandbox, NetSuiteEmployee.is_inactive.is_(False))
            .order_by(NetSuiteEmployee.id)
        ).all()
        return [{"netsuite_id": e.netsuite_id, "name": e.name} for e in employees]


def sync_vendors_to_kissflow(
    kissflow: KissflowClient, factory: sessionmaker, targets: list[bool]
) -> PushResult:
    total = PushResult()
    for is_sandbox in targets:
        env = "sandbox" if is_sandbox else "production"
        rows = _vendor_rows(factory, is_sandbox)
        if not rows:
            logger.warning("No vendors found in local database for %s environment", env)
            continue
        logger.info("Pushing %s %s vendors to Kissflow", len(rows), env)
        result = _push_in_batches(
            rows,
            lambda batch, s=is_sandbox: kissflow.push_vendors_batch(batch, is_sandbox=s),
            label=f"{env} vendor",
        )
        total.synced += result.synced
        total.errors += result.errors
        total.messages.extend(result.messages)
    return total


def sync_employees_to_kissflow(
    kissflow: KissflowClient, factory: sessionmaker, targets: list[bool]
) -> PushResult:
    total = PushResult()
    for is_sandbox in targets:
        env = "sandbox" if is_sandbox else "production"
        rows = _employee_rows(factory, is_sandbox)
        if not rows:
            logger.warning("No active employees found in local database for %s environment", env)
            continue
        logger.info("Pushing %s %s employees to Kissflow", len(rows), env)
        result = _push_in_batches(
            rows,
            lambda batch, s=is_sandbox: kissflow.push_employees_batch(batch, is_sandbox=s),
            label=f"{env} employee",
        )
        total.synced += result.synced
        total.errors += result.errors
        total.messages.extend(result.messages)
    return total


def sync_kissflow_ids(
    sheets: GoogleSheetsClient,
    kissflow: KissflowClient,
    *,
    sheet_name: str = "PO",
    skip_filled: bool = False,
) -> KissflowIdSyncResult:
    """Column A holds PO numbers; column B receives the matching Kissflow item id."""

    result = KissflowIdSyncResult()
    rows = sheets.read_sheet(sheet_name)
    if len(rows) < 2:
        logger.warning("No data found in sheet %s (need at least header + 1 row)", sheet_name)
        return result

    target_col = col_to_a1(1)
    for offset, row in enumerate(rows[1:]):
        sheet_row = offset + 2
        po_id = cell(row, 0)
        if not po_id or (skip_filled and cell(row, 1)):
            result.skipped += 1
            continue
        try:
            kissflow_id = kissflow.get_kissflow_id(po_id)
            if not kissflow_id:
                result.not_found += 1
                continue
            sheets.update_cell(sheet_name, f"{target_col}{sheet_row}", kissflow_id)
        except (RuntimeError, PermissionError, HttpError) as e:
            result.errors += 1
            logger.warning("Row %s (%s): %s", sheet_row, po_id, e)
            continue
        result.success += 1
        time.sleep(CELL_WRITE_PAUSE_SECONDS)

    logger.info(
        "Kissflow ids: success=%s not_found=%s skipped=%s errors=%s",
        result.success,
        result.not_found,
        result.skipped,
        result.errors,
    )
    return result
