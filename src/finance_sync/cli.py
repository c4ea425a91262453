"""`finance-sync` command line: one sub-command per sync job.

Examples:
    finance-sync sync-vendors
    finance-sync sync-vendors-to-kissflow --all
    finance-sync sync-pos-from-sheets --force
    finance-sync sync-payment-type-to-bill --dry-run
    finance-sync sync-budget --month 3 --year 2025 --dry-run
    finance-sync journal-export --from 2025-09-01 --to 2025-09-30
    finance-sync run-schedule
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from typing import Any, Callable

from googleapiclient.errors import HttpError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.finance_sync.config.settings import Settings, configure_logging
from src.finance_sync.integrations.google_sheets import GoogleSheetsClient, spreadsheet_id_for
from src.finance_sync.integrations.kissflow_client import KissflowClient
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteRestClient
from src.finance_sync.store.db import get_engine, get_session_factory
from src.finance_sync.use_cases import budget_sync, journal_export, kissflow_push, reference_sync, scheduling
from src.finance_sync.use_cases import kissflow_to_sheets, sheet_intake, vendor_tools

logger = logging.getLogger(__name__)

CLI_ERRORS = (
    ValueError,
    RuntimeError,
    LookupError,
    OSError,
    HttpError,
    SQLAlchemyError,
)

VENDOR_FLAG_FIELDS = (
    "company_name",
    "entity_id",
    "email",
    "phone",
    "currency_id",
    "address_1",
    "address_2",
    "city",
    "state",
    "zip",
    "country",
    "tin_number",
    "sst_number",
    "tourism_tax",
    "einv_tin_no",
    "einv_registered_name",
    "einv_sst_register_no",
    "einv_msic_code",
    "einv_address_line1",
    "einv_city_name",
    "einv_country_code",
    "einv_state_code",
    "einv_identification_code",
    "einv_identification_type",
)


class Context:
    """Lazily built clients shared by the sub-commands of one invocation."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._factory: sessionmaker | None = None
        self._netsuite: NetSuiteRestClient | None = None
        self._kissflow: KissflowClient | None = None

    @property
    def factory(self) -> sessionmaker:
        if self._factory is None:
            self._factory = get_session_factory(get_engine(self.settings.database_url))
        return self._factory

    @property
    def netsuite(self) -> NetSuiteRestClient:
        if self._netsuite is None:
            self._netsuite = NetSuiteRestClient.from_env(self.settings.environment)
        return self._netsuite

    @property
    def kissflow(self) -> KissflowClient:
        if self._kissflow is None:
            self._kissflow = KissflowClient.from_env()
        return self._kissflow

    def sheets(self, kind: str) -> GoogleSheetsClient:
        return GoogleSheetsClient.from_env(self.settings.environment, kind=kind)


# ----- Reference data


def _reference_handler(job: str) -> Callable[[argparse.Namespace, Context], int]:
    def handler(args: argparse.Namespace, ctx: Context) -> int:
        if job == "msic-codes":
            result = reference_sync.sync_msic_codes(ctx.netsuite, ctx.factory, force=args.force)
        else:
            result = reference_sync.REFERENCE_JOBS[job](ctx.netsuite, ctx.factory)
        print(result.summary())
        for error in result.errors[:10]:
            print(f"  - {error}")
        return 0 if result.ok else 1

    return handler


# ----- Kissflow


def _targets(args: argparse.Namespace, ctx: Context) -> list[bool]:
    return kissflow_push.resolve_targets(
        sandbox=args.sandbox,
        production=args.production,
        both=args.all,
        default_is_sandbox=ctx.settings.is_sandbox,
    )


def _cmd_vendors_to_kissflow(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_push.sync_vendors_to_kissflow(ctx.kissflow, ctx.factory, _targets(args, ctx))
    print(f"Vendors pushed: {result.synced}, errors: {result.errors}")
    return 0 if result.ok else 1


def _cmd_employees_to_kissflow(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_push.sync_employees_to_kissflow(ctx.kissflow, ctx.factory, _targets(args, ctx))
    print(f"Employees pushed: {result.synced}, errors: {result.errors}")
    return 0 if result.ok else 1


def _cmd_kissflow_ids(args: argparse.Namespace, ctx: Context) -> int:
    spreadsheet = args.spreadsheet or spreadsheet_id_for("po", ctx.settings.environment)
    sheets = GoogleSheetsClient.for_spreadsheet(spreadsheet)
    result = kissflow_push.sync_kissflow_ids(
        sheets, ctx.kissflow, sheet_name=args.sheet, skip_filled=args.skip_filled
    )
    print(
        f"Kissflow ids written: {result.success}, not found: {result.not_found}, "
        f"skipped: {result.skipped}, errors: {result.errors}"
    )
    return 0


def _print_kissflow_sheet(label: str, result: kissflow_to_sheets.KissflowSheetResult) -> int:
    print(
        f"{label}: synced {result.synced}, header rows {result.header_rows}, line rows {result.line_rows}, "
        f"not found {result.not_found}, skipped {result.skipped}, errors {result.errors}"
    )
    return 0


def _cmd_kissflow_data_to_sheets(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_to_sheets.sync_epr_data_to_sheets(ctx.sheets("po"), ctx.kissflow, sheet_name=args.sheet)
    return _print_kissflow_sheet("EPR data", result)


def _cmd_kissflow_expense_to_sheets(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_to_sheets.sync_payment_requests_to_sheets(
        ctx.sheets("expense"), ctx.kissflow, sheet_name=args.sheet
    )
    return _print_kissflow_sheet("Payment Request data", result)


def _cmd_kissflow_expense_ids(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_to_sheets.sync_expense_ids_to_sheets(
        ctx.sheets("expense"), ctx.kissflow, sheet_name=args.sheet
    )
    return _print_kissflow_sheet("Expense ids", result)


def _cmd_payment_type_to_bill(args: argparse.Namespace, ctx: Context) -> int:
    result = kissflow_to_sheets.sync_payment_types(ctx.sheets("bill"), ctx.kissflow, dry_run=args.dry_run)
    if result.fatal:
        print(result.fatal)
        return 1
    if args.dry_run:
        print(f"Dry run: {result.found} cell(s) would be updated in {', '.join(result.ranges) or 'no ranges'}")
        return 0
    print(
        f"Payment types found: {result.found}, updated: {result.updated}, "
        f"skipped: {result.skipped}, errors: {result.errors}"
    )
    return 0


# ----- Sheet intake


def _print_intake(label: str, result: sheet_intake.IntakeResult) -> int:
    if result.fatal:
        print(f"{label} sync failed: {result.fatal}")
        return 1
    print(
        f"{label}: synced {result.synced}, errors {result.errors}, "
        f"already synced {result.already_synced}, empty {result.empty}"
    )
    return 0


def _cmd_pos_from_sheets(args: argparse.Namespace, ctx: Context) -> int:
    result = sheet_intake.sync_pos_from_sheets(
        ctx.sheets("po"),
        ctx.netsuite,
        ctx.factory,
        force=args.force,
        po_items_path=ctx.settings.po_items_path,
    )
    return _print_intake("POs", result)


def _cmd_bills_from_sheets(args: argparse.Namespace, ctx: Context) -> int:
    result = sheet_intake.sync_bills_from_sheets(
        ctx.sheets("bill"),
        ctx.netsuite,
        ctx.factory,
        force=args.force,
        po_items_path=ctx.settings.po_items_path,
    )
    return _print_intake("Bills", result)


def _cmd_expenses_from_sheets(args: argparse.Namespace, ctx: Context) -> int:
    result = sheet_intake.sync_expenses_from_sheets(
        ctx.sheets("expense"), ctx.netsuite, ctx.factory, force=args.force
    )
    return _print_intake("Expense Reports", result)


# ----- Budget and journal


def _cmd_sync_budget(args: argparse.Namespace, ctx: Context) -> int:
    options = budget_sync.BudgetSyncOptions(
        month=args.month,
        year=args.year,
        sheet_id=args.sheet_id,
        dry_run=args.dry_run,
        force=args.force,
        import_only=args.import_only,
    )
    options.validate()
    if options.sheet_id:
        sheets = GoogleSheetsClient.for_spreadsheet(options.sheet_id)
    else:
        sheets = ctx.sheets("po")
    kissflow = None if options.import_only else ctx.kissflow
    result = budget_sync.sync_budget(sheets, kissflow, ctx.factory, options)
    imported = ", ".join(f"{name}: {count}" for name, count in result.imported.items())
    print(f"Imported ({imported})")
    if not options.import_only:
        print(
            f"Departments: {result.departments}, updated: {result.updated}, "
            f"not found: {result.not_found}, errors: {result.errors}"
        )
    return 0 if result.ok else 1


def _cmd_journal_export(args: argparse.Namespace, ctx: Context) -> int:
    spreadsheet = ctx.settings.journal_spreadsheet_id
    if not spreadsheet:
        print("JOURNAL_ENTRIES_SPREADSHEET_ID not set in .env file")
        return 1
    options = journal_export.JournalExportOptions(
        from_date=args.from_date,
        to_date=args.to_date,
        limit=args.limit,
        append=args.append,
        force_refresh=args.force_refresh,
        clear_cache=args.clear_cache,
    )
    result = journal_export.export_purchase_orders(
        ctx.netsuite, GoogleSheetsClient.for_spreadsheet(spreadsheet), ctx.factory, options
    )
    print(
        f"POs fetched: {result.fetched}, processed: {result.processed}, "
        f"rows written: {result.rows_written}, failed: {result.failed}"
    )
    return 0


# ----- Vendor tools


def _cmd_create_vendor(args: argparse.Namespace, ctx: Context) -> int:
    data: dict[str, Any] = vendor_tools.load_vendor_input(args.file) if args.file else {}
    for name in VENDOR_FLAG_FIELDS:
        value = getattr(args, name)
        if value is not None:
            data[name] = value
    if args.inactive:
        data["is_inactive"] = True

    result = vendor_tools.create_vendor(ctx.netsuite, data)
    if not result.success:
        print(f"Vendor creation failed: {result.error}")
        if result.netsuite_response:
            print(result.netsuite_response)
        return 1
    print(f"Vendor created: internal ID {result.internal_id}, entity ID {result.entity_id or 'N/A'}")
    return 0


def _cmd_dump_vendor(args: argparse.Namespace, ctx: Context) -> int:
    vendor = vendor_tools.dump_vendor(
        ctx.netsuite, vendor_id=args.id, entity_id=args.entity_id, output=args.output
    )
    print(
        json.dumps(
            {
                "id": vendor.get("id"),
                "entityId": vendor.get("entityId"),
                "companyName": vendor.get("companyName"),
                "customFields": vendor["_customFieldsCount"],
                "output": args.output,
            },
            indent=2,
        )
    )
    return 0


# ----- Scheduling


def _cmd_run_schedule(args: argparse.Namespace, ctx: Context) -> int:
    schedule = scheduling.load_schedule(args.schedule or ctx.settings.schedule_path)
    now = datetime.fromisoformat(args.now) if args.now else datetime.now()
    parser = build_parser()

    def runner(name: str) -> int:
        try:
            return run_command(parser, [name], ctx)
        except SystemExit as e:
            # argparse exits on an unknown job name
            return e.code if isinstance(e.code, int) else 1

    run = scheduling.run_due_jobs(schedule, now, runner)
    print(f"Scheduled jobs run: {len(run.ran)}, failed: {len(run.failed)}")
    return 0 if run.ok else 1


def _add_target_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--sandbox", action="store_true", help="Only push sandbox records")
    p.add_argument("--production", action="store_true", help="Only push production records")
    p.add_argument("--all", action="store_true", help="Push both sandbox and production records")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="finance-sync", description="NetSuite / Kissflow / Google Sheets sync jobs."
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING (default: LOG_LEVEL or INFO)")
    parser.add_argument(
        "--environment",
        choices=("sandbox", "production"),
        default=None,
        help="Override NETSUITE_ENVIRONMENT",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for job in reference_sync.REFERENCE_JOBS:
        p = sub.add_parser(f"sync-{job}", help=f"Sync {job.replace('-', ' ')} from NetSuite into the local cache")
        if job == "msic-codes":
            p.add_argument("--force", action="store_true", help="Delete existing MSIC codes first")
        p.set_defaults(handler=_reference_handler(job))

    p = sub.add_parser("sync-vendors-to-kissflow", help="Push cached vendors to the Kissflow dataset")
    _add_target_flags(p)
    p.set_defaults(handler=_cmd_vendors_to_kissflow)

    p = sub.add_parser("sync-employees-to-kissflow", help="Push cached active employees to Kissflow")
    _add_target_flags(p)
    p.set_defaults(handler=_cmd_employees_to_kissflow)

    p = sub.add_parser("sync-kissflow-ids", help="Write Kissflow item ids next to PO numbers in a sheet")
    p.add_argument("--sheet", default="PO")
    p.add_argument("--spreadsheet", default=None, help="Spreadsheet id or URL (default: PO intake sheet)")
    p.add_argument("--skip-filled", action="store_true", help="Skip rows that already have an id")
    p.set_defaults(handler=_cmd_kissflow_ids)

    for name, handler, what in (
        ("sync-kissflow-data-to-sheets", _cmd_kissflow_data_to_sheets, "EPR items into the PO and Items tabs"),
        ("sync-kissflow-expense-to-sheets", _cmd_kissflow_expense_to_sheets, "Payment Requests into PR and Line Item"),
        ("sync-kissflow-expense-ids", _cmd_kissflow_expense_ids, "Non-Staff Payments into PR and Line Item"),
    ):
        p = sub.add_parser(name, help=f"Copy Kissflow {what}")
        p.add_argument("--sheet", default=kissflow_to_sheets.SOURCE_SHEET, help="Tab holding the Kissflow ids")
        p.set_defaults(handler=handler)

    p = sub.add_parser("sync-payment-type-to-bill", help="Write Kissflow Payment_Type into column D of the bill PR tab")
    p.add_argument("--dry-run", action="store_true", help="Show what would be updated without writing")
    p.set_defaults(handler=_cmd_payment_type_to_bill)

    for name, handler, what in (
        ("sync-pos-from-sheets", _cmd_pos_from_sheets, "Purchase Orders"),
        ("sync-bills-from-sheets", _cmd_bills_from_sheets, "Vendor Bills"),
        ("sync-expenses-from-sheets", _cmd_expenses_from_sheets, "Expense Reports"),
    ):
        p = sub.add_parser(name, help=f"Create {what} in NetSuite from the intake sheet")
        p.add_argument("--force", action="store_true", help="Skip the NetSuite existence check")
        p.set_defaults(handler=handler)

    p = sub.add_parser("sync-budget", help="Add period spend onto Kissflow budget items")
    p.add_argument("--month", type=int, required=True, help="Period number (1-12)")
    p.add_argument("--year", type=int, default=None, help="Financial year (default: current year)")
    p.add_argument("--sheet-id", default=None, help="Override the spreadsheet id")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--force", action="store_true", help="Include already synced transactions")
    p.add_argument("--import-only", action="store_true", help="Only import into the local ledger")
    p.set_defaults(handler=_cmd_sync_budget)

    p = sub.add_parser("journal-export", help="Export NetSuite POs to the Journal Entries sheet")
    p.add_argument("--from", dest="from_date", default=None, help="YYYY-MM-DD")
    p.add_argument("--to", dest="to_date", default=None, help="YYYY-MM-DD")
    p.add_argument("--limit", type=int, default=1000)
    p.add_argument("--append", action="store_true")
    p.add_argument("--force-refresh", action="store_true")
    p.add_argument("--clear-cache", action="store_true")
    p.set_defaults(handler=_cmd_journal_export)

    p = sub.add_parser("create-vendor", help="Create a vendor from a JSON file and/or flags")
    p.add_argument("--file", default=None, help="JSON object with vendor fields")
    p.add_argument("--inactive", action="store_true")
    for name in VENDOR_FLAG_FIELDS:
        p.add_argument(f"--{name.replace('_', '-')}", dest=name, default=None)
    p.set_defaults(handler=_cmd_create_vendor)

    p = sub.add_parser("dump-vendor", help="Save one vendor record with its custom fields to JSON")
    p.add_argument("--id", default=None)
    p.add_argument("--entity-id", default=None)
    p.add_argument("--output", default="vendor_reference.json")
    p.set_defaults(handler=_cmd_dump_vendor)

    p = sub.add_parser("run-schedule", help="Run the jobs due this minute (call from cron)")
    p.add_argument("--schedule", default=None, help="Schedule YAML (default: FINANCE_SYNC_SCHEDULE)")
    p.add_argument("--now", default=None, help="ISO timestamp to evaluate instead of the clock")
    p.set_defaults(handler=_cmd_run_schedule)

    return parser


def run_command(parser: argparse.ArgumentParser, argv: list[str], ctx: Context) -> int:
    return _dispatch(parser.parse_args(argv), ctx)


def _dispatch(args: argparse.Namespace, ctx: Context) -> int:
    try:
        return args.handler(args, ctx)
    except CLI_ERRORS as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = Settings.from_env()
    except ValueError as e:
        logger.error("%s", e)
        return 1
    if args.environment:
        settings = Settings(
            environment=args.environment,
            database_url=settings.database_url,
            schedule_path=settings.schedule_path,
            po_items_path=settings.po_items_path,
            journal_spreadsheet_id=settings.journal_spreadsheet_id,
            vendors_spreadsheet_id=settings.vendors_spreadsheet_id,
        )

    return _dispatch(args, Context(settings))


if __name__ == "__main__":
    raise SystemExit(main())
