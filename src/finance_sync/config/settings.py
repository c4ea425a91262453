"""Runtime settings for the finance sync jobs.

Everything comes from the process environment (optionally seeded from `.env`).
Clients read their own credentials via `from_env()`; this module only holds
values shared across jobs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=False)

CONFIG_DIR = Path(__file__).resolve().parent
DEFAULT_SCHEDULE_PATH = CONFIG_DIR / "schedule.yaml"
DEFAULT_PO_ITEMS_PATH = CONFIG_DIR / "po_items.json"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_first(*names: str) -> str | None:
    """Return the first non-blank value among the given environment variables."""

    for name in names:
        value = os.environ.get(name)
        if value is not None and value.strip() != "":
            return value.strip()
    return None


@dataclass(frozen=True, slots=True)
class Settings:
    environment: str
    database_url: str
    schedule_path: str
    po_items_path: str
    journal_spreadsheet_id: str | None = None
    vendors_spreadsheet_id: str | None = None

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(override=False)
        environment = (os.environ.get("NETSUITE_ENVIRONMENT") or "sandbox").strip().lower()
        if environment not in {"sandbox", "production"}:
            raise ValueError(
                f"NETSUITE_ENVIRONMENT must be 'sandbox' or 'production', got {environment!r}"
            )

        return cls(
            environment=environment,
            database_url=os.environ.get("DATABASE_URL", "sqlite:///finance_sync.db"),
            schedule_path=os.environ.get("FINANCE_SYNC_SCHEDULE", str(DEFAULT_SCHEDULE_PATH)),
            po_items_path=os.environ.get("PO_ITEMS_PATH", str(DEFAULT_PO_ITEMS_PATH)),
            journal_spreadsheet_id=env_first("JOURNAL_ENTRIES_SPREADSHEET_ID"),
            vendors_spreadsheet_id=env_first("VENDORS_SPREADSHEET_ID"),
        )


def configure_logging(level: str | None = None) -> None:
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=_LOG_FORMAT)
