"""Cron-tick scheduling for the sync jobs.

`config/schedule.yaml` lists job names (CLI sub-commands) with a frequency.
A system cron calls `finance-sync run-schedule` every minute; this module
decides which jobs are due at that minute and runs them in file order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml

logger = logging.getLogger(__name__)

FREQUENCIES = ("every_thirty_minutes", "hourly", "daily")


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    name: str
    frequency: str

    def is_due(self, now: datetime) -> bool:
        if self.frequency == "every_thirty_minutes":
            return now.minute % 30 == 0
        if self.frequency == "hourly":
            return now.minute == 0
        if self.frequency == "daily":
            return now.hour == 0 and now.minute == 0
        return False


@dataclass(slots=True)
class ScheduleRun:
    ran: list[str]
    failed: list[str]

    @property
    def ok(self) -> bool:
        return not self.failed


def parse_schedule(data: dict[str, Any] | None) -> list[ScheduledJob]:
    jobs: list[ScheduledJob] = []
    for entry in (data or {}).get("jobs") or []:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"Schedule entry must have a name: {entry!r}")
        frequency = str(entry.get("frequency") or "").strip()
        if frequency not in FREQUENCIES:
            raise ValueError(
                f"Unknown frequency {frequency!r} for job {entry['name']}; expected one of {', '.join(FREQUENCIES)}"
            )
        jobs.append(ScheduledJob(name=str(entry["name"]).strip(), frequency=frequency))
    return jobs


def load_schedule(path: str | Path) -> list[ScheduledJob]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Schedule file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return parse_schedule(yaml.safe_load(f))


def due_jobs(schedule: list[ScheduledJob], now: datetime) -> list[ScheduledJob]:
    return [job for job in schedule if job.is_due(now)]


def run_due_jobs(
    schedule: list[ScheduledJob], now: datetime, runner: Callable[[str], int]
) -> ScheduleRun:
    """Run every due job through `runner` (returns an exit code); one failure never stops the rest."""

    run = ScheduleRun(ran=[], failed=[])
    for job in due_jobs(schedule, now):
        logger.info("Running scheduled job %s (%s)", job.name, job.frequency)
        try:
            code = runner(job.name)
        except Exception:
            logger.exception("Scheduled job %s raised", job.name)
            code = 1
        run.ran.append(job.name)
        if code != 0:
            logger.error("Scheduled job %s failed with exit code %s", job.name, code)
            run.failed.append(job.name)
    if not run.ran:
        logger.info("No scheduled jobs due at %s", now.strftime("%H:%M"))
    return run
