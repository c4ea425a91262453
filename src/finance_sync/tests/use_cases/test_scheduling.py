from __future__ import annotations

from datetime import datetime

import pytest

from src.finance_sync.config.settings import DEFAULT_SCHEDULE_PATH
from src.finance_sync.use_cases.scheduling import (
    ScheduledJob,
    due_jobs,
    load_schedule,
    parse_schedule,
    run_due_jobs,
)


@pytest.mark.parametrize(
    ("frequency", "now", "expected"),
    [
        ("every_thirty_minutes", datetime(2025, 1, 1, 9, 30), True),
        ("every_thirty_minutes", datetime(2025, 1, 1, 9, 15), False),
        ("hourly", datetime(2025, 1, 1, 9, 0), True),
        ("hourly", datetime(2025, 1, 1, 9, 30), False),
        ("daily", datetime(2025, 1, 1, 0, 0), True),
        ("daily", datetime(2025, 1, 1, 9, 0), False),
    ],
)
def test_is_due(frequency, now, expected) -> None:
    assert ScheduledJob(name="job", frequency=frequency).is_due(now) is expected


def test_parse_schedule_rejects_bad_entries() -> None:
    assert parse_schedule(None) == []
    with pytest.raises(ValueError, match="must have a name"):
        parse_schedule({"jobs": [{"frequency": "hourly"}]})
    with pytest.raises(ValueError, match="Unknown frequency 'weekly'"):
        parse_schedule({"jobs": [{"name": "sync-vendors", "frequency": "weekly"}]})


def test_default_schedule_loads() -> None:
    schedule = load_schedule(DEFAULT_SCHEDULE_PATH)

    names = [job.name for job in schedule]
    assert "sync-vendors" in names
    assert [job.name for job in due_jobs(schedule, datetime(2025, 1, 1, 10, 30))] == ["sync-vendors"]
    assert len(due_jobs(schedule, datetime(2025, 1, 1, 0, 0))) == len(schedule)


def test_load_schedule_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_schedule(tmp_path / "nope.yaml")


def test_run_due_jobs_keeps_going_after_a_failure() -> None:
    schedule = [
        ScheduledJob(name="sync-vendors", frequency="hourly"),
        ScheduledJob(name="sync-employees", frequency="hourly"),
        ScheduledJob(name="sync-items", frequency="hourly"),
        ScheduledJob(name="sync-accounts", frequency="daily"),
    ]
    calls: list[str] = []

    def runner(name: str) -> int:
        calls.append(name)
        if name == "sync-vendors":
            raise RuntimeError("boom")
        return 1 if name == "sync-items" else 0

    run = run_due_jobs(schedule, datetime(2025, 1, 1, 9, 0), runner)

    assert calls == ["sync-vendors", "sync-employees", "sync-items"]
    assert run.ran == calls
    assert run.failed == ["sync-vendors", "sync-items"]
    assert not run.ok


def test_run_due_jobs_logs_the_traceback_of_a_raising_job(caplog) -> None:
    schedule = [ScheduledJob(name="sync-vendors", frequency="hourly")]

    def runner(name: str) -> int:
        raise KeyError("currency")

    with caplog.at_level("INFO"):
        run = run_due_jobs(schedule, datetime(2025, 1, 1, 9, 0), runner)

    assert run.ran == ["sync-vendors"]
    assert run.failed == ["sync-vendors"]
    raised = [r for r in caplog.records if r.getMessage() == "Scheduled job sync-vendors raised"]
    assert len(raised) == 1
    assert raised[0].exc_info[0] is KeyError
    assert "failed with exit code 1" in caplog.text


def test_run_due_jobs_with_nothing_due(caplog) -> None:
    with caplog.at_level("INFO"):
        run = run_due_jobs(
            [ScheduledJob(name="sync-items", frequency="daily")], datetime(2025, 1, 1, 9, 5), lambda n: 0
        )

    assert run.ran == []
    assert run.ok
    assert "No scheduled jobs due at 09:05" in caplog.text
