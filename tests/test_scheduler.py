"""Tests for recurring task scheduling."""

import json
import time
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from nightshift.config import Config, RecurringTaskConfig
from nightshift.errors import BeadsError
from nightshift.scheduler import LOOKBACK, Scheduler, is_due, next_run, resolve_category
from nightshift.task_queue import TaskQueue

HOURLY = "0 * * * *"


def at(hour, minute=0, second=0, day=17):
    return datetime(2026, 10, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def utc_local_time(monkeypatch):
    """Cron expressions are evaluated in local time; pin it to UTC."""
    monkeypatch.setenv("TZ", "UTC")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def queue():
    q = MagicMock(spec=TaskQueue)
    q.create.side_effect = lambda task: task
    return q


@pytest.fixture
def hourly_config():
    return Config(
        default_timeout="45m",
        recurring=[RecurringTaskConfig(name="digest", schedule=HOURLY, prompt="Summarize today")],
    )


@pytest.fixture
def scheduler(hourly_config, queue, temp_dir):
    return Scheduler(hourly_config, queue, temp_dir / "scheduler.json")


# =============================================================================
# is_due
# =============================================================================


class TestIsDue:
    def test_never_run_fires_within_lookback(self):
        assert is_due(HOURLY, None, at(12, 2)) is True

    def test_never_run_does_not_replay_old_trigger(self):
        assert is_due(HOURLY, None, at(12, 10)) is False

    def test_lookback_boundary(self):
        edge = at(12, 0) + LOOKBACK
        assert is_due(HOURLY, None, edge - timedelta(seconds=1)) is True
        assert is_due(HOURLY, None, edge) is False

    def test_not_due_again_until_next_trigger(self):
        last = at(12, 2)
        assert is_due(HOURLY, last, at(12, 30)) is False
        assert is_due(HOURLY, last, at(13, 0)) is True

    def test_missed_triggers_fire_once(self):
        # Daemon was down for hours: one fire, then wait for the next trigger
        assert is_due(HOURLY, at(3, 0), at(12, 30)) is True
        assert is_due(HOURLY, at(12, 30), at(12, 45)) is False

    def test_pure(self):
        args = ("*/15 * * * *", at(12, 0), at(12, 20))
        assert is_due(*args) == is_due(*args)

    def test_next_run_strictly_after(self):
        assert next_run(HOURLY, at(12, 0)) == at(13, 0)


class TestResolveCategory:
    def test_first_category_for_weekday(self):
        schedule = {"saturday": ["docs", "tests"]}
        assert resolve_category(schedule, date(2026, 10, 17)) == "docs"

    def test_nothing_scheduled(self):
        assert resolve_category({"monday": ["tests"]}, date(2026, 10, 17)) is None
        assert resolve_category({"saturday": []}, date(2026, 10, 17)) is None


# =============================================================================
# Scheduler
# =============================================================================


class TestEvaluateSchedules:
    def test_due_task_is_created(self, scheduler, queue):
        created = scheduler.evaluate_schedules(at(12, 1))

        assert len(created) == 1
        task = created[0]
        assert task.name == "digest"
        assert task.origin == "recurring"
        assert task.recurring_name == "digest"
        assert task.status == "pending"
        assert task.timeout == "45m"
        queue.create.assert_called_once()

    def test_no_double_fire_within_same_window(self, scheduler, queue):
        scheduler.evaluate_schedules(at(12, 1))
        assert scheduler.evaluate_schedules(at(12, 2)) == []
        assert scheduler.evaluate_schedules(at(12, 59)) == []
        assert queue.create.call_count == 1

    def test_fires_again_next_window(self, scheduler, queue):
        scheduler.evaluate_schedules(at(12, 1))
        assert len(scheduler.evaluate_schedules(at(13, 0, 30))) == 1
        assert queue.create.call_count == 2

    def test_failed_create_is_retried(self, scheduler, queue):
        queue.create.side_effect = BeadsError("bd create failed")
        assert scheduler.evaluate_schedules(at(12, 1)) == []
        assert "digest" not in scheduler.last_runs

        queue.create.side_effect = lambda task: task
        assert len(scheduler.evaluate_schedules(at(12, 2))) == 1

    def test_one_failure_does_not_block_others(self, queue, temp_dir):
        config = Config(recurring=[
            RecurringTaskConfig(name="broken", schedule=HOURLY, prompt="a"),
            RecurringTaskConfig(name="fine", schedule=HOURLY, prompt="b"),
        ])

        def create(task):
            if task.name == "broken":
                raise OSError("disk full")
            return task

        queue.create.side_effect = create
        scheduler = Scheduler(config, queue, temp_dir / "scheduler.json")

        created = scheduler.evaluate_schedules(at(12, 1))
        assert [t.name for t in created] == ["fine"]
        assert set(scheduler.last_runs) == {"fine"}

    def test_code_agent_definition(self, queue, temp_dir):
        config = Config(recurring=[
            RecurringTaskConfig(
                name="nightly-improve", schedule=HOURLY, prompt="",
                kind="code-agent", category="tests", notify=False, timeout="2h",
            ),
        ])
        scheduler = Scheduler(config, queue, temp_dir / "scheduler.json")

        [task] = scheduler.evaluate_schedules(at(12, 1))
        assert task.kind == "code-agent"
        assert task.category == "tests"
        assert task.notify is False
        assert task.timeout == "2h"
        assert task.prompt


class TestSchedulerState:
    def test_state_saved_after_fire(self, scheduler, temp_dir):
        scheduler.evaluate_schedules(at(12, 1))

        data = json.loads((temp_dir / "scheduler.json").read_text())
        assert list(data["lastRuns"]) == ["digest"]
        assert data["lastRuns"]["digest"].startswith("2026-10-17T12:01:00")

    def test_nothing_saved_when_nothing_fired(self, scheduler, temp_dir):
        scheduler.evaluate_schedules(at(12, 30))
        assert not (temp_dir / "scheduler.json").exists()

    def test_write_failure_is_logged_and_not_refired(self, scheduler, queue, temp_dir):
        with patch("nightshift.scheduler.write_json_file", side_effect=OSError("disk full")):
            created = scheduler.evaluate_schedules(at(12, 1))

        assert [t.name for t in created] == ["digest"]
        assert "digest" in scheduler.last_runs
        assert not (temp_dir / "scheduler.json").exists()

        assert scheduler.evaluate_schedules(at(12, 3)) == []
        assert queue.create.call_count == 1

    def test_restart_does_not_refire(self, hourly_config, queue, temp_dir):
        first = Scheduler(hourly_config, queue, temp_dir / "scheduler.json")
        first.evaluate_schedules(at(12, 1))

        second = Scheduler(hourly_config, queue, temp_dir / "scheduler.json")
        second.load_state()
        assert second.evaluate_schedules(at(12, 3)) == []
        assert queue.create.call_count == 1

    def test_load_ignores_bad_entries(self, hourly_config, queue, temp_dir):
        path = temp_dir / "scheduler.json"
        path.write_text(json.dumps({"lastRuns": {"digest": "yesterday", "other": 5}}))

        scheduler = Scheduler(hourly_config, queue, path)
        scheduler.load_state()
        assert scheduler.last_runs == {}

    def test_load_missing_file(self, scheduler):
        scheduler.load_state()
        assert scheduler.last_runs == {}


class TestUpdateConfig:
    def test_new_definition_picked_up(self, scheduler):
        scheduler.update_config(Config(recurring=[
            RecurringTaskConfig(name="digest", schedule=HOURLY, prompt="Summarize today"),
            RecurringTaskConfig(name="audit", schedule="*/30 * * * *", prompt="Audit"),
        ]))

        names = sorted(t.name for t in scheduler.evaluate_schedules(at(12, 1)))
        assert names == ["audit", "digest"]

    def test_removed_definition_stops_firing(self, scheduler, queue):
        scheduler.update_config(Config(recurring=[]))
        assert scheduler.evaluate_schedules(at(12, 1)) == []
        queue.create.assert_not_called()

    def test_last_runs_survive_reload(self, scheduler, hourly_config):
        scheduler.evaluate_schedules(at(12, 1))
        scheduler.update_config(hourly_config)
        assert scheduler.evaluate_schedules(at(12, 2)) == []
