"""Tests for the daemon poll loop, shutdown and logging setup."""

import json
import logging
import os
import signal
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from nightshift.daemon import Daemon, _install_signal_handlers, prune_old_logs, setup_logging
from nightshift.health import read_daemon_state, read_pid_file
from nightshift.models import AgentExecutionResult
from nightshift.pool import AgentPool
from nightshift.task_queue import FileTaskQueue

WAIT = 5

FILE_QUEUE_CONFIG = """
beads:
  enabled: false
daemon:
  poll_interval_ms: 20
  heartbeat_interval_ms: 50
"""


class InstantRunner:
    def __init__(self, result=None, gate=None):
        self.result = result or AgentExecutionResult(result="did it", total_cost_usd=0.75)
        self.gate = gate
        self.killed = False

    def run(self, task):
        if self.gate is not None:
            self.gate.wait(WAIT)
        return self.result

    def kill(self):
        self.killed = True
        if self.gate is not None:
            self.gate.set()


@pytest.fixture
def daemon(write_config, base_dir):
    write_config(FILE_QUEUE_CONFIG)
    d = Daemon(base_dir)
    d.setup()
    yield d
    d.pool.shutdown()


def use_runner(daemon, runner):
    daemon.pool = AgentPool(daemon.config.max_concurrent, lambda task: runner)


def wait_idle(daemon):
    with daemon.pool._cond:
        daemon.pool._cond.wait_for(lambda: not daemon.pool._in_flight, timeout=WAIT)


class TestSetup:
    def test_components_built(self, daemon):
        assert isinstance(daemon.queue, FileTaskQueue)
        assert daemon.pool.max_concurrent == 2
        assert daemon.ntfy is None

    def test_runner_by_kind(self, daemon, make_task):
        from nightshift.agent_runner import AgentRunner
        from nightshift.code_agent import CodeAgentTaskRunner

        assert isinstance(daemon.make_runner(make_task()), AgentRunner)
        assert isinstance(daemon.make_runner(make_task(kind="code-agent")), CodeAgentTaskRunner)


# =============================================================================
# Tick
# =============================================================================


class TestTick:
    def test_step_order(self, daemon):
        manager = MagicMock()
        manager.scheduler.evaluate_schedules.return_value = []
        manager.pool.collect_completed.return_value = []
        manager.pool.active_count = 0
        daemon.reload_config = manager.reload_config
        daemon.scheduler = manager.scheduler
        daemon.pool = manager.pool
        daemon.dispatch_ready = manager.dispatch_ready
        daemon.write_heartbeat = manager.write_heartbeat

        daemon.tick()

        assert [c[0] for c in manager.mock_calls] == [
            "reload_config",
            "scheduler.evaluate_schedules",
            "pool.collect_completed",
            "dispatch_ready",
            "write_heartbeat",
        ]

    def test_task_runs_through_to_report(self, daemon, make_task, base_dir):
        use_runner(daemon, InstantRunner())
        task = daemon.queue.create(make_task(name="digest"))

        daemon.tick()
        wait_idle(daemon)
        daemon.tick()

        assert daemon.queue.list_all() == []
        reports = list((base_dir / ".nightshift" / "inbox").glob("*.md"))
        assert len(reports) == 1
        assert task.id[:8] in reports[0].name
        assert daemon.state.total_executed == 1
        assert daemon.state.total_cost_usd == pytest.approx(0.75)

        state = read_daemon_state(base_dir)
        assert state.total_executed == 1
        assert state.active_tasks == 0

    def test_dispatch_respects_capacity(self, daemon, make_task):
        gate = threading.Event()
        use_runner(daemon, InstantRunner(gate=gate))
        for _ in range(3):
            daemon.queue.create(make_task())

        assert daemon.dispatch_ready() == 2
        assert daemon.dispatch_ready() == 0
        assert len(daemon.queue.list_ready()) == 1

        gate.set()
        wait_idle(daemon)

    def test_recurring_task_materialized(self, daemon, write_config):
        write_config(FILE_QUEUE_CONFIG + """
recurring:
  - name: every-minute
    schedule: "* * * * *"
    prompt: ping
""")
        use_runner(daemon, InstantRunner())

        daemon.tick()
        wait_idle(daemon)

        assert [r.name for r in daemon.scheduler.recurring] == ["every-minute"]
        assert "every-minute" in daemon.scheduler.last_runs

    def test_broken_config_keeps_previous(self, daemon, write_config):
        previous = daemon.config
        write_config("max_concurrent: nope\n")

        daemon.reload_config()

        assert daemon.config is previous

    def test_queue_listing_failure_is_logged(self, daemon):
        daemon.queue = MagicMock()
        daemon.queue.list_ready.side_effect = OSError("disk gone")
        assert daemon.dispatch_ready() == 0

    def test_lost_claim_skipped(self, daemon, make_task):
        daemon.queue = MagicMock()
        daemon.queue.list_ready.return_value = [make_task()]
        daemon.queue.claim.return_value = None
        assert daemon.dispatch_ready() == 0

    def test_claim_write_failure_does_not_abort_tick(self, daemon, make_task, base_dir):
        use_runner(daemon, InstantRunner())
        daemon.queue.create(make_task())
        state_path = base_dir / ".nightshift" / "daemon.json"
        state_path.unlink(missing_ok=True)

        with patch("nightshift.task_queue.write_json_file", side_effect=OSError("ro fs")):
            daemon.tick()

        assert daemon.pool.active_count == 0
        assert [t.status for t in daemon.queue.list_all()] == ["pending"]
        assert state_path.exists()

    def test_scheduler_write_failure_does_not_abort_tick(self, daemon, make_task, write_config, base_dir):
        use_runner(daemon, InstantRunner())
        daemon.queue.create(make_task(name="earlier"))
        daemon.dispatch_ready()
        wait_idle(daemon)
        write_config(FILE_QUEUE_CONFIG + """
recurring:
  - name: every-minute
    schedule: "* * * * *"
    prompt: ping
""")
        state_path = base_dir / ".nightshift" / "daemon.json"
        state_path.unlink(missing_ok=True)

        with patch("nightshift.scheduler.write_json_file", side_effect=OSError("disk full")):
            daemon.tick()
        wait_idle(daemon)

        assert daemon.state.total_executed == 1
        assert "every-minute" in daemon.scheduler.last_runs
        assert state_path.exists()


class TestHandleCompleted:
    def _record(self, pool_task, result):
        from nightshift.models import TaskResult, utc_now

        now = utc_now()
        return TaskResult(task=pool_task, result=result, started_at=now, completed_at=now)

    def test_failed_task_marked_in_queue(self, daemon, make_task):
        daemon.queue = MagicMock()
        task = make_task().with_status("running").with_status("failed")
        daemon.handle_completed(self._record(task, AgentExecutionResult.failure("boom")))
        daemon.queue.complete.assert_called_once_with(task, failed=True)

    def test_queue_error_does_not_stop_accounting(self, daemon, make_task):
        daemon.queue = MagicMock()
        daemon.queue.complete.side_effect = OSError("nope")
        daemon.handle_completed(self._record(make_task(), AgentExecutionResult(total_cost_usd=2.0)))
        assert daemon.state.total_executed == 1
        assert daemon.state.total_cost_usd == 2.0

    def test_notifications(self, daemon, make_task):
        daemon.ntfy = MagicMock()
        daemon.handle_completed(self._record(make_task(name="digest"), AgentExecutionResult(result="ok")))
        message = daemon.ntfy.send.call_args[0][0]
        assert message.title == "Night-shift done: digest"

        daemon.handle_completed(self._record(make_task(name="quiet", notify=False), AgentExecutionResult()))
        assert daemon.ntfy.send.call_count == 1

    def test_failure_notification(self, daemon, make_task):
        daemon.ntfy = MagicMock()
        daemon.handle_completed(self._record(make_task(name="x"), AgentExecutionResult.failure("exit 1")))
        message = daemon.ntfy.send.call_args[0][0]
        assert message.title == "Night-shift FAILED: x"
        assert message.priority == 4


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    def test_start_and_stop(self, daemon, base_dir):
        thread = threading.Thread(target=daemon.start)
        thread.start()
        deadline = time.monotonic() + WAIT
        while read_pid_file(base_dir) is None and time.monotonic() < deadline:
            time.sleep(0.01)

        assert read_pid_file(base_dir) == os.getpid()
        assert read_daemon_state(base_dir).status == "running"

        daemon.request_stop()
        thread.join(WAIT)

        assert not thread.is_alive()
        assert read_daemon_state(base_dir).status == "stopped"
        assert read_pid_file(base_dir) is None

    def test_stop_drains_running_tasks(self, daemon, make_task, base_dir):
        gate = threading.Event()
        use_runner(daemon, InstantRunner(gate=gate))
        daemon.queue.create(make_task())
        daemon.dispatch_ready()

        threading.Timer(0.1, gate.set).start()
        daemon.stop()

        assert daemon.state.total_executed == 1
        assert daemon.queue.list_all() == []
        state = json.loads((base_dir / ".nightshift" / "daemon.json").read_text())
        assert state["status"] == "stopped"
        assert state["totalExecuted"] == 1

    def test_stop_is_idempotent(self, daemon):
        daemon.stop()
        daemon.stop()
        assert daemon.state.status == "stopped"

    def test_force_stop_kills_agents(self, daemon, make_task):
        runner = InstantRunner(gate=threading.Event())
        use_runner(daemon, runner)
        daemon.queue.create(make_task())
        daemon.dispatch_ready()

        daemon.force_stop()

        assert runner.killed is True
        assert daemon.stop_requested is True
        wait_idle(daemon)

    def test_signal_handlers(self, daemon):
        with patch("nightshift.daemon.signal.signal") as mock_signal:
            _install_signal_handlers(daemon)

        handlers = {c[0][0]: c[0][1] for c in mock_signal.call_args_list}
        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}

        with patch.object(daemon, "force_stop") as mock_force:
            handlers[signal.SIGTERM](signal.SIGTERM, None)
            assert daemon.stop_requested is True
            mock_force.assert_not_called()

            handlers[signal.SIGINT](signal.SIGINT, None)
            mock_force.assert_called_once()


class TestLogging:
    def test_setup_logging_writes_daily_file(self, base_dir):
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            path = setup_logging(base_dir, debug=True)
            logging.getLogger("nightshift.test").info("hello from test")
            for handler in root.handlers:
                handler.flush()
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
            root.setLevel(level)

        assert path.name.startswith("daemon-")
        assert "hello from test" in path.read_text()

    def test_prune_old_logs(self, temp_dir):
        old = temp_dir / "daemon-2020-01-01.log"
        fresh = temp_dir / "daemon-2026-10-17.log"
        other = temp_dir / "code-agent-runs.jsonl"
        for path in (old, fresh, other):
            path.write_text("x")
        month_ago = time.time() - 31 * 86400
        os.utime(old, (month_ago, month_ago))
        os.utime(other, (month_ago, month_ago))

        assert prune_old_logs(temp_dir, retention_days=30) == 1
        assert not old.exists()
        assert fresh.exists()
        assert other.exists()
