"""The night-shift daemon: poll loop, heartbeat and shutdown.

Each tick runs, in order:
1. Hot-reload the recurring task list (a broken config is logged, not fatal)
2. Materialize due recurring tasks into the queue
3. Handle completed tasks (report, queue completion, counters, notification)
4. Claim and dispatch ready tasks while the pool has capacity
5. Write the heartbeat

Ticks never overlap: the next one is scheduled only after the current one
returns. The heartbeat runs on its own thread so a long tick cannot make
the daemon look dead.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from .agent_runner import AgentRunner
from .code_agent import CodeAgentTaskRunner
from .config import (
    Config,
    ensure_nightshift_dirs,
    get_base_dir,
    get_daemon_lock_path,
    get_logs_dir,
    get_scheduler_state_path,
    get_workspace_dir,
    load_config,
)
from .env_loader import load_env_file
from .errors import ConfigError, NightShiftError
from .health import DaemonState, remove_pid_file, write_daemon_state, write_pid_file
from .lock_utils import try_lock, unlock
from .models import Task, TaskResult, isoformat, utc_now
from .notifications import NtfyClient, NtfyMessage
from .pool import AgentPool, TaskRunner
from .reporter import write_report
from .scheduler import Scheduler
from .task_queue import TaskQueue, make_task_queue

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def setup_logging(base: Path | str | None = None, debug: bool = False, retention_days: int = 30) -> Path:
    """Log to .nightshift/logs/daemon-YYYY-MM-DD.log and prune old log files.

    Returns:
        Path of today's log file
    """
    logs_dir = get_logs_dir(base)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"daemon-{datetime.now().strftime('%Y-%m-%d')}.log"

    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    prune_old_logs(logs_dir, retention_days)
    return log_path


def prune_old_logs(logs_dir: Path, retention_days: int) -> int:
    """Delete daemon log files older than the retention window."""
    cutoff = time.time() - retention_days * 86400
    removed = 0
    for path in logs_dir.glob("daemon-*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning("Could not prune %s: %s", path, e)
    return removed


class Daemon:
    """Long-running task daemon.

    Args:
        base: Directory holding nightshift.yaml and .nightshift/
    """

    def __init__(self, base: Path | str | None = None):
        self.base = Path(base) if base is not None else get_base_dir()
        self.config: Config | None = None
        self.queue: TaskQueue | None = None
        self.scheduler: Scheduler | None = None
        self.pool: AgentPool | None = None
        self.ntfy: NtfyClient | None = None

        self.state = DaemonState(pid=os.getpid())
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None
        self._stopped = False

    # -----------------------------------------------------------------
    # Setup
    # -----------------------------------------------------------------

    def setup(self, config: Config | None = None) -> None:
        """Load config and build the queue, scheduler, pool and notifier.

        Raises:
            ConfigError: If the config cannot be loaded
        """
        self.config = config or load_config(self.base)
        ensure_nightshift_dirs(self.base)

        # Backend is chosen once; changing beads.enabled needs a restart
        self.queue = make_task_queue(self.config, self.base)
        self.scheduler = Scheduler(self.config, self.queue, get_scheduler_state_path(self.base))
        self.scheduler.load_state()
        self.pool = AgentPool(self.config.max_concurrent, self.make_runner)
        self.ntfy = NtfyClient(self.config.ntfy) if self.config.ntfy else None

    def make_runner(self, task: Task) -> TaskRunner:
        if task.kind == "code-agent":
            return CodeAgentTaskRunner(self.config, self.base)
        return AgentRunner(get_workspace_dir(self.config.workspace, self.base))

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def start(self) -> None:
        """Run until request_stop() is called, then shut down cleanly."""
        if self.pool is None:
            self.setup()

        write_pid_file(self.state.pid, self.base)
        self.write_heartbeat()
        logger.info(
            "Daemon started (pid %d, max_concurrent %d, poll %dms, beads %s, %d recurring)",
            self.state.pid,
            self.config.max_concurrent,
            self.config.daemon.poll_interval_ms,
            "on" if self.config.beads_enabled else "off",
            len(self.config.recurring),
        )

        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name="nightshift-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()

        try:
            self.run_forever()
        finally:
            self.stop()

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Poll loop error")
            self._stop_event.wait(self.config.daemon.poll_interval_ms / 1000)

    def _heartbeat_loop(self) -> None:
        interval = self.config.daemon.heartbeat_interval_ms / 1000
        while not self._heartbeat_stop.wait(interval):
            self.write_heartbeat()

    def request_stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def force_stop(self) -> None:
        """Terminate in-flight agents so shutdown does not wait for them."""
        self._stop_event.set()
        if self.pool is not None:
            self.pool.kill_all()

    def stop(self) -> None:
        """Drain running tasks, record them and mark the daemon stopped."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        with self._state_lock:
            self.state.status = "stopping"
        self.write_heartbeat()
        logger.info("Daemon stopping, draining active tasks...")

        self._heartbeat_stop.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join()

        if self.pool is not None:
            for record in self.pool.drain():
                self.handle_completed(record)
            self.pool.shutdown()

        with self._state_lock:
            self.state.status = "stopped"
            self.state.active_tasks = 0
        self.write_heartbeat()
        remove_pid_file(self.base)
        logger.info(
            "Daemon stopped (%d executed, $%.2f total)",
            self.state.total_executed, self.state.total_cost_usd,
        )

    # -----------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------

    def tick(self) -> None:
        self.reload_config()

        created = self.scheduler.evaluate_schedules()
        if created:
            logger.info("Created %d recurring task(s)", len(created))

        for record in self.pool.collect_completed():
            self.handle_completed(record)

        self.dispatch_ready()

        with self._state_lock:
            self.state.active_tasks = self.pool.active_count
        self.write_heartbeat()

    def reload_config(self) -> None:
        try:
            config = load_config(self.base)
        except ConfigError as e:
            logger.warning("Config reload failed, keeping previous config: %s", e)
            return
        self.config = config
        self.scheduler.update_config(config)

    def dispatch_ready(self) -> int:
        """Claim and dispatch ready tasks until the pool is full.

        Returns:
            Number of tasks dispatched
        """
        if not self.pool.can_accept():
            return 0

        try:
            ready = self.queue.list_ready()
        except (NightShiftError, OSError) as e:
            logger.error("Failed to list ready tasks: %s", e)
            return 0

        dispatched = 0
        for task in ready:
            if not self.pool.can_accept():
                break
            claimed = self.queue.claim(task)
            if claimed is None:
                continue
            if self.pool.dispatch(claimed):
                dispatched += 1
                self.notify_start(claimed)
        return dispatched

    def handle_completed(self, record: TaskResult) -> None:
        task, result = record.task, record.result
        logger.info(
            "Task %s (%s) finished: %s, $%.4f", task.id, task.name, task.status, result.total_cost_usd
        )

        try:
            report_path = write_report(record, self.base)
            logger.info("Report written to %s", report_path)
        except OSError as e:
            logger.error("Failed to write report for %s: %s", task.id, e)

        try:
            self.queue.complete(task, failed=result.is_error)
        except (NightShiftError, OSError) as e:
            logger.error("Failed to complete %s in queue: %s", task.id, e)

        with self._state_lock:
            self.state.total_executed += 1
            self.state.total_cost_usd += result.total_cost_usd

        self.notify_end(record)

    # -----------------------------------------------------------------
    # Notifications and heartbeat
    # -----------------------------------------------------------------

    def notify_start(self, task: Task) -> None:
        if self.ntfy is None or not task.notify:
            return
        self.ntfy.send(
            NtfyMessage(
                title=f"Night-shift started: {task.name}",
                body=f"Category: {task.category}" if task.category else "Running...",
                priority=3,
            )
        )

    def notify_end(self, record: TaskResult) -> None:
        task, result = record.task, record.result
        if self.ntfy is None or not task.notify:
            return
        if result.is_error:
            message = NtfyMessage(
                title=f"Night-shift FAILED: {task.name}",
                body=f"Error: {result.result[:200]}",
                priority=4,
                tags=["warning"],
            )
        else:
            message = NtfyMessage(
                title=f"Night-shift done: {task.name}",
                body=f"Cost: ${result.total_cost_usd:.2f} | {result.result[:200]}",
                priority=3,
                tags=["white_check_mark"],
            )
        self.ntfy.send(message)

    def write_heartbeat(self) -> None:
        with self._state_lock:
            self.state.last_heartbeat = isoformat(utc_now())
            snapshot = replace(self.state)
            try:
                write_daemon_state(snapshot, self.base)
            except OSError as e:
                logger.error("Failed to write heartbeat: %s", e)


def _install_signal_handlers(daemon: Daemon) -> None:
    def handle(signum, frame):
        if daemon.stop_requested:
            logger.warning("Second signal received, killing running agents")
            daemon.force_stop()
        else:
            logger.info("Received signal %d, shutting down", signum)
            daemon.request_stop()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)


def main() -> None:
    """Entry point for the daemon process."""
    parser = argparse.ArgumentParser(description="Run the night-shift daemon")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick, wait for dispatched tasks and exit",
    )
    args = parser.parse_args()

    base = get_base_dir()
    load_env_file(base)

    try:
        config = load_config(base)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    ensure_nightshift_dirs(base)
    log_path = setup_logging(base, debug=args.debug, retention_days=config.daemon.log_retention_days)
    if args.debug:
        print(f"Debug mode enabled - logs in {log_path}")

    lock_fd = try_lock(get_daemon_lock_path(base))
    if lock_fd is None:
        print("Another night-shift daemon is running in this directory, exiting", file=sys.stderr)
        sys.exit(1)

    try:
        daemon = Daemon(base)
        daemon.setup(config)
        if args.once:
            daemon.tick()
            daemon.stop()
            return
        _install_signal_handlers(daemon)
        daemon.start()
    finally:
        unlock(lock_fd)


if __name__ == "__main__":
    main()
