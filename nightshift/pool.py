"""Bounded-concurrency dispatcher for task runners.

Each dispatched task runs on its own executor thread. Finished tasks land
in a completion buffer that collect_completed() drains exactly once.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from .models import AgentExecutionResult, Task, TaskResult, utc_now

logger = logging.getLogger(__name__)


class TaskRunner(Protocol):
    def run(self, task: Task) -> AgentExecutionResult: ...

    def kill(self) -> None: ...


RunnerFactory = Callable[[Task], TaskRunner]


@dataclass
class _InFlight:
    task: Task
    runner: TaskRunner
    started_at: datetime


class AgentPool:
    """Runs at most ``max_concurrent`` tasks at a time.

    Args:
        max_concurrent: Capacity of the pool
        runner_factory: Builds the runner for a task (chosen by task kind)
    """

    def __init__(self, max_concurrent: int, runner_factory: RunnerFactory):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.runner_factory = runner_factory
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="nightshift-agent"
        )
        self._cond = threading.Condition()
        self._in_flight: dict[str, _InFlight] = {}
        self._completed: list[TaskResult] = []

    @property
    def active_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent - self.active_count)

    def can_accept(self) -> bool:
        return self.available_slots > 0

    def running_task_ids(self) -> list[str]:
        with self._cond:
            return list(self._in_flight)

    def dispatch(self, task: Task) -> bool:
        """Start a task if there is capacity.

        Returns:
            True if started. At capacity this logs a warning and does nothing.
        """
        with self._cond:
            if len(self._in_flight) >= self.max_concurrent:
                logger.warning(
                    "Pool full (%d/%d), not dispatching %s",
                    len(self._in_flight), self.max_concurrent, task.id,
                )
                return False
            if task.id in self._in_flight:
                logger.warning("Task %s is already running", task.id)
                return False
            started_at = utc_now()
            try:
                runner = self.runner_factory(task)
            except Exception as e:
                logger.error("Could not build runner for %s: %s", task.id, e)
                self._completed.append(self._failed_record(task, str(e), started_at))
                self._cond.notify_all()
                return False
            entry = _InFlight(task=task, runner=runner, started_at=started_at)
            self._in_flight[task.id] = entry

        try:
            self._executor.submit(self._execute, entry)
        except RuntimeError:
            with self._cond:
                self._in_flight.pop(task.id, None)
                self._cond.notify_all()
            logger.error("Pool is shut down, cannot dispatch %s", task.id)
            return False

        logger.info("Dispatched %s (%s), %d/%d slots used", task.id, task.name,
                    self.active_count, self.max_concurrent)
        return True

    @staticmethod
    def _failed_record(task: Task, error: str, started_at: datetime) -> TaskResult:
        completed_at = utc_now()
        if not task.is_terminal:
            task = task.with_status("failed", completed_at)
        return TaskResult(
            task=task,
            result=AgentExecutionResult.failure(error),
            started_at=started_at,
            completed_at=completed_at,
        )

    def _execute(self, entry: _InFlight) -> None:
        try:
            result = entry.runner.run(entry.task)
        except Exception as e:
            elapsed_ms = int((utc_now() - entry.started_at).total_seconds() * 1000)
            logger.error("Task %s raised: %s", entry.task.id, e)
            result = AgentExecutionResult.failure(str(e), duration_ms=elapsed_ms)

        completed_at = utc_now()
        task = entry.task
        if not task.is_terminal:
            task = task.with_status(result.status, completed_at)
        record = TaskResult(
            task=task,
            result=result,
            started_at=entry.started_at,
            completed_at=completed_at,
        )

        with self._cond:
            self._completed.append(record)
            self._in_flight.pop(entry.task.id, None)
            self._cond.notify_all()

    def collect_completed(self) -> list[TaskResult]:
        """Return and clear everything finished since the last call."""
        with self._cond:
            completed, self._completed = self._completed, []
        return completed

    def kill_all(self) -> None:
        """Ask every in-flight runner to terminate. Does not wait."""
        with self._cond:
            entries = list(self._in_flight.values())
        for entry in entries:
            logger.info("Killing task %s", entry.task.id)
            entry.runner.kill()

    def drain(self, timeout: float | None = None) -> list[TaskResult]:
        """Wait for in-flight tasks to finish, then collect.

        Args:
            timeout: Seconds to wait; None waits indefinitely

        Returns:
            Results not yet collected (including those finished earlier)
        """
        with self._cond:
            if self._in_flight:
                logger.info("Draining %d running task(s)", len(self._in_flight))
            self._cond.wait_for(lambda: not self._in_flight, timeout=timeout)
        return self.collect_completed()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
