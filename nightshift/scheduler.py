"""Cron-driven materialization of recurring tasks.

A recurring definition is due when its next cron trigger after the last
recorded fire is not in the future. Definitions that never fired look back
LOOKBACK from now instead, so a fresh daemon fires a job whose trigger
passed moments ago but does not replay old ones.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path

from croniter import croniter

from .config import WEEKDAYS, Config, RecurringTaskConfig
from .models import Task, generate_task_id, isoformat, parse_iso, utc_now
from .state_utils import read_json_file, write_json_file
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)

LOOKBACK = timedelta(minutes=5)


def next_run(schedule: str, after: datetime) -> datetime:
    """First trigger strictly after ``after``, in local time."""
    return croniter(schedule, after.astimezone()).get_next(datetime)


def is_due(schedule: str, last_run: datetime | None, now: datetime) -> bool:
    """Whether a job with this schedule should fire at ``now``.

    Args:
        schedule: Cron expression, evaluated in local time
        last_run: When the job last fired, None if never
        now: Current time (timezone-aware)
    """
    start = now - LOOKBACK if last_run is None else last_run
    return next_run(schedule, start) <= now


def resolve_category(
    category_schedule: dict[str, list[str]], today: date | None = None
) -> str | None:
    """First category scheduled for today's weekday, or None."""
    today = today or date.today()
    categories = category_schedule.get(WEEKDAYS[today.weekday()]) or []
    return categories[0] if categories else None


@dataclass(frozen=True)
class _ScheduleSnapshot:
    recurring: tuple[RecurringTaskConfig, ...]
    default_timeout: str


class Scheduler:
    """Owns the last-fire timestamps and turns due definitions into tasks.

    Args:
        config: Loaded config (recurring list and default timeout are used)
        queue: Backend new tasks are created in
        state_path: JSON file holding {"lastRuns": {name: iso}}
    """

    def __init__(self, config: Config, queue: TaskQueue, state_path: Path | str):
        self.queue = queue
        self.state_path = Path(state_path)
        self.last_runs: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._snapshot = _ScheduleSnapshot(tuple(config.recurring), config.default_timeout)

    def load_state(self) -> None:
        data = read_json_file(self.state_path)
        if not isinstance(data, dict):
            return
        for name, stamp in (data.get("lastRuns") or {}).items():
            try:
                self.last_runs[name] = parse_iso(stamp)
            except (AttributeError, TypeError, ValueError):
                logger.warning("Ignoring invalid last-run timestamp for %s: %r", name, stamp)

    def save_state(self) -> None:
        write_json_file(
            self.state_path,
            {"lastRuns": {name: isoformat(dt) for name, dt in self.last_runs.items()}},
        )

    def update_config(self, config: Config) -> None:
        """Swap in a reloaded recurring list. Persisted state is untouched."""
        with self._lock:
            self._snapshot = _ScheduleSnapshot(tuple(config.recurring), config.default_timeout)

    @property
    def recurring(self) -> tuple[RecurringTaskConfig, ...]:
        return self._snapshot.recurring

    def materialize(self, recurring: RecurringTaskConfig, default_timeout: str) -> Task:
        prompt = recurring.prompt
        if not prompt and recurring.kind == "code-agent":
            prompt = f"Code-agent run for {recurring.name}"
        return Task(
            id=generate_task_id(),
            name=recurring.name,
            origin="recurring",
            prompt=prompt,
            timeout=recurring.timeout or default_timeout,
            max_budget_usd=recurring.max_budget_usd,
            model=recurring.model,
            allowed_tools=recurring.allowed_tools,
            mcp_config=recurring.mcp_config,
            output=recurring.output,
            recurring_name=recurring.name,
            kind=recurring.kind,
            category=recurring.category,
            notify=recurring.notify,
        )

    def evaluate_schedules(self, now: datetime | None = None) -> list[Task]:
        """Create a task for every due definition.

        A definition whose task could not be created is not recorded as
        fired, so the next evaluation retries it.

        Returns:
            Tasks created in this evaluation
        """
        now = now or utc_now()
        with self._lock:
            snapshot = self._snapshot

        created: list[Task] = []
        for recurring in snapshot.recurring:
            if not is_due(recurring.schedule, self.last_runs.get(recurring.name), now):
                continue

            logger.info("Recurring task %r is due (%s)", recurring.name, recurring.schedule)
            try:
                task = self.queue.create(self.materialize(recurring, snapshot.default_timeout))
            except Exception as e:
                logger.error("Failed to create task for %r: %s", recurring.name, e)
                continue

            created.append(task)
            self.last_runs[recurring.name] = now

        if created:
            try:
                self.save_state()
            except OSError as e:
                logger.error("Failed to save scheduler state: %s", e)
        return created
