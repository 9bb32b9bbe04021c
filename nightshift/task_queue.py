"""Task queue backends: JSON files under .nightshift/queue or the bd tracker.

Both backends guarantee that a task is handed to at most one consumer:
claim() returns the running task to the winner and None to everyone else.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path

from .beads import FAILED_LABEL, BeadsClient, from_bead, to_bead_description, to_bead_labels
from .config import Config, get_queue_dir
from .errors import BeadsError
from .lock_utils import exclusive
from .models import Task
from .state_utils import read_json_file, write_json_file

logger = logging.getLogger(__name__)


class TaskQueue(ABC):
    @abstractmethod
    def create(self, task: Task) -> Task:
        """Persist a new pending task. Returns it with its final id."""

    @abstractmethod
    def list_ready(self) -> list[Task]:
        """Pending tasks, oldest first."""

    @abstractmethod
    def claim(self, task: Task) -> Task | None:
        """Move a pending task to running. None if someone else got it."""

    @abstractmethod
    def complete(self, task: Task, failed: bool) -> None:
        """Remove a finished task from the queue."""

    @abstractmethod
    def list_all(self) -> list[Task]:
        """Every task the queue still knows about."""


class FileTaskQueue(TaskQueue):
    """One ``<id>.json`` file per task.

    Claims run read-check-write under an flock so two daemons sharing the
    directory cannot both start the same task.
    """

    def __init__(self, queue_dir: Path | str):
        self.queue_dir = Path(queue_dir)
        self.lock_path = self.queue_dir / ".claim.lock"

    def _path(self, task_id: str) -> Path:
        return self.queue_dir / f"{task_id}.json"

    def _load(self, path: Path) -> Task | None:
        data = read_json_file(path)
        if not isinstance(data, dict):
            return None
        try:
            return Task.from_dict(data)
        except TypeError:
            logger.warning("Skipping malformed queue file %s", path)
            return None

    def create(self, task: Task) -> Task:
        write_json_file(self._path(task.id), task.to_dict())
        logger.info("Queued task %s (%s)", task.id, task.name)
        return task

    def list_all(self) -> list[Task]:
        if not self.queue_dir.exists():
            return []
        tasks = [t for t in (self._load(p) for p in self.queue_dir.glob("*.json")) if t]
        return sorted(tasks, key=lambda t: t.created_at)

    def list_ready(self) -> list[Task]:
        return [t for t in self.list_all() if t.status == "pending"]

    def claim(self, task: Task) -> Task | None:
        path = self._path(task.id)
        try:
            with exclusive(self.lock_path):
                current = self._load(path)
                if current is None or current.status != "pending":
                    return None
                running = current.with_status("running")
                write_json_file(path, running.to_dict())
        except OSError as e:
            logger.error("Could not claim %s: %s", task.id, e)
            return None
        return running

    def complete(self, task: Task, failed: bool) -> None:
        self._path(task.id).unlink(missing_ok=True)


class BeadsTaskQueue(TaskQueue):
    """Tasks stored as beads labelled ``nightshift``."""

    def __init__(self, client: BeadsClient | None = None):
        self.client = client or BeadsClient()

    def create(self, task: Task) -> Task:
        bead_id = self.client.create(task.name, to_bead_description(task), to_bead_labels(task))
        logger.info("Created bead %s for task %s", bead_id, task.name)
        return replace(task, id=bead_id)

    def list_ready(self) -> list[Task]:
        return [t for t in (from_bead(b) for b in self.client.list_ready()) if t.status == "pending"]

    def list_all(self) -> list[Task]:
        return [from_bead(b) for b in self.client.list_all()]

    def claim(self, task: Task) -> Task | None:
        try:
            self.client.update(task.id, claim=True)
        except BeadsError as e:
            logger.info("Could not claim %s: %s", task.id, e)
            return None
        return task.with_status("running")

    def complete(self, task: Task, failed: bool) -> None:
        if failed:
            self.client.update(task.id, labels=[FAILED_LABEL])
        self.client.close(task.id)


def make_task_queue(config: Config, base: Path | str | None = None) -> TaskQueue:
    """Pick the backend once from the config."""
    if config.beads_enabled:
        return BeadsTaskQueue()
    return FileTaskQueue(get_queue_dir(base))
