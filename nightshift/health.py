"""Daemon state and pid file persistence, liveness checks.

Status queries read these files instead of talking to the daemon, so a
crashed daemon shows up as stale without any cooperation from it.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from .config import get_daemon_pid_path, get_daemon_state_path
from .models import isoformat, parse_iso, utc_now
from .state_utils import atomic_write_text, is_process_running, read_json_file, write_json_file

logger = logging.getLogger(__name__)

# Heartbeat older than this means the daemon is gone
STALE_THRESHOLD_SECONDS = 60

DaemonStatus = Literal["running", "stopping", "stopped"]


@dataclass
class DaemonState:
    pid: int
    started_at: str = field(default_factory=lambda: isoformat(utc_now()))
    last_heartbeat: str = field(default_factory=lambda: isoformat(utc_now()))
    active_tasks: int = 0
    total_executed: int = 0
    total_cost_usd: float = 0.0
    status: DaemonStatus = "running"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonState":
        return cls(
            pid=int(data["pid"]),
            started_at=data.get("startedAt", ""),
            last_heartbeat=data.get("lastHeartbeat", ""),
            active_tasks=int(data.get("activeTasks", 0)),
            total_executed=int(data.get("totalExecuted", 0)),
            total_cost_usd=float(data.get("totalCostUsd", 0.0)),
            status=data.get("status", "stopped"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "startedAt": self.started_at,
            "lastHeartbeat": self.last_heartbeat,
            "activeTasks": self.active_tasks,
            "totalExecuted": self.total_executed,
            "totalCostUsd": self.total_cost_usd,
            "status": self.status,
        }


def write_pid_file(pid: int, base: Path | str | None = None) -> None:
    atomic_write_text(get_daemon_pid_path(base), str(pid))


def read_pid_file(base: Path | str | None = None) -> int | None:
    try:
        return int(get_daemon_pid_path(base).read_text().strip())
    except (OSError, ValueError):
        return None


def remove_pid_file(base: Path | str | None = None) -> None:
    get_daemon_pid_path(base).unlink(missing_ok=True)


def write_daemon_state(state: DaemonState, base: Path | str | None = None) -> None:
    write_json_file(get_daemon_state_path(base), state.to_dict())


def read_daemon_state(base: Path | str | None = None) -> DaemonState | None:
    data = read_json_file(get_daemon_state_path(base))
    if not isinstance(data, dict):
        return None
    try:
        return DaemonState.from_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


def heartbeat_age_seconds(state: DaemonState, now: datetime | None = None) -> float | None:
    try:
        last = parse_iso(state.last_heartbeat)
    except (TypeError, ValueError):
        return None
    return ((now or utc_now()) - last).total_seconds()


def is_daemon_running(state: DaemonState, now: datetime | None = None) -> bool:
    """Alive iff not stopped, the pid exists and the heartbeat is fresh."""
    if state.status == "stopped":
        return False
    if not is_process_running(state.pid):
        return False
    age = heartbeat_age_seconds(state, now)
    return age is not None and age <= STALE_THRESHOLD_SECONDS


def cleanup_stale_state(base: Path | str | None = None) -> bool:
    """Mark a dead daemon as stopped and remove its pid file.

    Returns:
        True if stale state was cleaned up
    """
    state = read_daemon_state(base)
    if state is None or state.status == "stopped" or is_daemon_running(state):
        return False

    logger.info("Cleaning up stale daemon state (pid %d)", state.pid)
    remove_pid_file(base)
    write_daemon_state(replace(state, status="stopped"), base)
    return True
