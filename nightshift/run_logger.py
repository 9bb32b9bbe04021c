"""Append-only JSON-lines log of code-agent runs."""

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from .config import get_run_log_path


@dataclass
class RunLogEntry:
    date: str
    category: str
    mr_url: str | None
    cost_usd: float
    duration_seconds: int
    summary: str


def append_run_log(entry: RunLogEntry, base: Path | str | None = None) -> Path:
    """Append one entry to .nightshift/logs/code-agent-runs.jsonl.

    Returns:
        Path of the log file
    """
    log_path = get_run_log_path(base)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a") as f:
        f.write(json.dumps(asdict(entry)) + "\n")
    return log_path


def read_run_log(base: Path | str | None = None) -> list[RunLogEntry]:
    """Read every well-formed entry, oldest first."""
    log_path = get_run_log_path(base)
    if not log_path.exists():
        return []

    entries = []
    for line in log_path.read_text().splitlines():
        if not line.strip():
            continue
        try:
            entries.append(RunLogEntry(**json.loads(line)))
        except (json.JSONDecodeError, TypeError):
            continue
    return entries
