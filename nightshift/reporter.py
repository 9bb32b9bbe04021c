"""Markdown reports for finished tasks, written to the inbox."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .config import get_base_dir, get_inbox_dir
from .models import TaskResult, isoformat
from .prompt_renderer import render_template
from .state_utils import atomic_write_text

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n---", re.DOTALL)


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m"


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", name).lower()


def generate_report(record: TaskResult) -> str:
    task, result = record.task, record.result
    status = "failed" if result.is_error else "completed"
    cost = f"{result.total_cost_usd:.2f}"
    quoted_prompt = "\n> ".join(task.prompt.split("\n"))

    return (
        "---\n"
        f"task_id: {task.id}\n"
        f"task_name: {task.name}\n"
        f"origin: {task.origin}\n"
        f"status: {status}\n"
        f"started_at: {isoformat(record.started_at)}\n"
        f"completed_at: {isoformat(record.completed_at)}\n"
        f"duration_seconds: {record.duration_seconds}\n"
        f"cost_usd: {cost}\n"
        f"num_turns: {result.num_turns}\n"
        "---\n"
        "\n"
        f"# {task.name}\n"
        "\n"
        f"**Status**: {status.capitalize()} | "
        f"**Duration**: {format_duration(record.duration_seconds)} | **Cost**: ${cost}\n"
        "\n"
        "## Result\n"
        "\n"
        f"{result.result}\n"
        "\n"
        "## Original Prompt\n"
        "\n"
        f"> {quoted_prompt}\n"
    )


def write_report(record: TaskResult, base: Path | str | None = None) -> Path:
    """Write the report to the inbox, and to the task's output path if set.

    Returns:
        Path of the inbox report
    """
    task = record.task
    file_name = (
        f"{record.completed_at.strftime('%Y-%m-%d')}_{sanitize_name(task.name)}_{task.id[:8]}.md"
    )
    report_path = get_inbox_dir(base) / file_name
    content = generate_report(record)
    atomic_write_text(report_path, content)

    if task.output:
        base_dir = Path(base) if base is not None else get_base_dir()
        output_path = base_dir / render_template(task.output, {"name": task.name})
        atomic_write_text(output_path, content)
        logger.info("Report for %s also written to %s", task.id, output_path)

    return report_path


def parse_frontmatter(content: str) -> dict[str, str]:
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}
    fields = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(": ")
        if sep and key.strip():
            fields[key.strip()] = value.strip()
    return fields


@dataclass
class InboxEntry:
    file_name: str
    task_name: str
    status: str
    duration_seconds: int | None
    cost_usd: float | None


def list_reports(base: Path | str | None = None, limit: int = 10) -> list[InboxEntry]:
    """Most recent reports first."""
    inbox = get_inbox_dir(base)
    if not inbox.exists():
        return []

    entries = []
    for path in sorted(inbox.glob("*.md"), reverse=True)[:limit]:
        fm = parse_frontmatter(path.read_text(encoding="utf-8"))
        try:
            duration = int(fm["duration_seconds"]) if "duration_seconds" in fm else None
            cost = float(fm["cost_usd"]) if "cost_usd" in fm else None
        except ValueError:
            duration, cost = None, None
        entries.append(
            InboxEntry(
                file_name=path.name,
                task_name=fm.get("task_name", "unknown"),
                status=fm.get("status", "completed"),
                duration_seconds=duration,
                cost_usd=cost,
            )
        )
    return entries
