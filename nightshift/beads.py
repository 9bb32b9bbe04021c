"""Wrapper around the ``bd`` task tracker CLI and task <-> bead mapping."""

import json
import logging
import re
from typing import Any

from .errors import BeadsError
from .models import Task
from .process import SpawnResult, spawn_with_timeout

logger = logging.getLogger(__name__)

BD_TIMEOUT_SECONDS = 30

NIGHTSHIFT_LABEL = "nightshift"
ONE_OFF_LABEL = "nightshift:one-off"
RECURRING_LABEL_PREFIX = "nightshift:recurring:"
FAILED_LABEL = "nightshift:failed"

META_START = "---nightshift-meta---"
META_END = "---end-meta---"

_META_RE = re.compile(
    re.escape(META_START) + r"\n(.*?)\n" + re.escape(META_END) + r"\n\n(.*)",
    re.DOTALL,
)


class BeadsClient:
    """Runs ``bd`` subcommands. Every failure raises BeadsError."""

    def __init__(self, bin: str = "bd"):
        self.bin = bin

    def _run(self, args: list[str]) -> SpawnResult:
        try:
            result = spawn_with_timeout(self.bin, args, timeout=BD_TIMEOUT_SECONDS)
        except OSError as e:
            raise BeadsError(f"Cannot run {self.bin}: {e}", command=args[0]) from e
        if result.timed_out:
            raise BeadsError(f"{self.bin} {args[0]} timed out", command=args[0])
        return result

    def _run_json(self, args: list[str]) -> Any:
        result = self._run([*args, "--json"])
        if result.exit_code != 0:
            raise BeadsError(
                f"{self.bin} {' '.join(args)} failed: {result.stderr.strip()}", command=args[0]
            )
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise BeadsError(
                f"Failed to parse {self.bin} output as JSON: {result.stdout[:200]}",
                command=args[0],
            ) from e

    def create(self, title: str, description: str, labels: list[str]) -> str:
        """Create a bead and return its id."""
        args = ["create", title, "--description", description]
        for label in labels:
            args.extend(["--label", label])
        result = self._run(args)
        if result.exit_code != 0:
            raise BeadsError(f"Failed to create bead: {result.stderr.strip()}", command="create")

        bead_id = result.stdout.strip()
        if not bead_id:
            raise BeadsError("bd create returned empty ID", command="create")
        return bead_id

    def update(
        self,
        bead_id: str,
        *,
        claim: bool = False,
        labels: list[str] | None = None,
        description: str | None = None,
    ) -> None:
        args = ["update", bead_id]
        if claim:
            args.append("--claim")
        for label in labels or []:
            args.extend(["--label", label])
        if description:
            args.extend(["--description", description])
        result = self._run(args)
        if result.exit_code != 0:
            raise BeadsError(
                f"Failed to update bead {bead_id}: {result.stderr.strip()}", command="update"
            )

    def close(self, bead_id: str) -> None:
        result = self._run(["close", bead_id])
        if result.exit_code != 0:
            raise BeadsError(
                f"Failed to close bead {bead_id}: {result.stderr.strip()}", command="close"
            )

    def get(self, bead_id: str) -> dict[str, Any]:
        return self._run_json(["show", bead_id])

    def list_ready(self) -> list[dict[str, Any]]:
        return self._run_json(["ready", "--label", NIGHTSHIFT_LABEL]) or []

    def list_by_label(self, label: str) -> list[dict[str, Any]]:
        return self._run_json(["list", "--label", label]) or []

    def list_all(self) -> list[dict[str, Any]]:
        return self.list_by_label(NIGHTSHIFT_LABEL)

    def is_available(self) -> bool:
        try:
            return self._run(["--version"]).exit_code == 0
        except BeadsError:
            return False


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def to_bead_labels(task: Task) -> list[str]:
    labels = [NIGHTSHIFT_LABEL]
    if task.origin == "one-off":
        labels.append(ONE_OFF_LABEL)
    elif task.recurring_name:
        labels.append(f"{RECURRING_LABEL_PREFIX}{task.recurring_name}")
    return labels


def to_bead_description(task: Task) -> str:
    """Encode task settings as a metadata block followed by the prompt."""
    meta = [f"origin: {task.origin}", f"timeout: {task.timeout}"]
    if task.max_budget_usd is not None:
        meta.append(f"max_budget_usd: {task.max_budget_usd}")
    if task.model:
        meta.append(f"model: {task.model}")
    if task.allowed_tools:
        meta.append(f"allowed_tools: {', '.join(task.allowed_tools)}")
    if task.output:
        meta.append(f"output: {task.output}")
    if task.mcp_config:
        meta.append(f"mcp_config: {task.mcp_config}")
    if task.kind != "agent":
        meta.append(f"kind: {task.kind}")
    if task.category:
        meta.append(f"category: {task.category}")
    if not task.notify:
        meta.append("notify: false")

    return f"{META_START}\n" + "\n".join(meta) + f"\n{META_END}\n\n{task.prompt}"


def parse_bead_description(description: str) -> dict[str, Any]:
    """Split a bead description into metadata fields and the prompt."""
    match = _META_RE.match(description or "")
    if not match:
        return {"prompt": description or ""}

    meta_block, prompt = match.groups()
    parsed: dict[str, Any] = {"prompt": prompt}
    for line in meta_block.splitlines():
        key, sep, value = line.partition(": ")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "max_budget_usd":
            try:
                parsed[key] = float(value)
            except ValueError:
                continue
        elif key == "allowed_tools":
            parsed[key] = value.split(", ")
        elif key == "notify":
            parsed[key] = value.lower() != "false"
        elif key in ("origin", "timeout", "model", "output", "mcp_config", "kind", "category"):
            parsed[key] = value
    return parsed


def from_bead(bead: dict[str, Any]) -> Task:
    """Build a Task from a ``bd --json`` entry."""
    meta = parse_bead_description(bead.get("description", ""))
    labels = bead.get("labels") or []

    recurring_label = next((l for l in labels if l.startswith(RECURRING_LABEL_PREFIX)), None)
    if recurring_label:
        origin = "recurring"
        recurring_name = recurring_label[len(RECURRING_LABEL_PREFIX):]
    else:
        origin = meta.get("origin", "one-off")
        recurring_name = None

    kwargs: dict[str, Any] = {
        "id": bead["id"],
        "name": bead.get("title", bead["id"]),
        "origin": origin,
        "prompt": meta["prompt"],
        "timeout": meta.get("timeout", "30m"),
        "status": "completed" if bead.get("status") == "closed" else "pending",
        "recurring_name": recurring_name,
    }
    if bead.get("created_at"):
        kwargs["created_at"] = bead["created_at"]
    for key in ("max_budget_usd", "model", "allowed_tools", "output", "mcp_config", "kind", "category", "notify"):
        if key in meta:
            kwargs[key] = meta[key]
    return Task(**kwargs)
