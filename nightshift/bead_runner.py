"""Run one code-agent pipeline stage ("bead") through ``claude -p``.

The environment of every stage is built from an allow-list. The repository
credential is added for the ``mr`` stage only and never appears in the
argument list.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .process import ProcessRegistry, spawn_with_timeout

logger = logging.getLogger(__name__)

BeadName = Literal["analyze", "implement", "verify", "mr", "log"]

SAFE_ENV_KEYS = ("HOME", "PATH", "USER", "LANG", "SHELL", "TERM")

CREDENTIAL_ENV_KEY = "GITLAB_TOKEN"

DEFAULT_BEAD_TOOLS = ["Bash", "Read", "Write"]


@dataclass(frozen=True)
class BeadResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    cost_usd: float
    timed_out: bool


def build_bead_env(bead: BeadName, gitlab_token: str | None) -> dict[str, str]:
    """Build the environment for a stage from the allow-list.

    Never copies os.environ wholesale.
    """
    env = {key: os.environ[key] for key in SAFE_ENV_KEYS if key in os.environ}
    if bead == "mr" and gitlab_token:
        env[CREDENTIAL_ENV_KEY] = gitlab_token
    return env


def build_bead_args(
    prompt: str,
    model: str,
    max_budget: float | int | None = None,
    *,
    allowed_tools: list[str] | None = None,
    mcp_config: str | None = None,
) -> list[str]:
    args = [
        "-p", prompt,
        "--output-format", "json",
        "--dangerously-skip-permissions",
        "--no-session-persistence",
        "--allowedTools", *(allowed_tools or DEFAULT_BEAD_TOOLS),
        "--model", model,
    ]
    if max_budget is not None:
        args.extend(["--max-budget-usd", str(max_budget)])
    if mcp_config:
        args.extend(["--mcp-config", mcp_config])
    return args


def run_bead(
    bead: BeadName,
    prompt: str,
    *,
    model: str,
    cwd: Path | str,
    timeout: float,
    gitlab_token: str | None = None,
    max_budget: float | int | None = None,
    allowed_tools: list[str] | None = None,
    mcp_config: str | None = None,
    registry: ProcessRegistry | None = None,
    command: str = "claude",
) -> BeadResult:
    """Run a single stage invocation.

    Never raises for a failed, timed-out or unparsable invocation; the
    pipeline decides what a bad result means. The rendered prompt is not
    logged.

    Args:
        bead: Stage name, decides whether the credential is forwarded
        prompt: Fully rendered prompt
        model: Model for this stage
        cwd: Repository checkout
        timeout: Limit in seconds
        gitlab_token: Credential, only used when bead == "mr"
        max_budget: Optional --max-budget-usd value
        allowed_tools: Tool allow-list (defaults to Bash/Read/Write)
        mcp_config: Optional MCP config path
        registry: Process registry for external termination

    Returns:
        BeadResult
    """
    env = build_bead_env(bead, gitlab_token)
    args = build_bead_args(
        prompt, model, max_budget, allowed_tools=allowed_tools, mcp_config=mcp_config
    )

    logger.info("Running %s stage (model %s, timeout %ss)", bead, model, timeout)
    try:
        spawned = spawn_with_timeout(
            command, args, timeout=timeout, cwd=cwd, env=env, registry=registry
        )
    except OSError as e:
        logger.error("Could not start %s stage: %s", bead, e)
        return BeadResult(
            exit_code=-1, stdout="", stderr=str(e), duration_ms=0, cost_usd=0.0, timed_out=False
        )

    cost_usd = 0.0
    duration_ms = int(timeout * 1000) if spawned.timed_out else 0

    if spawned.exit_code == 0 and spawned.stdout:
        try:
            parsed = json.loads(spawned.stdout)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            cost_usd = float(parsed.get("total_cost_usd") or 0.0)
            duration_ms = int(parsed.get("duration_ms") or duration_ms)

    if spawned.exit_code != 0:
        logger.warning(
            "%s stage exited with %s%s", bead, spawned.exit_code,
            " (timed out)" if spawned.timed_out else "",
        )

    return BeadResult(
        exit_code=spawned.exit_code if spawned.exit_code is not None else -1,
        stdout=spawned.stdout,
        stderr=spawned.stderr,
        duration_ms=duration_ms,
        cost_usd=cost_usd,
        timed_out=spawned.timed_out,
    )
