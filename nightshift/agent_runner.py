"""Run a single task through ``claude -p``."""

import logging
from pathlib import Path

from .config import parse_timeout
from .errors import AgentExecutionError, AgentTimeoutError
from .models import AgentExecutionResult, Task
from .process import ProcessRegistry, spawn_with_timeout

logger = logging.getLogger(__name__)

CLAUDE_COMMAND = "claude"


class AgentRunner:
    """Spawns the agent for one task, waits for it and parses its JSON output.

    Args:
        workspace_dir: Working directory the agent runs in and writes to
        command: Agent executable (overridable for tests)
    """

    def __init__(self, workspace_dir: Path | str, command: str = CLAUDE_COMMAND):
        self.workspace_dir = Path(workspace_dir)
        self.command = command
        self._processes = ProcessRegistry()

    @property
    def is_running(self) -> bool:
        return len(self._processes) > 0

    def build_args(self, task: Task) -> list[str]:
        args = [
            "-p",
            task.prompt,
            "--output-format",
            "json",
            "--dangerously-skip-permissions",
            "--no-session-persistence",
        ]

        if task.allowed_tools:
            args.append("--allowedTools")
            args.extend(task.allowed_tools)

        if task.max_budget_usd is not None:
            args.extend(["--max-budget-usd", str(task.max_budget_usd)])

        if task.model:
            args.extend(["--model", task.model])

        if task.mcp_config:
            args.extend(["--mcp-config", task.mcp_config])

        args.extend([
            "--append-system-prompt",
            f"You are executing a night-shift task autonomously. Task: {task.name}. "
            f"Write output files to: {self.workspace_dir}. "
            "Provide a clear summary of what you did.",
        ])
        return args

    def run(self, task: Task) -> AgentExecutionResult:
        """Run the task to completion.

        A timeout is returned as an error result. A non-zero exit raises.

        Raises:
            AgentExecutionError: If the agent exited with a non-zero code
        """
        timeout_seconds = parse_timeout(task.timeout)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            "Starting agent for task %s (%s, timeout %s, model %s)",
            task.id, task.name, task.timeout, task.model or "default",
        )

        spawned = spawn_with_timeout(
            self.command,
            self.build_args(task),
            timeout=timeout_seconds,
            cwd=self.workspace_dir,
            registry=self._processes,
        )

        if spawned.timed_out:
            message = str(AgentTimeoutError(task.id, task.timeout))
            logger.warning("Task %s: %s", task.id, message)
            return AgentExecutionResult.failure(
                message, duration_ms=int(timeout_seconds * 1000), timed_out=True
            )

        if spawned.exit_code != 0:
            error = spawned.stderr.strip() or spawned.stdout.strip() or "Unknown error"
            logger.error("Task %s failed with exit code %s", task.id, spawned.exit_code)
            raise AgentExecutionError(
                f"claude -p exited with code {spawned.exit_code}: {error}", task.id
            )

        result = AgentExecutionResult.from_claude_json(spawned.stdout)
        logger.info(
            "Task %s completed: %dms, $%.4f, %d turns, error=%s",
            task.id, result.duration_ms, result.total_cost_usd, result.num_turns, result.is_error,
        )
        return result

    def kill(self) -> None:
        """Terminate the running agent, if any. Does not wait."""
        self._processes.terminate_all()
