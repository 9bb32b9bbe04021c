"""Harness around the code-agent pipeline.

Clones the repository, runs the pipeline, records the run and always
removes the temporary checkout.
"""

import logging
import os
from pathlib import Path

from .bead_runner import CREDENTIAL_ENV_KEY, run_bead
from .config import CodeAgentConfig, Config, parse_timeout
from .git_utils import cleanup_dir, clone_repo
from .models import AgentExecutionResult, Task, isoformat, utc_now
from .pipeline import CodeAgentRunResult, PipelineContext, run_code_agent_pipeline
from .process import ProcessRegistry
from .prompt_renderer import load_bead_prompt
from .run_logger import RunLogEntry, append_run_log

logger = logging.getLogger(__name__)

LOG_BEAD_TIMEOUT_SECONDS = 120

LOG_BEAD_ALLOWED_TOOLS = [
    "mcp__atlassian__getAccessibleAtlassianResources",
    "mcp__atlassian__getConfluencePage",
    "mcp__atlassian__updateConfluencePage",
]


def derive_summary(result: CodeAgentRunResult) -> str:
    if result.outcome == "MR_CREATED":
        return result.mr_url or "MR created"
    if result.outcome == "NO_IMPROVEMENT":
        return result.reason or "No improvement found"
    return result.reason or "Abandoned after retries"


def run_log_bead(ctx: PipelineContext, entry: RunLogEntry, mcp_config: str) -> None:
    """Record the run on the team's Confluence page through MCP tools.

    Gets the MCP config and Atlassian tools only. Never the repository credential.
    """
    variables = {
        "date": entry.date,
        "category": entry.category,
        "mr_url": entry.mr_url or "null",
        "cost_usd": f"{entry.cost_usd:.4f}",
        "duration_seconds": str(entry.duration_seconds),
        "summary": entry.summary,
        "confluence_page_id": ctx.config.confluence_page_id,
    }
    prompt = load_bead_prompt(ctx.config.prompts["log"], variables, ctx.config_dir)
    result = run_bead(
        "log",
        prompt,
        model=ctx.config.model_for("log"),
        cwd=ctx.repo_dir,
        timeout=LOG_BEAD_TIMEOUT_SECONDS,
        allowed_tools=LOG_BEAD_ALLOWED_TOOLS,
        mcp_config=mcp_config,
        registry=ctx.registry,
    )
    if result.exit_code != 0:
        logger.error("Log stage exited with %d, Confluence not updated", result.exit_code)


def run_code_agent(
    config: CodeAgentConfig,
    config_dir: Path | str,
    *,
    timeout: float,
    gitlab_token: str | None = None,
    primary_category: str | None = None,
    base: Path | str | None = None,
    registry: ProcessRegistry | None = None,
) -> CodeAgentRunResult:
    """Clone, run the pipeline, log the run, clean up.

    Args:
        config: code_agent section of the config
        config_dir: Directory prompt template paths are relative to
        timeout: Per-stage limit in seconds
        gitlab_token: Credential forwarded to the publish stage only
        primary_category: Override the weekday category schedule
        base: Base directory for the run log
        registry: Process registry for external termination

    Raises:
        GitError: If the repository cannot be cloned
    """
    repo_dir, handoff_dir = clone_repo(config.repo_url, gitlab_token)
    try:
        ctx = PipelineContext(
            config=config,
            config_dir=Path(config_dir),
            repo_dir=repo_dir,
            handoff_dir=handoff_dir,
            timeout=timeout,
            gitlab_token=gitlab_token,
            registry=registry,
        )
        result = run_code_agent_pipeline(ctx, primary_category)

        entry = RunLogEntry(
            date=isoformat(utc_now()),
            category=result.category_used,
            mr_url=result.mr_url,
            cost_usd=result.total_cost_usd,
            duration_seconds=round(result.total_duration_ms / 1000),
            summary=derive_summary(result),
        )
        try:
            append_run_log(entry, base)
        except OSError as e:
            logger.error("Failed to write run log: %s", e)

        if config.log_mcp_config:
            try:
                run_log_bead(ctx, entry, config.log_mcp_config)
            except OSError as e:
                logger.error("Log stage failed, Confluence not updated: %s", e)
        else:
            logger.warning("log_mcp_config not set, skipping Confluence update")

        return result
    finally:
        cleanup_dir(repo_dir)
        cleanup_dir(handoff_dir)


class CodeAgentTaskRunner:
    """Runs a ``code-agent`` task for the pool.

    Same run()/kill() surface as AgentRunner so the pool can treat both alike.
    """

    def __init__(self, config: Config, base: Path | str | None = None):
        self.config = config
        self.base = base
        self._processes = ProcessRegistry()

    def run(self, task: Task) -> AgentExecutionResult:
        if self.config.code_agent is None:
            return AgentExecutionResult.failure("code_agent is not configured")

        gitlab_token = os.environ.get(CREDENTIAL_ENV_KEY)
        if not gitlab_token:
            logger.warning("%s is not set, merge request creation will likely fail", CREDENTIAL_ENV_KEY)

        result = run_code_agent(
            self.config.code_agent,
            self.config.config_dir or Path.cwd(),
            timeout=parse_timeout(task.timeout),
            gitlab_token=gitlab_token,
            primary_category=task.category,
            base=self.base,
            registry=self._processes,
        )
        return AgentExecutionResult(
            duration_ms=result.total_duration_ms,
            total_cost_usd=result.total_cost_usd,
            result=f"{result.outcome} [{result.category_used}]: {derive_summary(result)}",
            is_error=result.outcome == "ABANDONED",
        )

    def kill(self) -> None:
        self._processes.terminate_all()
