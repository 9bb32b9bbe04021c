"""Configuration loading, paths and constants for night-shift."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter

from .errors import ConfigError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "nightshift.yaml"
NIGHTSHIFT_DIRNAME = ".nightshift"

DEFAULT_MAX_CONCURRENT = 2
DEFAULT_TIMEOUT = "30m"
DEFAULT_POLL_INTERVAL_MS = 30_000
DEFAULT_HEARTBEAT_INTERVAL_MS = 10_000
DEFAULT_LOG_RETENTION_DAYS = 30
DEFAULT_NTFY_BASE_URL = "https://ntfy.sh"

# Shell commands the code-agent stages may run unless overridden
DEFAULT_ALLOWED_COMMANDS = [
    "git",
    "glab",
    "sbt compile",
    "sbt test",
    "sbt fmtCheck",
    "sbt fmt",
]

# Stage -> model used for that stage of the code-agent pipeline
DEFAULT_STAGE_MODELS = {
    "analyze": "opus",
    "implement": "sonnet",
    "verify": "sonnet",
    "mr": "sonnet",
    "log": "sonnet",
}

PROMPT_STAGES = ("analyze", "implement", "verify", "mr", "log")

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

TASK_KINDS = ("agent", "code-agent")

SSH_REPO_URL_RE = re.compile(r"^git@[a-zA-Z0-9._-]+:[a-zA-Z0-9._/-]+\.git$")

_TIMEOUT_RE = re.compile(r"^(\d+)(ms|s|m|h)$")
_TIMEOUT_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_timeout(value: str) -> float:
    """Convert a duration string such as ``30m`` or ``5000ms`` to seconds.

    Raises:
        ConfigError: If the string is not ``<digits><ms|s|m|h>``.
    """
    match = _TIMEOUT_RE.match(str(value).strip())
    if not match:
        raise ConfigError(
            f"Invalid timeout format: {value!r}. Use e.g. '30m', '2h', '90s', '5000ms'"
        )
    amount, unit = match.groups()
    return int(amount) * _TIMEOUT_UNITS[unit]


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def get_base_dir() -> Path:
    """Directory holding nightshift.yaml and .nightshift/.

    Overridable with NIGHTSHIFT_HOME, defaults to the current directory.
    """
    env_home = os.environ.get("NIGHTSHIFT_HOME")
    if env_home:
        return Path(env_home).resolve()
    return Path.cwd()


def _base(base: Path | str | None) -> Path:
    return Path(base) if base is not None else get_base_dir()


def get_nightshift_dir(base: Path | str | None = None) -> Path:
    return _base(base) / NIGHTSHIFT_DIRNAME


def get_config_path(base: Path | str | None = None) -> Path:
    return _base(base) / CONFIG_FILENAME


def get_inbox_dir(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "inbox"


def get_queue_dir(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "queue"


def get_logs_dir(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "logs"


def get_daemon_pid_path(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "daemon.pid"


def get_daemon_state_path(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "daemon.json"


def get_daemon_lock_path(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "daemon.lock"


def get_scheduler_state_path(base: Path | str | None = None) -> Path:
    return get_nightshift_dir(base) / "scheduler.json"


def get_run_log_path(base: Path | str | None = None) -> Path:
    return get_logs_dir(base) / "code-agent-runs.jsonl"


def get_workspace_dir(workspace: str, base: Path | str | None = None) -> Path:
    """Resolve the configured workspace directory against the base dir."""
    return (_base(base) / workspace).resolve()


def ensure_nightshift_dirs(base: Path | str | None = None) -> None:
    """Create .nightshift/ and its inbox, queue and logs subdirectories."""
    for directory in (
        get_nightshift_dir(base),
        get_inbox_dir(base),
        get_queue_dir(base),
        get_logs_dir(base),
    ):
        directory.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Config model
# ---------------------------------------------------------------------------


@dataclass
class DaemonSettings:
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS


@dataclass
class RecurringTaskConfig:
    """A recurring job definition from the ``recurring:`` list."""

    name: str
    schedule: str
    prompt: str
    allowed_tools: list[str] | None = None
    output: str | None = None
    timeout: str | None = None
    max_budget_usd: float | None = None
    model: str | None = None
    mcp_config: str | None = None
    notify: bool = True
    kind: str = "agent"
    category: str | None = None


@dataclass
class OneOffDefaults:
    timeout: str = DEFAULT_TIMEOUT
    max_budget_usd: float | None = None
    model: str | None = None


@dataclass
class NtfyConfig:
    topic: str
    token: str | None = None
    base_url: str = DEFAULT_NTFY_BASE_URL


@dataclass
class CodeAgentConfig:
    """Settings for the analyze/implement/verify/mr pipeline."""

    repo_url: str
    confluence_page_id: str = ""
    category_schedule: dict[str, list[str]] = field(default_factory=dict)
    prompts: dict[str, str] = field(
        default_factory=lambda: {stage: f"./prompts/{stage}.md" for stage in PROMPT_STAGES}
    )
    log_mcp_config: str | None = None
    reviewer: str | None = None
    allowed_commands: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    max_tokens: int | None = None
    variables: dict[str, str] = field(default_factory=dict)
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STAGE_MODELS))

    def model_for(self, stage: str) -> str:
        return self.models.get(stage) or DEFAULT_STAGE_MODELS.get(stage, "sonnet")


@dataclass
class Config:
    """Validated contents of nightshift.yaml."""

    workspace: str = "./workspace"
    inbox: str = "./inbox"
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    default_timeout: str = DEFAULT_TIMEOUT
    beads_enabled: bool = True
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    recurring: list[RecurringTaskConfig] = field(default_factory=list)
    one_off_defaults: OneOffDefaults = field(default_factory=OneOffDefaults)
    ntfy: NtfyConfig | None = None
    code_agent: CodeAgentConfig | None = None
    config_dir: Path | None = None


# ---------------------------------------------------------------------------
# Parsing and validation
# ---------------------------------------------------------------------------


class _Issues:
    """Collects validation problems so every issue is reported at once."""

    def __init__(self) -> None:
        self.items: list[str] = []

    def add(self, path: str, message: str) -> None:
        self.items.append(f"  - {path}: {message}")

    def __bool__(self) -> bool:
        return bool(self.items)


def _check_timeout(value: Any, path: str, issues: _Issues) -> str | None:
    if value is None:
        return None
    try:
        parse_timeout(str(value))
    except ConfigError:
        issues.add(path, f"invalid duration {value!r}")
        return None
    return str(value)


def _check_positive_int(value: Any, path: str, default: int, issues: _Issues) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        issues.add(path, "must be a positive integer")
        return default
    return value


def _check_budget(value: Any, path: str, issues: _Issues) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        issues.add(path, "must be a positive number")
        return None
    return float(value)


def _check_str_list(value: Any, path: str, issues: _Issues) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        issues.add(path, "must be a list of strings")
        return None
    return list(value)


def _parse_recurring(raw: Any, issues: _Issues) -> list[RecurringTaskConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        issues.add("recurring", "must be a list")
        return []

    tasks: list[RecurringTaskConfig] = []
    seen: set[str] = set()
    for i, entry in enumerate(raw):
        path = f"recurring.{i}"
        if not isinstance(entry, dict):
            issues.add(path, "must be a mapping")
            continue

        name = entry.get("name")
        schedule = entry.get("schedule")
        prompt = entry.get("prompt")
        kind = entry.get("kind", "agent")

        if not name or not isinstance(name, str):
            issues.add(f"{path}.name", "required")
            continue
        if name in seen:
            issues.add(f"{path}.name", f"duplicate recurring task name {name!r}")
        seen.add(name)

        if not schedule or not isinstance(schedule, str):
            issues.add(f"{path}.schedule", "required")
            continue
        if not croniter.is_valid(schedule):
            issues.add(f"{path}.schedule", f"invalid cron expression {schedule!r}")
            continue

        if kind not in TASK_KINDS:
            issues.add(f"{path}.kind", f"must be one of {', '.join(TASK_KINDS)}")
            kind = "agent"
        if kind == "agent" and (not prompt or not isinstance(prompt, str)):
            issues.add(f"{path}.prompt", "required")
            continue

        tasks.append(
            RecurringTaskConfig(
                name=name,
                schedule=schedule,
                prompt=prompt or "",
                allowed_tools=_check_str_list(
                    entry.get("allowed_tools"), f"{path}.allowed_tools", issues
                ),
                output=entry.get("output"),
                timeout=_check_timeout(entry.get("timeout"), f"{path}.timeout", issues),
                max_budget_usd=_check_budget(
                    entry.get("max_budget_usd"), f"{path}.max_budget_usd", issues
                ),
                model=entry.get("model"),
                mcp_config=entry.get("mcp_config"),
                notify=bool(entry.get("notify", True)),
                kind=kind,
                category=entry.get("category"),
            )
        )
    return tasks


def _parse_ntfy(raw: Any, issues: _Issues) -> NtfyConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not raw.get("topic"):
        issues.add("ntfy.topic", "required when ntfy is configured")
        return None
    return NtfyConfig(
        topic=str(raw["topic"]),
        token=raw.get("token"),
        base_url=str(raw.get("base_url") or DEFAULT_NTFY_BASE_URL).rstrip("/"),
    )


def _parse_code_agent(raw: Any, issues: _Issues) -> CodeAgentConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        issues.add("code_agent", "must be a mapping")
        return None

    repo_url = raw.get("repo_url")
    if not repo_url or not SSH_REPO_URL_RE.match(str(repo_url)):
        issues.add(
            "code_agent.repo_url",
            "must be an SSH URL like git@host:group/repo.git",
        )
        return None

    schedule_raw = raw.get("category_schedule") or {}
    category_schedule: dict[str, list[str]] = {}
    if not isinstance(schedule_raw, dict):
        issues.add("code_agent.category_schedule", "must be a mapping of weekday to list")
    else:
        for day, categories in schedule_raw.items():
            day_key = str(day).lower()
            if day_key not in WEEKDAYS:
                issues.add(f"code_agent.category_schedule.{day}", "unknown weekday")
                continue
            checked = _check_str_list(
                categories, f"code_agent.category_schedule.{day}", issues
            )
            if checked is not None:
                category_schedule[day_key] = checked

    prompts = {stage: f"./prompts/{stage}.md" for stage in PROMPT_STAGES}
    prompts_raw = raw.get("prompts") or {}
    if not isinstance(prompts_raw, dict):
        issues.add("code_agent.prompts", "must be a mapping")
    else:
        for stage, prompt_path in prompts_raw.items():
            if stage not in PROMPT_STAGES:
                issues.add(f"code_agent.prompts.{stage}", "unknown stage")
                continue
            prompts[stage] = str(prompt_path)

    models = dict(DEFAULT_STAGE_MODELS)
    models_raw = raw.get("models") or {}
    if isinstance(models_raw, dict):
        models.update({str(k): str(v) for k, v in models_raw.items()})
    else:
        issues.add("code_agent.models", "must be a mapping")

    allowed_commands = _check_str_list(
        raw.get("allowed_commands"), "code_agent.allowed_commands", issues
    )
    variables_raw = raw.get("variables") or {}
    if not isinstance(variables_raw, dict):
        issues.add("code_agent.variables", "must be a mapping")
        variables_raw = {}

    max_tokens = raw.get("max_tokens")
    if max_tokens is not None:
        max_tokens = _check_positive_int(max_tokens, "code_agent.max_tokens", 0, issues) or None

    return CodeAgentConfig(
        repo_url=str(repo_url),
        confluence_page_id=str(raw.get("confluence_page_id") or ""),
        category_schedule=category_schedule,
        prompts=prompts,
        log_mcp_config=raw.get("log_mcp_config"),
        reviewer=raw.get("reviewer"),
        allowed_commands=(
            allowed_commands if allowed_commands is not None else list(DEFAULT_ALLOWED_COMMANDS)
        ),
        max_tokens=max_tokens,
        variables={str(k): str(v) for k, v in variables_raw.items()},
        models=models,
    )


def parse_config(data: Any, config_dir: Path | None = None) -> Config:
    """Validate a parsed YAML document and build a Config.

    Args:
        data: Result of yaml.safe_load (None for an empty file)
        config_dir: Directory of the config file, used to resolve prompt paths

    Returns:
        Config instance

    Raises:
        ConfigError: Listing every problem found
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Invalid config:\n  - (root): must be a mapping")

    issues = _Issues()

    daemon_raw = data.get("daemon") or {}
    if not isinstance(daemon_raw, dict):
        issues.add("daemon", "must be a mapping")
        daemon_raw = {}
    daemon = DaemonSettings(
        poll_interval_ms=_check_positive_int(
            daemon_raw.get("poll_interval_ms"),
            "daemon.poll_interval_ms",
            DEFAULT_POLL_INTERVAL_MS,
            issues,
        ),
        heartbeat_interval_ms=_check_positive_int(
            daemon_raw.get("heartbeat_interval_ms"),
            "daemon.heartbeat_interval_ms",
            DEFAULT_HEARTBEAT_INTERVAL_MS,
            issues,
        ),
        log_retention_days=_check_positive_int(
            daemon_raw.get("log_retention_days"),
            "daemon.log_retention_days",
            DEFAULT_LOG_RETENTION_DAYS,
            issues,
        ),
    )

    one_off_raw = data.get("one_off_defaults") or {}
    if not isinstance(one_off_raw, dict):
        issues.add("one_off_defaults", "must be a mapping")
        one_off_raw = {}
    one_off = OneOffDefaults(
        timeout=_check_timeout(
            one_off_raw.get("timeout"), "one_off_defaults.timeout", issues
        ) or DEFAULT_TIMEOUT,
        max_budget_usd=_check_budget(
            one_off_raw.get("max_budget_usd"), "one_off_defaults.max_budget_usd", issues
        ),
        model=one_off_raw.get("model"),
    )

    beads_raw = data.get("beads") or {}
    beads_enabled = bool(beads_raw.get("enabled", True)) if isinstance(beads_raw, dict) else True

    config = Config(
        workspace=str(data.get("workspace", "./workspace")),
        inbox=str(data.get("inbox", "./inbox")),
        max_concurrent=_check_positive_int(
            data.get("max_concurrent"), "max_concurrent", DEFAULT_MAX_CONCURRENT, issues
        ),
        default_timeout=_check_timeout(
            data.get("default_timeout"), "default_timeout", issues
        ) or DEFAULT_TIMEOUT,
        beads_enabled=beads_enabled,
        daemon=daemon,
        recurring=_parse_recurring(data.get("recurring"), issues),
        one_off_defaults=one_off,
        ntfy=_parse_ntfy(data.get("ntfy"), issues),
        code_agent=_parse_code_agent(data.get("code_agent"), issues),
        config_dir=config_dir,
    )

    if issues:
        raise ConfigError("Invalid config:\n" + "\n".join(issues.items))
    return config


def load_config(base: Path | str | None = None) -> Config:
    """Load and validate nightshift.yaml from the base directory.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails validation
    """
    config_path = get_config_path(base)
    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {config_path}. Run 'nightshift init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    return parse_config(data, config_dir=config_path.parent)


def validate_config(base: Path | str | None = None) -> tuple[bool, Config | None, str | None]:
    """Non-raising variant of load_config for the ``config`` command."""
    try:
        return True, load_config(base), None
    except ConfigError as e:
        return False, None, str(e)


def default_config_yaml() -> str:
    """Starter nightshift.yaml written by ``nightshift init``."""
    return """workspace: ./workspace
inbox: ./inbox
max_concurrent: 2
default_timeout: "30m"

beads:
  enabled: true

daemon:
  poll_interval_ms: 30000
  heartbeat_interval_ms: 10000
  log_retention_days: 30

recurring: []
# Example recurring task:
# - name: "daily-standup-prep"
#   schedule: "0 6 * * 1-5"
#   prompt: |
#     Check Jira for my team's recent updates and prepare
#     standup notes for today's meeting.
#   allowed_tools:
#     - "mcp__jira__*"
#     - "Read"
#     - "Write"
#   output: "inbox/standup-prep-{{date}}.md"
#   timeout: "15m"
#   max_budget_usd: 2.00
#
# Example code-agent run (uses the code_agent section below):
# - name: "nightly-improvement"
#   schedule: "0 2 * * 1-5"
#   kind: code-agent
#   timeout: "2h"

# ntfy:
#   topic: night-shift
#   token: tk_abc123           # optional
#   base_url: https://ntfy.sh  # optional

# code_agent:
#   repo_url: git@gitlab.com:team/repo.git
#   confluence_page_id: "123456"
#   category_schedule:
#     monday: [tests]
#     tuesday: [refactoring]
#     wednesday: [docs]
#     thursday: [security]
#     friday: [performance]
#   # Prompt templates, relative to this file
#   # prompts:
#   #   analyze: ./prompts/analyze.md
#   #   implement: ./prompts/implement.md
#   #   verify: ./prompts/verify.md
#   #   mr: ./prompts/mr.md
#   #   log: ./prompts/log.md
#   # log_mcp_config: /path/to/mcp-config.json
#   # reviewer: "jsmith"
#   # allowed_commands: [git, glab, sbt compile, sbt test, sbt fmtCheck, sbt fmt]
#   # max_tokens: 8192
#   # variables:
#   #   project_name: "MyApp"

one_off_defaults:
  timeout: "30m"
  max_budget_usd: 5.00
"""
