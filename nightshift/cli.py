"""night-shift CLI: set up, queue tasks, run them and watch the daemon."""

import argparse
import logging
import os
import signal
import subprocess
import sys
from dataclasses import asdict
from datetime import datetime

import yaml

from . import __version__
from .agent_runner import AgentRunner
from .bead_runner import CREDENTIAL_ENV_KEY
from .code_agent import derive_summary, run_code_agent
from .config import (
    Config,
    default_config_yaml,
    ensure_nightshift_dirs,
    get_base_dir,
    get_config_path,
    get_daemon_pid_path,
    get_inbox_dir,
    get_logs_dir,
    get_workspace_dir,
    load_config,
    parse_timeout,
    validate_config,
)
from .env_loader import load_env_file
from .errors import DaemonError, NightShiftError
from .health import cleanup_stale_state, is_daemon_running, read_daemon_state, remove_pid_file
from .models import Task, generate_task_id
from .notifications import NtfyClient, NtfyMessage
from .reporter import format_duration, list_reports
from .run_logger import read_run_log
from .scheduler import next_run
from .task_queue import make_task_queue


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _fmt_cost(cost: float | None) -> str:
    return f"${cost:.2f}" if cost is not None else "?"


def _truncate(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _one_off_task(config: Config, prompt: str, args: argparse.Namespace) -> Task:
    task_id = generate_task_id()
    budget = args.budget if args.budget is not None else config.one_off_defaults.max_budget_usd
    return Task(
        id=task_id,
        name=args.name or f"one-off-{task_id}",
        origin="one-off",
        prompt=prompt,
        timeout=args.timeout or config.one_off_defaults.timeout,
        max_budget_usd=budget,
        model=args.model or config.one_off_defaults.model,
        allowed_tools=args.tools,
    )


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_init(args: argparse.Namespace) -> None:
    """Create nightshift.yaml and the .nightshift/ directory tree."""
    base = get_base_dir()
    config_path = get_config_path(base)
    if config_path.exists() and not args.force:
        print("nightshift.yaml already exists. Use --force to overwrite.")
        return

    ensure_nightshift_dirs(base)
    get_workspace_dir("./workspace", base).mkdir(parents=True, exist_ok=True)
    config_path.write_text(default_config_yaml())

    print("Initialized night-shift")
    print("  Created .nightshift/ directory structure")
    print("  Created nightshift.yaml with default config")
    print()
    print("Next steps:")
    print("  1. Edit nightshift.yaml to configure recurring tasks")
    print('  2. Run \'nightshift submit "<task>"\' to queue a one-off task')
    print("  3. Run 'nightshift start' to start the daemon")


def cmd_submit(args: argparse.Namespace) -> None:
    """Queue a one-off task for the daemon."""
    config = load_config()
    parse_timeout(args.timeout or config.one_off_defaults.timeout)
    task = make_task_queue(config).create(_one_off_task(config, args.prompt, args))

    print(f"Task queued: {task.id}")
    print(f'  Prompt:  "{_truncate(task.prompt)}"')
    budget = f"${task.max_budget_usd:.2f}" if task.max_budget_usd is not None else "unlimited"
    print(f"  Timeout: {task.timeout} | Budget: {budget}")


def cmd_schedule(args: argparse.Namespace) -> None:
    """Show recurring tasks and their next run times."""
    config = load_config()
    if not config.recurring:
        print("No recurring tasks configured.")
        print("Edit nightshift.yaml to add recurring tasks.")
        return

    now = datetime.now().astimezone()
    rows = []
    for recurring in config.recurring:
        budget = f"${recurring.max_budget_usd:.2f}" if recurring.max_budget_usd else "default"
        rows.append([
            recurring.name,
            recurring.schedule,
            next_run(recurring.schedule, now).strftime("%Y-%m-%d %H:%M"),
            recurring.timeout or config.default_timeout,
            budget,
            recurring.kind,
        ])
    print(_fmt_table(rows, ["NAME", "SCHEDULE", "NEXT RUN", "TIMEOUT", "BUDGET", "KIND"]))


def cmd_status(args: argparse.Namespace) -> None:
    """Show daemon status and queue depth."""
    config = load_config()
    state = read_daemon_state()
    up = state is not None and is_daemon_running(state)

    print("Daemon")
    if up:
        print("  Status:    running")
        print(f"  PID:       {state.pid}")
        print(f"  Started:   {state.started_at}")
        print(f"  Heartbeat: {state.last_heartbeat}")
        print(f"  Active:    {state.active_tasks} / {config.max_concurrent}")
        print(f"  Executed:  {state.total_executed}")
        print(f"  Cost:      {_fmt_cost(state.total_cost_usd)}")
    elif state is not None and state.status != "stopped":
        print(f"  Status: stale (last heartbeat {state.last_heartbeat})")
    else:
        print("  Status: stopped")

    print()
    print("Queue")
    try:
        ready = make_task_queue(config).list_ready()
    except (NightShiftError, OSError) as e:
        print(f"  (queue not available: {e})")
    else:
        print(f"  Ready:   {len(ready)}")
        print(f"  Running: {state.active_tasks if up else 0}")

    runs = read_run_log()
    if runs:
        last = runs[-1]
        print()
        print("Last code-agent run")
        print(f"  Date:     {last.date}")
        print(f"  Category: {last.category}")
        print(f"  Summary:  {_truncate(last.summary)}")


def cmd_inbox(args: argparse.Namespace) -> None:
    """List completed task reports, or print one."""
    load_config()
    inbox = get_inbox_dir()

    if args.read:
        path = inbox / args.read
        if not path.is_file():
            print(f"Report not found: {args.read}", file=sys.stderr)
            sys.exit(1)
        print(path.read_text(encoding="utf-8"))
        return

    entries = list_reports(limit=args.limit)
    if not entries:
        print("No inbox reports yet.")
        return

    rows = [
        [
            e.task_name,
            e.status,
            format_duration(e.duration_seconds) if e.duration_seconds is not None else "?",
            _fmt_cost(e.cost_usd),
            e.file_name,
        ]
        for e in entries
    ]
    print(_fmt_table(rows, ["TASK", "STATUS", "DURATION", "COST", "FILE"]))
    print("\nRun 'nightshift inbox --read <file>' to view a report")


def cmd_start(args: argparse.Namespace) -> None:
    """Start the daemon as a detached background process."""
    base = get_base_dir()
    load_config(base)

    state = read_daemon_state(base)
    if state is not None and is_daemon_running(state):
        print(f"Daemon already running (PID {state.pid})")
        return
    cleanup_stale_state(base)

    ensure_nightshift_dirs(base)
    command = [sys.executable, "-m", "nightshift.daemon"]
    if args.debug:
        command.append("--debug")

    with open(get_logs_dir(base) / "daemon.out", "a") as out:
        proc = subprocess.Popen(
            command,
            cwd=base,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    print(f"Daemon started (PID {proc.pid})")
    print(f"  PID file: {get_daemon_pid_path(base)}")
    print("  Run 'nightshift status' to check daemon status")
    print("  Run 'nightshift stop' to stop the daemon")


def cmd_stop(args: argparse.Namespace) -> None:
    """Signal the daemon to drain and exit (or kill it with --force)."""
    state = read_daemon_state()
    if state is None or not is_daemon_running(state):
        print("Daemon is not running")
        remove_pid_file()
        return

    sig = signal.SIGKILL if args.force else signal.SIGTERM
    print(f"Sending {sig.name} to daemon (PID {state.pid})...")
    try:
        os.kill(state.pid, sig)
    except ProcessLookupError:
        print("Daemon process not found, cleaning up stale state")
        cleanup_stale_state()
        return
    except PermissionError as e:
        raise DaemonError(f"Cannot signal daemon (PID {state.pid}): {e}") from e

    if args.force:
        cleanup_stale_state()
        print("Daemon killed")
    else:
        print("Sent SIGTERM - the daemon will drain active tasks and exit")
        print("Use 'nightshift stop --force' to kill immediately")


def cmd_config(args: argparse.Namespace) -> None:
    """Show the resolved config or validate nightshift.yaml."""
    if args.action == "validate":
        valid, _, error = validate_config()
        if not valid:
            print(error, file=sys.stderr)
            sys.exit(1)
        print("Config is valid")
        return

    config = load_config()
    data = asdict(config)
    data["config_dir"] = str(config.config_dir) if config.config_dir else None
    if data.get("ntfy") and data["ntfy"].get("token"):
        data["ntfy"]["token"] = "***"
    print(yaml.safe_dump(data, sort_keys=False), end="")


def cmd_run(args: argparse.Namespace) -> None:
    """Run a task or the code-agent pipeline in the foreground."""
    if args.code_agent and args.prompt:
        print("Cannot specify both --code-agent and a prompt argument", file=sys.stderr)
        sys.exit(1)
    if not args.code_agent and not args.prompt:
        print("A prompt argument is required unless --code-agent is used", file=sys.stderr)
        sys.exit(1)

    config = load_config()
    ntfy = NtfyClient(config.ntfy) if args.notify and config.ntfy else None

    if args.code_agent:
        _run_code_agent(config, args, ntfy)
    else:
        _run_task(config, args, ntfy)


def _run_code_agent(config: Config, args: argparse.Namespace, ntfy: NtfyClient | None) -> None:
    if config.code_agent is None:
        print("Code agent not configured in nightshift.yaml", file=sys.stderr)
        sys.exit(1)

    gitlab_token = os.environ.get(CREDENTIAL_ENV_KEY)
    if not gitlab_token:
        print(
            f"Warning: {CREDENTIAL_ENV_KEY} is not set, the clone will proceed "
            "but merge request creation may fail",
            file=sys.stderr,
        )

    if ntfy:
        ntfy.send(NtfyMessage(title="Night-shift code-agent started", body="Running..."))

    result = run_code_agent(
        config.code_agent,
        config.config_dir or get_base_dir(),
        timeout=parse_timeout(args.timeout or config.default_timeout),
        gitlab_token=gitlab_token,
        primary_category=args.category,
    )
    summary = derive_summary(result)

    print()
    print("Code-agent run complete")
    print(f"  Outcome:  {result.outcome}")
    print(f"  Category: {result.category_used}")
    if result.mr_url:
        print(f"  MR URL:   {result.mr_url}")
    print(f"  Duration: {format_duration(round(result.total_duration_ms / 1000))}")
    print(f"  Cost:     {_fmt_cost(result.total_cost_usd)}")
    print(f"  Summary:  {summary}")

    if ntfy:
        ntfy.send(NtfyMessage(
            title=f"Night-shift code-agent done: {result.outcome}",
            body=f"{summary} | {_fmt_cost(result.total_cost_usd)}",
        ))


def _run_task(config: Config, args: argparse.Namespace, ntfy: NtfyClient | None) -> None:
    task = _one_off_task(config, args.prompt, args)
    runner = AgentRunner(get_workspace_dir(config.workspace))

    if ntfy:
        ntfy.send(NtfyMessage(title=f"Night-shift started: {task.name}", body="Running..."))

    print(f"Running task: {task.name}")
    print(f'  Prompt: "{_truncate(task.prompt)}"')

    result = runner.run(task)

    print()
    print("Task failed" if result.is_error else "Task completed")
    print(f"  Name:     {task.name}")
    print(f"  Duration: {format_duration(round(result.duration_ms / 1000))}")
    print(f"  Cost:     {_fmt_cost(result.total_cost_usd)}")
    print(f"  Result:   {_truncate(result.result, 200)}")

    if ntfy:
        if result.is_error:
            message = NtfyMessage(
                title=f"Night-shift FAILED: {task.name}",
                body=f"Error: {result.result[:200]}",
                priority=4,
            )
        else:
            message = NtfyMessage(
                title=f"Night-shift done: {task.name}",
                body=f"Cost: {_fmt_cost(result.total_cost_usd)} | {result.result[:200]}",
            )
        ntfy.send(message)

    if result.is_error:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_task_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--timeout", "-t", help="Task timeout (e.g. 30m, 1h)")
    p.add_argument("--budget", "-b", type=float, help="Max budget in USD")
    p.add_argument("--model", "-m", help="Model to use (e.g. sonnet, opus)")
    p.add_argument("--tools", nargs="+", help="Allowed tools for the agent")
    p.add_argument("--name", "-n", help="Task name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nightshift",
        description="Autonomous task runner for Claude Code",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress to stderr")
    sub = parser.add_subparsers(dest="command")

    p_init = sub.add_parser("init", help="Initialize night-shift in the current directory")
    p_init.add_argument("--force", action="store_true", help="Overwrite existing config")
    p_init.set_defaults(func=cmd_init)

    p_submit = sub.add_parser("submit", help="Queue a one-off task for the daemon")
    p_submit.add_argument("prompt", help="The task prompt for the agent")
    _add_task_options(p_submit)
    p_submit.set_defaults(func=cmd_submit)

    p_run = sub.add_parser("run", help="Run a task or the code-agent in the foreground")
    p_run.add_argument("prompt", nargs="?", help="The task prompt for the agent")
    p_run.add_argument("--code-agent", "-c", action="store_true", help="Run the code-agent pipeline")
    p_run.add_argument("--category", help="Start the code-agent with this category")
    p_run.add_argument("--notify", "-N", action="store_true", help="Send ntfy notifications")
    _add_task_options(p_run)
    p_run.set_defaults(func=cmd_run)

    p_schedule = sub.add_parser("schedule", help="Show recurring tasks and next run times")
    p_schedule.set_defaults(func=cmd_schedule)

    p_status = sub.add_parser("status", help="Show daemon status and task queue")
    p_status.set_defaults(func=cmd_status)

    p_inbox = sub.add_parser("inbox", help="Browse completed task reports")
    p_inbox.add_argument("--limit", "-n", type=int, default=10, help="Number of reports to show")
    p_inbox.add_argument("--read", help="Print a specific report file")
    p_inbox.set_defaults(func=cmd_inbox)

    p_start = sub.add_parser("start", help="Start the daemon in the background")
    p_start.add_argument("--debug", action="store_true", help="Enable debug logging")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop the daemon")
    p_stop.add_argument("--force", action="store_true", help="Kill immediately (SIGKILL)")
    p_stop.set_defaults(func=cmd_stop)

    p_config = sub.add_parser("config", help="View or validate configuration")
    p_config.add_argument("action", nargs="?", choices=["show", "validate"], default="show")
    p_config.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    load_env_file(get_base_dir())
    try:
        args.func(args)
    except NightShiftError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
