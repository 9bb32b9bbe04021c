"""Git operations on the temporary checkout used by the code-agent pipeline."""

import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path

from .errors import GitError

logger = logging.getLogger(__name__)

CLONE_DEPTH = 50
CLONE_TIMEOUT_SECONDS = 600


def run_git(
    args: list[str],
    cwd: Path | str | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
    timeout: float = 120,
) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git')
        cwd: Working directory for the command
        check: Raise exception on non-zero exit
        env: Complete environment (None inherits ours)
        timeout: Seconds before subprocess.TimeoutExpired

    Returns:
        CompletedProcess instance
    """
    cmd = ["git"] + args
    return subprocess.run(
        cmd,
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )


def build_clone_env(gitlab_token: str | None) -> dict[str, str]:
    """Minimal environment for git clone: SSH agent access, no system config."""
    env = {
        key: os.environ[key]
        for key in ("HOME", "PATH", "SSH_AUTH_SOCK")
        if key in os.environ
    }
    env["GIT_CONFIG_NOSYSTEM"] = "1"
    if gitlab_token:
        env["GITLAB_TOKEN"] = gitlab_token
    return env


def clone_repo(repo_url: str, gitlab_token: str | None = None) -> tuple[Path, Path]:
    """Shallow-clone the repository into fresh temp directories.

    Returns:
        (repo_dir, handoff_dir). The caller owns both and must remove them.

    Raises:
        GitError: If the clone fails; both directories are removed first
    """
    run_id = format(int(time.time() * 1000), "x")
    repo_dir = Path(tempfile.mkdtemp(prefix=f"night-shift-repo-{run_id}-"))
    handoff_dir = Path(tempfile.mkdtemp(prefix=f"night-shift-handoff-{run_id}-"))

    logger.info("Cloning %s into %s", repo_url, repo_dir)
    try:
        result = run_git(
            ["clone", "--depth", str(CLONE_DEPTH), repo_url, str(repo_dir)],
            check=False,
            env=build_clone_env(gitlab_token),
            timeout=CLONE_TIMEOUT_SECONDS,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        cleanup_dir(repo_dir)
        cleanup_dir(handoff_dir)
        raise GitError(f"git clone failed: {e}") from e

    if result.returncode != 0:
        cleanup_dir(repo_dir)
        cleanup_dir(handoff_dir)
        raise GitError(f"git clone failed (exit {result.returncode}): {result.stderr.strip()}")

    return repo_dir, handoff_dir


def reset_repo(repo_dir: Path | str) -> None:
    """Discard all uncommitted changes with ``git reset --hard HEAD``."""
    try:
        result = run_git(["reset", "--hard", "HEAD"], cwd=repo_dir, check=False)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning("git reset in %s failed: %s", repo_dir, e)
        return
    if result.returncode != 0:
        logger.warning("git reset in %s exited %d: %s", repo_dir, result.returncode, result.stderr.strip())


def cleanup_dir(path: Path | str) -> None:
    """Remove a directory tree. Failures are logged, never raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
