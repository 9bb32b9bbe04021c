"""Child process invocation with timeout and two-phase termination.

Every agent and pipeline stage runs through spawn_with_timeout(). Children
are started in their own session so signals reach the whole process group,
including anything the agent itself spawned.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL on timeout
KILL_GRACE_SECONDS = 10


@dataclass(frozen=True)
class SpawnResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool


class ProcessHandle:
    """A running child process that can be terminated from another thread."""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc

    @property
    def pid(self) -> int:
        return self.proc.pid

    def is_running(self) -> bool:
        return self.proc.poll() is None

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def terminate(self) -> None:
        """Send SIGTERM to the process group without waiting."""
        if self.is_running():
            self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        """Send SIGKILL to the process group."""
        self._signal_group(signal.SIGKILL)


class ProcessRegistry:
    """Thread-safe set of live child processes.

    Lets shutdown code terminate in-flight work owned by other threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: set[ProcessHandle] = set()

    def register(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.add(handle)

    def unregister(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.discard(handle)

    def terminate_all(self) -> int:
        """SIGTERM every registered process. Returns how many were signalled."""
        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            logger.info("Terminating process group %d", handle.pid)
            handle.terminate()
        return len(handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


def spawn_with_timeout(
    command: str,
    args: list[str],
    *,
    timeout: float | None = None,
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
    registry: ProcessRegistry | None = None,
) -> SpawnResult:
    """Run a command to completion, enforcing a wall-clock limit.

    Arguments are passed as a list, never through a shell. On timeout the
    process group gets SIGTERM, then SIGKILL after KILL_GRACE_SECONDS.

    Args:
        command: Executable name or path
        args: Argument list
        timeout: Limit in seconds, None for no limit
        cwd: Working directory
        env: Complete environment for the child (None inherits ours)
        registry: Registry to track the live process in, for external termination

    Returns:
        SpawnResult. A non-zero exit or a timeout is reported, not raised.

    Raises:
        OSError: If the executable cannot be started
    """
    proc = subprocess.Popen(
        [command, *args],
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        start_new_session=True,
    )
    handle = ProcessHandle(proc)
    if registry is not None:
        registry.register(handle)

    timed_out = False
    try:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("%s (pid %d) exceeded %ss, sending SIGTERM", command, proc.pid, timeout)
            handle.terminate()
            try:
                stdout, stderr = proc.communicate(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("%s (pid %d) ignored SIGTERM, sending SIGKILL", command, proc.pid)
                handle.kill()
                stdout, stderr = proc.communicate()
    finally:
        if registry is not None:
            registry.unregister(handle)

    return SpawnResult(
        stdout=stdout or "",
        stderr=stderr or "",
        exit_code=proc.returncode,
        timed_out=timed_out,
    )
