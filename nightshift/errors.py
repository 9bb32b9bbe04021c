"""Exception hierarchy for night-shift."""


class NightShiftError(Exception):
    """Base exception for all night-shift errors."""

    pass


class ConfigError(NightShiftError):
    """Configuration file is missing, unparsable or invalid."""

    pass


class DaemonError(NightShiftError):
    """Daemon lifecycle failure (already running, cannot write pid file, ...)."""

    pass


class BeadsError(NightShiftError):
    """The bd task tracker CLI failed."""

    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class AgentExecutionError(NightShiftError):
    """An agent invocation exited abnormally."""

    def __init__(self, message: str, task_id: str):
        super().__init__(message)
        self.task_id = task_id


class AgentTimeoutError(NightShiftError):
    """An agent invocation exceeded its time limit."""

    def __init__(self, task_id: str, timeout: str):
        super().__init__(f"Task timed out after {timeout}")
        self.task_id = task_id
        self.timeout = timeout


class GitError(NightShiftError):
    """A git operation on the working checkout failed."""

    pass
