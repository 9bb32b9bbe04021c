"""night-shift: autonomous task-execution daemon for Claude Code."""

__version__ = "0.1.0"
