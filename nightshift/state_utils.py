"""Atomic file persistence for night-shift state files."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_text(path: Path | str, content: str) -> None:
    """Write text atomically using temp file + rename.

    Readers never observe a partially written file.

    Args:
        path: Destination file
        content: Text to write
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Temp file in the same directory so the rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")

    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.rename(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def write_json_file(path: Path | str, data: Any) -> None:
    """Serialize data as indented JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def read_json_file(path: Path | str) -> Any | None:
    """Read a JSON file.

    Returns:
        Parsed data, or None if the file is missing or unparsable
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path) as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return None


def is_process_running(pid: int | None) -> bool:
    """Check if a process is still running.

    Args:
        pid: Process ID to check

    Returns:
        True if process exists and is running
    """
    if pid is None:
        return False

    try:
        # Signal 0 checks existence without affecting the process
        os.kill(pid, 0)
        return True
    except PermissionError:
        # Exists but owned by another user
        return True
    except (OSError, ProcessLookupError):
        return False
