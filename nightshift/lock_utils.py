"""Advisory fcntl.flock locks on files under .nightshift/.

Two locks exist: ``daemon.lock`` is held by the running daemon for its whole
life, and ``queue/.claim.lock`` serializes the read-check-write of a file
queue claim. flock locks belong to the open file, so a lock is released when
the holder exits, even on SIGKILL.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def _open_lock_file(path: Path | str) -> int:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)


def try_lock(path: Path | str) -> int | None:
    """Take the lock without waiting.

    Returns:
        The descriptor holding the lock, or None if another holder has it
    """
    fd = _open_lock_file(path)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        return None
    return fd


def unlock(fd: int | None) -> None:
    if fd is None:
        return
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@contextmanager
def exclusive(path: Path | str) -> Iterator[None]:
    """Hold the lock for the body of the with block, waiting for it if needed."""
    fd = _open_lock_file(path)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        unlock(fd)
