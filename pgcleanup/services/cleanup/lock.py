# pgcleanup/services/cleanup/lock.py
"""
Cross-run mutual exclusion.

At most one run may be active per main/archive pair. The lock is an
exclusive flock on a named file, acquired without blocking: a second run
fails fast instead of queueing behind the first and computing a different
window later. The kernel drops the lock if the process dies.
"""

import errno
import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pgcleanup.services.cleanup.errors import LockHeldError

logger = logging.getLogger(__name__)


def lock_path(name: str, lock_dir: str | os.PathLike = "/tmp") -> Path:
    return Path(lock_dir) / f"postgres-cleanup-{name}.lock"


@contextmanager
def run_lock(name: str, lock_dir: str | os.PathLike = "/tmp") -> Iterator[Path]:
    """
    Hold the named run lock for the duration of the block.

    Usage:
        with run_lock("main", "/tmp"):
            engine.run()

    Raises:
        LockHeldError: another process (or another open of the file) holds it
    """
    path = lock_path(name, lock_dir)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                holder = _read_holder(path)
                raise LockHeldError(
                    f"another instance is already running (lock: {name}, pid: {holder or 'unknown'})"
                ) from e
            raise

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired run lock {path}", extra={"lock_path": str(path)})

        try:
            yield path
        finally:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"Released run lock {path}", extra={"lock_path": str(path)})
    finally:
        os.close(fd)


def _read_holder(path: Path) -> str | None:
    try:
        return path.read_text().strip() or None
    except OSError:
        return None
