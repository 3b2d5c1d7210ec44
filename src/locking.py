"""Process-wide run lock.

Only one reconciliation may run against a node at a time. The lock is an
advisory flock on a well-known file, so a holder that dies (killed, OOM,
host reboot) releases it without cleanup.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Another run still holds the lock after the configured wait."""


@contextmanager
def run_lock(path: Path, timeout: float) -> Iterator[FileLock]:
    """Hold the run lock for the duration of the block.

    Args:
        path: Lock file (parent directory is created if needed)
        timeout: Seconds to wait for a running holder before giving up

    Raises:
        LockTimeout: If the lock is still held after timeout seconds
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path), timeout=timeout)

    logger.debug(f"[lock] Acquiring {path} (timeout {timeout}s)")
    try:
        lock.acquire()
    except Timeout:
        raise LockTimeout(f"Another run holds {path}; gave up after {timeout}s")

    try:
        logger.debug(f"[lock] Acquired {path}")
        yield lock
    finally:
        lock.release()
        logger.debug(f"[lock] Released {path}")
