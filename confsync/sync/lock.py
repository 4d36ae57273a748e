"""Cross-process lock scoped to one target directory.

An OS advisory lock (``filelock``) is released by the kernel when its
holder dies, so there is no stale-PID bookkeeping to get wrong.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from confsync.errors import LockContention

logger = logging.getLogger(__name__)


@contextmanager
def target_lock(lock_path: str | Path) -> Iterator[FileLock]:
    """Hold the lock for the duration of the block, or raise ``LockContention``."""
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path))
    try:
        lock.acquire(timeout=0)
    except Timeout:
        raise LockContention(f"Another run holds {lock_path}")
    logger.debug("Acquired lock %s", lock_path)
    try:
        yield lock
    finally:
        lock.release()
        logger.debug("Released lock %s", lock_path)
