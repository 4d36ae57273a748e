"""Tests for the per-target lock."""

import tempfile
from pathlib import Path

import pytest
from filelock import FileLock

from confsync.errors import LockContention
from confsync.sync.lock import target_lock


def test_lock_is_exclusive_and_released():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "sync.lock"
        other = FileLock(str(path))

        with target_lock(path):
            assert path.exists()
            with pytest.raises(LockContention):
                with target_lock(path):
                    pass

        other.acquire(timeout=0)
        other.release()


def test_lock_held_elsewhere_means_contention():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nested" / "sync.lock"
        path.parent.mkdir()
        holder = FileLock(str(path))
        holder.acquire(timeout=0)
        try:
            with pytest.raises(LockContention):
                with target_lock(path):
                    pass
        finally:
            holder.release()
