"""Protected paths — runtime state the synchronization must never touch.

The running application owns a handful of paths inside the live directory
(its state storage, secrets, history database and cloud link state). The
pipeline keeps away from them in two independent ways:

1. Every tree walk (deploy, backup, restore) prunes them, so no copy,
   overwrite or delete can reach them.
2. ``ProtectedPathGuard`` refuses any incoming commit that tracks one of
   them (preflight), and checks after each mutating step that every
   protected path that existed before still exists (verify).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Iterator

from confsync.errors import IntegrityViolationError

logger = logging.getLogger(__name__)

STATE_STORAGE_DIR = ".storage"

DEFAULT_PROTECTED_PATHS = (
    f"{STATE_STORAGE_DIR}/",
    "secrets.yaml",
    "home-assistant_v2.db",
    "home-assistant_v2.db-shm",
    "home-assistant_v2.db-wal",
    ".cloud/",
)

_GLOB_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class PathPattern:
    """A root-anchored relative path pattern.

    A plain pattern matches its exact path and everything beneath it. A
    pattern holding glob characters is matched against the path and each
    of its ancestors, so ``logs.*`` also covers ``logs.1/anything``.
    """

    raw: str

    @property
    def path(self) -> str:
        return self.raw.strip().strip("/")

    @property
    def is_glob(self) -> bool:
        return any(ch in _GLOB_CHARS for ch in self.path)

    def matches(self, rel_path: str) -> bool:
        rel = rel_path.strip("/")
        if not rel or not self.path:
            return False
        if self.is_glob:
            parts = rel.split("/")
            return any(
                fnmatchcase("/".join(parts[: i + 1]), self.path) for i in range(len(parts))
            )
        return rel == self.path or rel.startswith(self.path + "/")


class PathPatternSet:
    """An ordered, de-duplicated collection of ``PathPattern``."""

    def __init__(self, patterns: Iterable[str] = ()):
        self._patterns: list[PathPattern] = []
        for raw in patterns:
            self._add(raw)

    def _add(self, raw: str) -> None:
        pattern = PathPattern(raw)
        if pattern.path and all(p.path != pattern.path for p in self._patterns):
            self._patterns.append(pattern)

    def __iter__(self) -> Iterator[PathPattern]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({[p.raw for p in self._patterns]!r})"

    def matches(self, rel_path: str) -> bool:
        return any(p.matches(rel_path) for p in self._patterns)

    def matching(self, rel_paths: Iterable[str]) -> list[str]:
        """Return the paths, in input order, that hit any pattern."""
        return [rel for rel in rel_paths if self.matches(rel)]

    def union(self, other: Iterable[str | PathPattern]) -> PathPatternSet:
        merged = PathPatternSet(p.raw for p in self._patterns)
        for item in other:
            merged._add(item.raw if isinstance(item, PathPattern) else item)
        return merged


class ProtectedPathSet(PathPatternSet):
    """The fixed runtime-owned paths plus configured user asset directories."""

    @classmethod
    def default(cls, extra: Iterable[str] = ()) -> ProtectedPathSet:
        return cls([*DEFAULT_PROTECTED_PATHS, *extra])


@dataclass(frozen=True)
class ProtectedSnapshot:
    """Which protected paths existed when the snapshot was taken."""

    existing: tuple[str, ...]


class ProtectedPathGuard:
    """Snapshot/verify and preflight checks around protected paths."""

    def __init__(self, target_dir: str | Path, protected: ProtectedPathSet):
        self.target_dir = Path(target_dir)
        self.protected = protected

    def snapshot(self) -> ProtectedSnapshot:
        """Record which protected paths currently exist (existence only, never content)."""
        existing: list[str] = []
        for pattern in self.protected:
            if pattern.is_glob:
                for match in sorted(self.target_dir.glob(pattern.path)):
                    existing.append(match.relative_to(self.target_dir).as_posix())
            elif _lexists(self.target_dir / pattern.path):
                existing.append(pattern.path)
        return ProtectedSnapshot(existing=tuple(existing))

    def verify(self, snapshot: ProtectedSnapshot, stage: str) -> None:
        """Fail if any path recorded in ``snapshot`` has disappeared."""
        vanished = [rel for rel in snapshot.existing if not _lexists(self.target_dir / rel)]
        if not vanished:
            logger.info("Protected paths intact after %s", stage)
            return
        for rel in vanished:
            logger.critical("Protected path vanished during %s: %s", stage, rel)
        raise IntegrityViolationError(
            f"{len(vanished)} protected path(s) vanished during {stage}: {', '.join(vanished)}",
            paths=vanished,
        )

    def preflight(self, tracked_files: Iterable[str], commit: str) -> None:
        """Refuse a commit whose tracked content overlaps a protected path."""
        offending = self.protected.matching(tracked_files)
        if not offending:
            return
        for rel in offending:
            logger.critical("Commit %s tracks protected path: %s", commit[:12], rel)
        logger.critical(
            "Refusing to deploy %s: remove these paths from the repository "
            "(and add them to .gitignore)",
            commit[:12],
        )
        raise IntegrityViolationError(
            f"Commit {commit[:12]} tracks {len(offending)} protected path(s): "
            f"{', '.join(offending)}",
            paths=offending,
        )

    def warn_if_state_missing(self) -> None:
        if not (self.target_dir / STATE_STORAGE_DIR).is_dir():
            logger.warning(
                "%s/ is missing from %s -- the application may show its onboarding screen",
                STATE_STORAGE_DIR,
                self.target_dir,
            )
            logger.warning("If this is unexpected, restore it from an application backup")


def _lexists(path: Path) -> bool:
    return path.exists() or path.is_symlink()
