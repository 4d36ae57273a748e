"""Tree mirroring — one-way reconciliation of a directory onto another.

Excluded paths are pruned from every walk before it descends, so an
excluded directory is never listed, read, copied into, or deleted from.
Relative symlinks that resolve inside their own tree are copied as links;
absolute or escaping links are skipped and left alone on both sides.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from confsync.safety.protected import PathPatternSet

logger = logging.getLogger(__name__)


@dataclass
class TreeScan:
    """Files (and links) plus directories found under a root."""

    root: Path
    files: dict[str, Path] = field(default_factory=dict)
    dirs: set[str] = field(default_factory=set)


@dataclass
class MirrorPlan:
    """What applying a mirror would change in the destination."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    stale_dirs: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def copies(self) -> list[str]:
        return self.added + self.updated


def scan_tree(root: Path, excludes: PathPatternSet) -> TreeScan:
    """Walk ``root`` without ever entering an excluded path."""
    scan = TreeScan(root=root)
    if not root.is_dir():
        return scan

    real_root = os.path.realpath(root)
    for current, dirnames, filenames in os.walk(root, topdown=True):
        current_path = Path(current)
        rel_dir = current_path.relative_to(root).as_posix()
        if rel_dir != ".":
            scan.dirs.add(rel_dir)

        keep = []
        for name in sorted(dirnames):
            rel = _join(rel_dir, name)
            if excludes.matches(rel):
                continue
            full = current_path / name
            if full.is_symlink():
                if _is_safe_link(full, real_root):
                    scan.files[rel] = full
                else:
                    logger.warning("Skipping symlink pointing outside %s: %s", root, rel)
                continue
            keep.append(name)
        dirnames[:] = keep

        for name in sorted(filenames):
            rel = _join(rel_dir, name)
            if excludes.matches(rel):
                continue
            full = current_path / name
            if full.is_symlink() and not _is_safe_link(full, real_root):
                logger.warning("Skipping symlink pointing outside %s: %s", root, rel)
                continue
            scan.files[rel] = full
    return scan


def plan_mirror(
    src_root: Path, dst_root: Path, excludes: PathPatternSet, delete: bool
) -> MirrorPlan:
    """Compare two trees and return the change set for ``src -> dst``."""
    src = scan_tree(src_root, excludes)
    dst = scan_tree(dst_root, excludes)
    plan = MirrorPlan()

    for rel, src_path in src.files.items():
        dst_path = dst_root / rel
        if rel in dst.dirs:
            plan.updated.append(rel)
            if not delete:
                plan.conflicts.append(rel)
        elif rel not in dst.files:
            plan.added.append(rel)
            blocker = _file_ancestor(rel, dst.files)
            if blocker and not delete:
                plan.conflicts.append(blocker)
        elif not same_content(src_path, dst_path):
            plan.updated.append(rel)

    if delete:
        plan.deleted = sorted(set(dst.files) - set(src.files))
        plan.stale_dirs = sorted(
            dst.dirs - src.dirs,
            key=lambda d: d.count("/"),
            reverse=True,
        )
    return plan


def apply_mirror(plan: MirrorPlan, src_root: Path, dst_root: Path) -> None:
    """Apply a plan: deletions first, then empty stale dirs, then copies.

    Raises ``OSError`` on the first failure; the caller decides how to
    recover the partially written destination.
    """
    for rel in plan.deleted:
        (dst_root / rel).unlink()

    for rel in plan.stale_dirs:
        path = dst_root / rel
        if path.is_dir() and not path.is_symlink() and not any(path.iterdir()):
            path.rmdir()

    for rel in plan.copies:
        copy_entry(src_root / rel, dst_root / rel)


def copy_entry(src: Path, dst: Path) -> None:
    """Copy one file or link, replacing ``dst`` atomically for regular files."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_symlink():
        if dst.is_symlink() or dst.is_file():
            dst.unlink()
        os.symlink(os.readlink(src), dst)
        return

    fd, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=str(dst.parent))
    os.close(fd)
    try:
        shutil.copy2(src, temp_name)
        os.replace(temp_name, dst)
    finally:
        if os.path.lexists(temp_name):
            os.unlink(temp_name)


def same_content(a: Path, b: Path) -> bool:
    if a.is_symlink() or b.is_symlink():
        return a.is_symlink() and b.is_symlink() and os.readlink(a) == os.readlink(b)
    if a.stat().st_size != b.stat().st_size:
        return False
    return hash_file(a) == hash_file(b)


def hash_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _is_safe_link(path: Path, real_root: str) -> bool:
    if os.path.isabs(os.readlink(path)):
        return False
    target = os.path.realpath(path)
    return target == real_root or target.startswith(real_root + os.sep)


def _file_ancestor(rel: str, files: dict[str, Path]) -> str | None:
    parts = rel.split("/")[:-1]
    for i in range(len(parts)):
        prefix = "/".join(parts[: i + 1])
        if prefix in files:
            return prefix
    return None


def _join(rel_dir: str, name: str) -> str:
    return name if rel_dir == "." else f"{rel_dir}/{name}"


def count_entries(root: Path) -> int:
    """Count files and links under ``root`` without following any link."""
    total = 0
    for current, dirnames, filenames in os.walk(root):
        total += len(filenames)
        total += sum(1 for name in dirnames if os.path.islink(os.path.join(current, name)))
    return total
