"""Backup store — point-in-time copies of the live directory for rollback.

Each snapshot is a directory under the backup root::

    config-<label>-<timestamp>/
        snapshot.json     label, creation time, commit, file count
        files/            mirror of the live directory minus excluded paths

Protected and bookkeeping paths are excluded from both capture and
restore, so a restore can never resurrect or clobber runtime state.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from confsync.errors import BackupFailureError
from confsync.models import BackupSnapshot, Checkpoint
from confsync.safety.protected import PathPatternSet
from confsync.utils.tree import apply_mirror, count_entries, plan_mirror

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class BackupStore:
    """Creates, restores and prunes snapshots of one live directory."""

    METADATA_FILE = "snapshot.json"
    DEPLOY_MARKER = ".deploy-in-progress.json"
    DEPLOYED_RECORD = ".deployed.json"

    def __init__(
        self,
        backup_dir: str | Path,
        source_dir: str | Path,
        excludes: PathPatternSet,
        max_backups: int = 3,
    ):
        self.backup_dir = Path(backup_dir)
        self.source_dir = Path(source_dir)
        self.excludes = excludes
        self.max_backups = max_backups
        self.marker_path = self.backup_dir / self.DEPLOY_MARKER
        self.deployed_path = self.backup_dir / self.DEPLOYED_RECORD

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create(self, label: str, commit: str | None = None) -> BackupSnapshot:
        """Capture the live directory. Raises ``BackupFailureError`` unless verified."""
        now = datetime.now(timezone.utc)
        name = f"config-{label}-{now.strftime('%Y-%m-%d_%H-%M-%S-%f')}"
        location = self.backup_dir / name
        snapshot = BackupSnapshot(
            name=name,
            label=label,
            created_at=now.strftime(_TIMESTAMP_FORMAT),
            location=location,
            commit=commit,
        )

        logger.info(
            "Backing up %s to %s (excluding protected paths)...", self.source_dir, location
        )
        try:
            snapshot.files_dir.mkdir(parents=True, exist_ok=False)
            plan = plan_mirror(self.source_dir, snapshot.files_dir, self.excludes, delete=False)
            apply_mirror(plan, self.source_dir, snapshot.files_dir)
            snapshot.file_count = len(plan.added)
            self._write_metadata(snapshot)
            self._verify(snapshot)
        except (OSError, BackupFailureError) as e:
            shutil.rmtree(location, ignore_errors=True)
            logger.critical("Backup failed: %s", e)
            raise BackupFailureError(f"Backup '{label}' could not be created: {e}") from e

        logger.info("Backup complete: %s (%d files)", location, snapshot.file_count)
        return snapshot

    def restore(self, snapshot: BackupSnapshot) -> None:
        """Mirror the snapshot back over the live directory's non-excluded content."""
        if not snapshot.files_dir.is_dir():
            raise BackupFailureError(
                f"Cannot restore: backup location '{snapshot.location}' does not exist"
            )

        logger.warning("Restoring %s from backup: %s", self.source_dir, snapshot.location)
        try:
            plan = plan_mirror(snapshot.files_dir, self.source_dir, self.excludes, delete=True)
            apply_mirror(plan, snapshot.files_dir, self.source_dir)
        except OSError as e:
            logger.error("Restore from %s failed: %s", snapshot.location, e)
            raise BackupFailureError(f"Restore from {snapshot.name} failed: {e}") from e
        logger.warning(
            "Restore complete: %d restored, %d removed",
            len(plan.copies),
            len(plan.deleted),
        )

    def list_all(self) -> list[BackupSnapshot]:
        """All snapshots, newest first."""
        if not self.backup_dir.is_dir():
            return []
        snapshots = []
        for entry in self.backup_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                snapshots.append(self._load(entry))
        return sorted(snapshots, key=lambda s: (s.created_at, s.name), reverse=True)

    def get(self, name: str) -> BackupSnapshot | None:
        path = self.backup_dir / name
        if not name or "/" in name or not path.is_dir():
            return None
        return self._load(path)

    def cleanup(self) -> list[str]:
        """Keep the newest ``max_backups`` snapshots; delete the rest."""
        snapshots = self.list_all()
        stale = snapshots[self.max_backups :]
        if stale:
            logger.info("Cleaning up old backups (keeping newest %d)...", self.max_backups)
        for snapshot in stale:
            logger.info("Removing old backup: %s", snapshot.location)
            shutil.rmtree(snapshot.location)
        return [s.name for s in stale]

    # ------------------------------------------------------------------
    # Interrupted-deploy marker
    # ------------------------------------------------------------------

    def begin_deploy(self, snapshot: BackupSnapshot, checkpoint: Checkpoint) -> None:
        """Record that the live directory is about to diverge from ``snapshot``."""
        payload = {"snapshot": snapshot.name, "checkpoint": checkpoint.to_dict()}
        temp = self.marker_path.with_suffix(".tmp")
        with open(temp, "w") as f:
            json.dump(payload, f)
        os.replace(temp, self.marker_path)

    def end_deploy(self) -> None:
        self.marker_path.unlink(missing_ok=True)

    def pending_deploy(self) -> tuple[BackupSnapshot, Checkpoint] | None:
        """The snapshot and checkpoint of a deploy that never finished, if any."""
        if not self.marker_path.exists():
            return None
        try:
            with open(self.marker_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BackupFailureError(f"Unreadable deploy marker {self.marker_path}: {e}") from e

        snapshot = self.get(data.get("snapshot", ""))
        if snapshot is None:
            raise BackupFailureError(
                f"Deploy marker references missing backup '{data.get('snapshot')}'"
            )
        return snapshot, Checkpoint.from_dict(data.get("checkpoint", {}))

    # ------------------------------------------------------------------
    # Deployed commit
    # ------------------------------------------------------------------

    def record_deployed(self, commit: str) -> None:
        """Remember the commit the live directory was last accepted at."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        temp = self.deployed_path.with_suffix(".tmp")
        with open(temp, "w") as f:
            json.dump({"commit": commit}, f)
        os.replace(temp, self.deployed_path)

    def deployed_commit(self) -> str | None:
        if not self.deployed_path.exists():
            return None
        try:
            with open(self.deployed_path) as f:
                return json.load(f).get("commit")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable deployed-commit record %s: %s", self.deployed_path, e)
            return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_metadata(self, snapshot: BackupSnapshot) -> None:
        entry = {
            "label": snapshot.label,
            "created_at": snapshot.created_at,
            "commit": snapshot.commit,
            "file_count": snapshot.file_count,
            "source": str(self.source_dir),
        }
        with open(snapshot.location / self.METADATA_FILE, "w") as f:
            json.dump(entry, f, indent=2)

    def _verify(self, snapshot: BackupSnapshot) -> None:
        if not (snapshot.location / self.METADATA_FILE).is_file():
            raise BackupFailureError(f"Backup {snapshot.name} has no metadata")
        copied = count_entries(snapshot.files_dir)
        if copied != snapshot.file_count:
            raise BackupFailureError(
                f"Backup {snapshot.name} holds {copied} files, expected {snapshot.file_count}"
            )

    def _load(self, location: Path) -> BackupSnapshot:
        data: dict = {}
        try:
            with open(location / self.METADATA_FILE) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning("Backup %s has no readable metadata", location.name)

        created_at = data.get("created_at") or datetime.fromtimestamp(
            location.stat().st_mtime, timezone.utc
        ).strftime(_TIMESTAMP_FORMAT)
        return BackupSnapshot(
            name=location.name,
            label=data.get("label", ""),
            created_at=created_at,
            location=location,
            commit=data.get("commit"),
            file_count=int(data.get("file_count", 0)),
        )
