"""Core data models shared across the synchronization pipeline.

Covers: commit checkpoints, backup snapshots, deploy change sets, and the
outcome of one orchestration pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class UpdateStrategy(Enum):
    """How the staging repository moves to the remote tip."""

    FAST_FORWARD = "fast-forward"  # git pull --no-rebase, retried once
    HARD_RESET = "hard-reset"  # git reset --hard <remote>/<branch>


class SyncOutcome(Enum):
    """Terminal state of one orchestration pass."""

    SKIPPED = "skipped"  # nothing changed, or another run holds the lock
    DEPLOYED = "deployed"
    PREVIEWED = "previewed"  # dry run: change set computed, nothing written
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"  # validation failed, previous state restored


# --- Commits ---


@dataclass(frozen=True)
class Checkpoint:
    """Where the staging repository stood before an update.

    ``commit`` is ``None`` when no staging clone existed yet; restoring such
    a checkpoint discards the clone so the next run starts fresh.
    """

    commit: str | None
    branch: str | None = None

    @property
    def is_initial(self) -> bool:
        return self.commit is None

    def to_dict(self) -> dict:
        return {"commit": self.commit, "branch": self.branch}

    @classmethod
    def from_dict(cls, data: dict) -> Checkpoint:
        return cls(commit=data.get("commit"), branch=data.get("branch"))


def short_sha(commit: str | None) -> str:
    return commit[:12] if commit else "(none)"


# --- Backups ---


@dataclass
class BackupSnapshot:
    """A point-in-time copy of the live directory minus excluded paths."""

    name: str
    label: str
    created_at: str
    location: Path
    commit: str | None = None
    file_count: int = 0

    @property
    def files_dir(self) -> Path:
        return self.location / "files"


# --- Deploy ---


@dataclass
class DeployResult:
    """Itemized change set produced by a deploy (or a dry run of one)."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed_count(self) -> int:
        return len(self.added) + len(self.updated) + len(self.deleted)

    @property
    def has_changes(self) -> bool:
        return self.changed_count > 0

    def summary(self) -> str:
        prefix = "Dry run: would apply" if self.dry_run else "Applied"
        return (
            f"{prefix} {len(self.added)} added, {len(self.updated)} updated, "
            f"{len(self.deleted)} deleted"
        )


# --- Orchestration ---


@dataclass
class SyncResult:
    """Outcome of one orchestration pass."""

    outcome: SyncOutcome
    old_commit: str | None = None
    new_commit: str | None = None
    reason: str = ""
    error_kind: str = ""
    deploy: DeployResult | None = None
    restarted: bool = False
    fatal: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (
            SyncOutcome.SKIPPED,
            SyncOutcome.DEPLOYED,
            SyncOutcome.PREVIEWED,
        )

    @classmethod
    def skipped(cls, reason: str, commit: str | None = None) -> SyncResult:
        return cls(SyncOutcome.SKIPPED, old_commit=commit, new_commit=commit, reason=reason)

    @classmethod
    def failed(cls, reason: str, error_kind: str = "", **kwargs) -> SyncResult:
        return cls(SyncOutcome.FAILED, reason=reason, error_kind=error_kind, **kwargs)

    def summary(self) -> str:
        if self.outcome == SyncOutcome.DEPLOYED:
            return f"Deployed {short_sha(self.new_commit)} (was {short_sha(self.old_commit)})"
        if self.outcome == SyncOutcome.PREVIEWED:
            return f"Previewed {short_sha(self.new_commit)} (was {short_sha(self.old_commit)})"
        return f"{self.outcome.value.replace('_', ' ').capitalize()}: {self.reason}"
