"""Error taxonomy for the synchronization pipeline.

Convention:
- Every failure a pipeline stage can report is a ``SyncError`` subclass.
  The orchestrator runs the stage's rollback, logs the error and turns it
  into a ``Failed`` result; nothing is retried within one invocation.
- ``fatal`` errors need operator attention (wrong remote, vanished
  protected path, no backup) and are logged at CRITICAL. The rest are
  logged at ERROR.
- ``LockContention`` is deliberately *not* a ``SyncError``: another run
  holding the lock simply means this cycle is skipped.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every pipeline failure."""

    fatal = False
    kind = "sync_error"


class ConfigError(SyncError, ValueError):
    """The options file is missing, unreadable, or holds an invalid value."""

    fatal = True
    kind = "config_error"


class ConfigMismatchError(SyncError):
    """Local state disagrees with the configuration (e.g. a different remote URL)."""

    fatal = True
    kind = "config_mismatch"


class BranchNotFoundError(ConfigMismatchError):
    """The configured branch does not exist on the remote."""

    kind = "branch_not_found"

    def __init__(self, branch: str, remote: str, available: list[str]):
        self.branch = branch
        self.remote = remote
        self.available = list(available)
        listing = ", ".join(self.available) if self.available else "(none)"
        super().__init__(
            f"Branch '{branch}' not found on remote '{remote}'. Available: {listing}"
        )


class LegacyGitDirError(ConfigMismatchError):
    """Mirror deploy refused because the target still holds a legacy ``.git`` directory."""

    kind = "legacy_git_dir"


class NetworkFailureError(SyncError):
    """Clone or fetch failed. Nothing has been mutated."""

    kind = "network_failure"


class MergeConflictError(SyncError):
    """A fast-forward pull failed twice (once after resetting tracked files)."""

    kind = "merge_conflict"


class UpdateError(SyncError):
    """A non-merge git step (checkout, reset) failed."""

    kind = "update_failed"


class IntegrityViolationError(SyncError):
    """A protected path vanished, or the incoming commit tracks a protected path."""

    fatal = True
    kind = "integrity_violation"

    def __init__(self, message: str, paths: list[str] | None = None):
        self.paths = list(paths or [])
        super().__init__(message)


class BackupFailureError(SyncError):
    """A backup could not be produced or verified; no destructive step may run."""

    fatal = True
    kind = "backup_failure"


class DeployError(SyncError):
    """Copying the staging tree onto the live directory failed part-way."""

    kind = "deploy_failed"


class ValidationFailureError(SyncError):
    """The external validator rejected the deployed configuration."""

    kind = "validation_failed"


class LockContention(Exception):
    """Another instance holds the target lock."""
