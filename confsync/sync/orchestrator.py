"""Sync orchestrator — one lock-guarded pass from remote tip to live directory.

    acquire lock
      -> recover an interrupted deploy, if any
      -> startup checks
      -> clone (no staging repo yet) | verify remote, fetch, switch, update
      -> preflight tracked files against protected paths
      -> backup -> deploy -> verify protected paths -> validate
      -> accept (maybe restart) | roll back from the backup
    release lock

Every stage that fails rolls back its own effects and ends the pass; the
pipeline is never retried within one invocation.
"""

from __future__ import annotations

import logging
import threading

from git import GitCommandError

from confsync.backup.store import BackupStore
from confsync.config import SyncConfig
from confsync.deploy.engine import DeployEngine
from confsync.errors import (
    BackupFailureError,
    ConfigError,
    LockContention,
    SyncError,
    UpdateError,
    ValidationFailureError,
)
from confsync.git.staging import StagingRepository
from confsync.models import BackupSnapshot, Checkpoint, SyncOutcome, SyncResult, short_sha
from confsync.safety.protected import ProtectedPathGuard, ProtectedPathSet
from confsync.sync.lock import target_lock
from confsync.validation.commands import ExternalCommand
from confsync.validation.gate import RestartIgnoreList, ValidationGate

logger = logging.getLogger(__name__)

LEGACY_GIT_DIR = ".git/"


class SyncOrchestrator:
    """Sequences guard, staging, backup, deploy and validation for one target."""

    def __init__(self, config: SyncConfig, stop_event: threading.Event | None = None):
        self.config = config
        self.stop_event = stop_event or threading.Event()

        self.protected = ProtectedPathSet.default(config.protect_user_dirs)
        self.excludes = self.protected.union(config.bookkeeping_patterns()).union(
            [LEGACY_GIT_DIR]
        )
        self.guard = ProtectedPathGuard(config.target_dir, self.protected)
        self.staging = StagingRepository(
            config.staging_path, config.repository, config.credentials
        )
        self.backups = BackupStore(
            config.backup_path, config.target_dir, self.excludes, config.max_backups
        )
        self.deployer = DeployEngine(
            config.target_dir,
            self.excludes,
            delete=config.deploy_delete,
            allow_legacy_git_dir=config.allow_legacy_config_git_dir,
        )
        self.gate = ValidationGate(
            self.staging,
            validator=ExternalCommand(
                config.validate_command, config.target_dir, config.command_timeout
            ),
            restarter=ExternalCommand(
                config.restart_command, config.target_dir, config.command_timeout
            ),
            ignore=RestartIgnoreList(config.restart_ignore, config.target_dir),
            auto_restart=config.auto_restart,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_once(self, dry_run: bool | None = None) -> SyncResult:
        """Run one full pass. Never raises ``SyncError``; failures become results."""
        if dry_run is None:
            dry_run = self.config.deploy_dry_run
        try:
            with target_lock(self.config.lock_path):
                result = self._run_locked(dry_run)
        except LockContention as e:
            logger.info("%s; skipping this cycle", e)
            return SyncResult.skipped("Another run is in progress")

        if result.outcome == SyncOutcome.FAILED:
            log = logger.critical if result.fatal else logger.error
            log(result.summary())
        elif result.outcome == SyncOutcome.ROLLED_BACK:
            logger.warning(result.summary())
        else:
            logger.info(result.summary())
        return result

    def run_forever(self) -> SyncResult:
        """Repeat ``run_once`` every ``repeat.interval`` seconds until stopped.

        A single pass when ``repeat.active`` is off. A fatal failure ends the
        loop so an operator can intervene.
        """
        result = self.run_once()
        while self.config.repeat.active and not self.stop_event.is_set():
            if result.fatal:
                logger.critical("Stopping after fatal error; fix the problem and restart")
                break
            logger.info("Next run in %d seconds", self.config.repeat.interval)
            if self.stop_event.wait(self.config.repeat.interval):
                break
            result = self.run_once()
        return result

    def stop(self) -> None:
        self.stop_event.set()

    def restore_backup(self, name: str) -> BackupSnapshot:
        """Restore the live directory from the named backup, under the lock."""
        with target_lock(self.config.lock_path):
            snapshot = self.backups.get(name)
            if snapshot is None:
                raise BackupFailureError(
                    f"No backup named '{name}' in {self.config.backup_path}"
                )
            before = self.guard.snapshot()
            self.backups.restore(snapshot)
            self.guard.verify(before, "restore")
        return snapshot

    def recover_interrupted_deploy(self) -> bool:
        """Undo a deploy that a previous process never finished. Caller holds the lock."""
        pending = self.backups.pending_deploy()
        if pending is None:
            return False
        snapshot, checkpoint = pending
        logger.warning(
            "Found an interrupted deploy; restoring %s from %s",
            self.config.target_dir,
            snapshot.name,
        )
        self._rollback(snapshot, checkpoint)
        self.backups.end_deploy()
        return True

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_locked(self, dry_run: bool) -> SyncResult:
        try:
            if not self.config.target_dir.is_dir():
                raise ConfigError(f"Target directory {self.config.target_dir} does not exist")
            self.recover_interrupted_deploy()
            self.deployer.check_preconditions()
            self.guard.warn_if_state_missing()

            if self.staging.exists():
                return self._sync(dry_run)
            return self._clone(dry_run)
        except SyncError as e:
            return SyncResult.failed(str(e), e.kind, fatal=e.fatal)
        except GitCommandError as e:
            return SyncResult.failed(f"git {e.command!r} failed: {e.stderr}", UpdateError.kind)

    def _clone(self, dry_run: bool) -> SyncResult:
        spec = self.config.repository
        logger.info(
            "No staging repository yet; cloning %s (branch %s)", spec.url, spec.branch
        )
        new_commit = self.staging.clone()
        self.staging.ensure_excludes(self._git_excludes())
        return self._apply_update(
            Checkpoint(commit=None), None, new_commit, "pre-clone", dry_run
        )

    def _sync(self, dry_run: bool) -> SyncResult:
        self.staging.verify_remote()
        self.staging.ensure_excludes(self._git_excludes())
        checkpoint = self.staging.checkpoint()
        deployed = self.backups.deployed_commit()

        self.staging.fetch()
        if self.config.repository.prune:
            self.staging.prune()
        self.staging.switch_branch()

        head = self.staging.head_commit()
        if head == deployed == self.staging.remote_tip():
            logger.info("Already up to date at %s", short_sha(deployed))
            return SyncResult.skipped("Already up to date", deployed)
        if head != deployed:
            logger.warning(
                "Staging is at %s but the live directory was last deployed at %s",
                short_sha(head),
                short_sha(deployed),
            )

        try:
            self.staging.update()
        except BaseException:
            self.staging.restore_checkpoint(checkpoint)
            raise

        new_commit = self.staging.head_commit()
        if new_commit == deployed:
            logger.info("No new commits (still at %s)", short_sha(deployed))
            return SyncResult.skipped("No new commits", deployed)

        logger.info("Updated %s -> %s", short_sha(deployed), short_sha(new_commit))
        return self._apply_update(checkpoint, deployed, new_commit, "pre-sync", dry_run)

    def _apply_update(
        self,
        checkpoint: Checkpoint,
        old_commit: str | None,
        new_commit: str,
        label: str,
        dry_run: bool,
    ) -> SyncResult:
        """Deploy ``new_commit`` over a live directory last accepted at ``old_commit``.

        ``checkpoint`` is where staging stood before this pass; every failure
        puts staging back there.
        """
        try:
            self.guard.preflight(self.staging.tracked_files(new_commit), new_commit)
        except SyncError:
            self.staging.restore_checkpoint(checkpoint)
            raise

        if dry_run:
            try:
                deploy = self.deployer.apply(self.staging.path, dry_run=True)
            finally:
                self.staging.restore_checkpoint(checkpoint)
            return SyncResult(
                SyncOutcome.PREVIEWED,
                old_commit=old_commit,
                new_commit=new_commit,
                reason="Dry run; nothing written",
                deploy=deploy,
            )

        protected_before = self.guard.snapshot()
        try:
            backup = self.backups.create(label, commit=old_commit)
        except BaseException:
            self.staging.restore_checkpoint(checkpoint)
            raise

        self.backups.begin_deploy(backup, checkpoint)
        try:
            deploy = self.deployer.apply(self.staging.path)
            self.guard.verify(protected_before, "deploy")
            verdict = self.gate.evaluate(
                old_commit, new_commit, revert=lambda: self._rollback(backup, checkpoint)
            )
            self.guard.verify(protected_before, "validation")
        except BaseException:
            logger.warning("Deploy of %s did not complete", short_sha(new_commit))
            self._rollback(backup, checkpoint)
            self.backups.end_deploy()
            self.backups.cleanup()
            raise
        self.backups.end_deploy()

        if verdict.outcome == SyncOutcome.ROLLED_BACK:
            self.backups.cleanup()
            return SyncResult(
                SyncOutcome.ROLLED_BACK,
                old_commit=old_commit,
                new_commit=new_commit,
                reason=verdict.reason,
                error_kind=ValidationFailureError.kind,
                deploy=deploy,
            )

        self.backups.record_deployed(new_commit)
        self.backups.cleanup()
        return SyncResult(
            SyncOutcome.DEPLOYED,
            old_commit=old_commit,
            new_commit=new_commit,
            deploy=deploy,
            restarted=verdict.restarted,
        )

    def _rollback(self, snapshot: BackupSnapshot, checkpoint: Checkpoint) -> None:
        logger.warning("Rolling back %s to backup %s", self.config.target_dir, snapshot.name)
        self.backups.restore(snapshot)
        self.staging.restore_checkpoint(checkpoint)

    def _git_excludes(self) -> list[str]:
        return ["/" + pattern for pattern in self.config.bookkeeping_patterns()]
