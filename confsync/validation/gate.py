"""Validation gate — accept or roll back a deploy, then decide on a restart.

    NoChange -> Skip
    Changed  -> Validate -> Pass -> RestartDecision
                         -> Fail -> Rollback (+ one diagnostic re-validation)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from confsync.errors import UpdateError
from confsync.git.staging import StagingRepository
from confsync.models import SyncOutcome, short_sha
from confsync.validation.commands import CommandResult, ExternalCommand

logger = logging.getLogger(__name__)


class RestartIgnoreList:
    """Changed files that do not warrant a restart.

    Each entry is either an exact relative path or a directory prefix. An
    entry is a directory prefix when it ends with ``/`` or names an existing
    directory in the live target. Matching is plain string comparison, so a
    filename such as ``a.b.c`` or ``x*.yaml`` only ever matches itself.
    """

    def __init__(self, entries: Iterable[str], target_dir: str | Path):
        self.entries = [e.strip() for e in entries if e.strip()]
        self.target_dir = Path(target_dir)

    def matches(self, rel_path: str) -> bool:
        for entry in self.entries:
            if entry.endswith("/") or (self.target_dir / entry).is_dir():
                if rel_path.startswith(entry.rstrip("/") + "/"):
                    return True
            elif rel_path == entry:
                return True
        return False

    def covers(self, changed_files: Iterable[str]) -> bool:
        """True when every changed file is ignored (and there is at least one)."""
        changed = list(changed_files)
        return bool(changed) and all(self.matches(rel) for rel in changed)


@dataclass
class GateResult:
    outcome: SyncOutcome
    reason: str = ""
    restarted: bool = False


class ValidationGate:
    """Runs the external validator after a deploy and acts on its verdict."""

    def __init__(
        self,
        staging: StagingRepository,
        validator: ExternalCommand,
        restarter: ExternalCommand,
        ignore: RestartIgnoreList,
        auto_restart: bool = False,
    ):
        self.staging = staging
        self.validator = validator
        self.restarter = restarter
        self.ignore = ignore
        self.auto_restart = auto_restart

    def evaluate(
        self,
        old_commit: str | None,
        new_commit: str,
        revert: Callable[[], None],
    ) -> GateResult:
        """Validate the deployed ``new_commit``; call ``revert`` if it is rejected.

        ``old_commit`` is ``None`` after the initial clone, in which case a
        passing result never triggers a restart.
        """
        if old_commit == new_commit:
            return GateResult(SyncOutcome.SKIPPED, reason="No changes to validate")

        if not self.validator.configured:
            logger.warning("No validate_command configured; skipping configuration check")
        else:
            logger.info("Checking configuration with '%s'...", self.validator.command)
            result = self.validator.run()
            if not result.ok:
                return self._reject(old_commit, new_commit, result, revert)
            logger.info("Configuration check passed")

        return GateResult(
            SyncOutcome.DEPLOYED, restarted=self._restart(old_commit, new_commit)
        )

    def _reject(
        self,
        old_commit: str | None,
        new_commit: str,
        result: CommandResult,
        revert: Callable[[], None],
    ) -> GateResult:
        reason = result.error or f"exit code {result.exit_code}"
        logger.error("Configuration check failed (%s)", reason)
        for line in result.output_lines:
            logger.error("  %s", line)

        if old_commit:
            logger.warning(
                "Reverting %s -> %s; discarded changes:",
                short_sha(new_commit),
                short_sha(old_commit),
            )
            for line in self.staging.diff_stat(new_commit, old_commit):
                logger.warning("  %s", line)
        else:
            logger.warning("Reverting initial deployment of %s", short_sha(new_commit))
        revert()

        recheck = self.validator.run()
        if recheck.ok:
            logger.warning("Configuration is valid again after revert")
        else:
            logger.error("Configuration is still invalid after revert")
            for line in recheck.output_lines:
                logger.error("  %s", line)

        return GateResult(SyncOutcome.ROLLED_BACK, reason=f"Validation failed: {reason}")

    def _restart(self, old_commit: str | None, new_commit: str) -> bool:
        if old_commit is None:
            logger.info("Initial deployment complete; manual restart required")
            return False
        if not self.auto_restart:
            logger.info("Manual restart required to apply the new configuration")
            return False

        try:
            changed = self.staging.changed_files(old_commit, new_commit)
        except UpdateError as e:
            logger.warning("Cannot list changed files (%s); restarting anyway", e)
            changed = None

        if changed == []:
            logger.info(
                "No files changed between %s and %s; skipping restart",
                short_sha(old_commit),
                short_sha(new_commit),
            )
            return False
        if changed and self.ignore.covers(changed):
            logger.info(
                "Skipping restart: all %d changed file(s) are in restart_ignore", len(changed)
            )
            for rel in changed:
                logger.info("  ignored: %s", rel)
            return False

        if not self.restarter.configured:
            logger.warning("No restart_command configured; manual restart required")
            return False
        logger.info("Restarting with '%s'...", self.restarter.command)
        result = self.restarter.run()
        if not result.ok:
            logger.error("Restart failed (%s)", result.error or f"exit code {result.exit_code}")
            for line in result.output_lines:
                logger.error("  %s", line)
            return False
        logger.info("Restart triggered")
        return True
