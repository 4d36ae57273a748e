"""Deploy engine — reconcile the live directory from the staging working tree."""

from __future__ import annotations

import logging
from pathlib import Path

from confsync.errors import DeployError, LegacyGitDirError
from confsync.models import DeployResult
from confsync.safety.protected import PathPatternSet
from confsync.utils.tree import apply_mirror, plan_mirror

logger = logging.getLogger(__name__)

# Cap on per-item log lines for a single deploy.
_MAX_LOGGED_ITEMS = 200


class DeployEngine:
    """Mirrors staging onto the live directory, never reaching excluded paths.

    Args:
        target_dir: The live directory.
        excludes: Protected plus bookkeeping patterns (plus ``.git/``).
        delete: Remove live files that are absent from staging.
        allow_legacy_git_dir: Permit delete mode while ``<target>/.git`` exists.
    """

    def __init__(
        self,
        target_dir: str | Path,
        excludes: PathPatternSet,
        delete: bool = False,
        allow_legacy_git_dir: bool = False,
    ):
        self.target_dir = Path(target_dir)
        self.excludes = excludes
        self.delete = delete
        self.allow_legacy_git_dir = allow_legacy_git_dir

    def check_preconditions(self) -> None:
        """Refuse a delete-mode mirror over a legacy in-place git checkout."""
        legacy = self.target_dir / ".git"
        if not legacy.exists():
            return
        if self.delete and not self.allow_legacy_git_dir:
            logger.critical("Found legacy git directory %s", legacy)
            logger.critical(
                "Remove it (or set allow_legacy_config_git_dir) before enabling deploy_delete"
            )
            raise LegacyGitDirError(
                f"{legacy} exists; refusing to mirror with deletions enabled"
            )
        logger.warning(
            "Found legacy git directory %s; it is left untouched and excluded from deploys",
            legacy,
        )

    def apply(self, staging_dir: str | Path, dry_run: bool = False) -> DeployResult:
        """Copy new/changed files from staging and (optionally) delete the rest."""
        staging_dir = Path(staging_dir)
        mode = "mirror with deletions" if self.delete else "copy-only"
        logger.info(
            "%s %s -> %s (%s)",
            "Previewing deploy" if dry_run else "Deploying",
            staging_dir,
            self.target_dir,
            mode,
        )

        try:
            plan = plan_mirror(staging_dir, self.target_dir, self.excludes, delete=self.delete)
        except OSError as e:
            raise DeployError(f"Could not compare {staging_dir} with {self.target_dir}: {e}") from e

        if plan.conflicts:
            for rel in plan.conflicts:
                logger.error("Type conflict at %s (file vs directory)", rel)
            raise DeployError(
                f"{len(plan.conflicts)} path(s) change between file and directory; "
                "enable deploy_delete to replace them"
            )

        result = DeployResult(
            added=plan.added,
            updated=plan.updated,
            deleted=plan.deleted,
            dry_run=dry_run,
        )
        self._log_items(result)

        if not dry_run:
            try:
                apply_mirror(plan, staging_dir, self.target_dir)
            except OSError as e:
                logger.error("Deploy failed part-way: %s", e)
                raise DeployError(f"Deploy to {self.target_dir} failed: {e}") from e

        logger.info(result.summary())
        return result

    def _log_items(self, result: DeployResult) -> None:
        verb = "would " if result.dry_run else ""
        items = (
            [(f"{verb}add", rel) for rel in result.added]
            + [(f"{verb}update", rel) for rel in result.updated]
            + [(f"{verb}delete", rel) for rel in result.deleted]
        )
        for action, rel in items[:_MAX_LOGGED_ITEMS]:
            logger.info("  %s: %s", action, rel)
        if len(items) > _MAX_LOGGED_ITEMS:
            logger.info("  ... and %d more", len(items) - _MAX_LOGGED_ITEMS)
