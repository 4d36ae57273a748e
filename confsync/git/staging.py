"""Staging repository — the private local mirror of the remote.

The staging working tree is the only place git ever writes. The live
directory is reconciled from it afterwards by the deploy engine, so even
destructive operations (hard reset, forced checkout) are safe here.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from confsync.config import Credentials, RepositorySpec
from confsync.errors import (
    BranchNotFoundError,
    ConfigMismatchError,
    MergeConflictError,
    NetworkFailureError,
    UpdateError,
)
from confsync.git.credentials import git_environment, install_credential_store
from confsync.models import Checkpoint, UpdateStrategy, short_sha

logger = logging.getLogger(__name__)

# Identity used only if a pull ever has to create a merge commit.
_COMMITTER_NAME = "confsync"
_COMMITTER_EMAIL = "confsync@localhost"


class StagingRepository:
    """Wraps git operations on the staging clone."""

    def __init__(
        self,
        path: str | Path,
        spec: RepositorySpec,
        credentials: Credentials | None = None,
    ):
        self.path = Path(path)
        self.spec = spec
        self.credentials = credentials or Credentials()
        self._env = git_environment(self.credentials)
        self._repo: Repo | None = None

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            self._repo = Repo(self.path)
            self._repo.git.update_environment(**self._env)
        return self._repo

    @property
    def remote_ref(self) -> str:
        return f"{self.spec.remote}/{self.spec.branch}"

    def exists(self) -> bool:
        """True when the staging directory holds a repository with a valid HEAD."""
        if not (self.path / ".git").is_dir():
            return False
        try:
            return self.repo.head.is_valid()
        except (InvalidGitRepositoryError, NoSuchPathError):
            self._repo = None
            return False

    def discard(self) -> None:
        """Delete the staging clone entirely."""
        self._repo = None
        if self.path.exists():
            shutil.rmtree(self.path)

    # ------------------------------------------------------------------
    # Clone / fetch
    # ------------------------------------------------------------------

    def clone(self) -> str:
        """Create the staging clone for the configured branch. Returns HEAD.

        On any failure the partial clone is removed again.
        """
        if self.path.exists():
            logger.warning("Removing incomplete staging directory %s", self.path)
            self.discard()

        logger.info("Initializing staging repository in %s...", self.path)
        self.path.mkdir(parents=True)
        try:
            repo = Repo.init(self.path)
            repo.git.update_environment(**self._env)
            self._repo = repo
            with repo.config_writer() as writer:
                writer.set_value("user", "name", _COMMITTER_NAME)
                writer.set_value("user", "email", _COMMITTER_EMAIL)
                writer.set_value("pull", "rebase", "false")

            logger.info("Adding remote %s -> %s", self.spec.remote, self.spec.url)
            repo.create_remote(self.spec.remote, self.spec.url)
            install_credential_store(repo, self.spec.url, self.credentials)

            self._fetch()
            self._require_branch()

            logger.info("Checking out branch %s...", self.spec.branch)
            try:
                repo.git.checkout("-B", self.spec.branch, "--track", self.remote_ref)
            except GitCommandError as e:
                raise UpdateError(f"git checkout failed: {_stderr(e)}") from e
        except BaseException:
            self.discard()
            raise

        head = self.head_commit()
        logger.info("Staging clone complete at %s", short_sha(head))
        return head

    def verify_remote(self) -> None:
        """Fail unless the configured remote URL is the one the clone tracks."""
        try:
            remote = self.repo.remote(self.spec.remote)
        except ValueError:
            raise ConfigMismatchError(
                f"Remote '{self.spec.remote}' is not configured in {self.path}"
            )

        urls = list(remote.urls)
        current = urls[0] if urls else ""
        if current != self.spec.url:
            logger.critical(
                "Git remote '%s' does not match configured repository '%s'",
                current,
                self.spec.url,
            )
            logger.critical("Fix the configuration or remove %s to re-clone", self.path)
            raise ConfigMismatchError(
                f"Remote mismatch: '{current}' != configured '{self.spec.url}'"
            )
        logger.info("Git remote is correctly set to %s", self.spec.url)

    def fetch(self) -> None:
        """Fetch the remote and make sure the configured branch is on it."""
        install_credential_store(self.repo, self.spec.url, self.credentials)
        self._fetch()
        self._require_branch()

    def prune(self) -> None:
        """Garbage-collect stale remote refs and unreachable objects.

        Never touches the working tree; failure is logged and ignored.
        """
        logger.info("Starting git prune...")
        if not self._try_git("remote", "prune", self.spec.remote) or not self._try_git("prune"):
            logger.warning("Git prune failed, continuing anyway")

    def remote_branches(self) -> list[str]:
        try:
            output = self.repo.git.for_each_ref(
                "--format=%(refname:strip=3)", f"refs/remotes/{self.spec.remote}"
            )
        except GitCommandError as e:
            raise UpdateError(f"Could not list remote branches: {_stderr(e)}") from e
        return [line for line in output.splitlines() if line and line != "HEAD"]

    # ------------------------------------------------------------------
    # Branch / update
    # ------------------------------------------------------------------

    def switch_branch(self, name: str | None = None) -> None:
        """Check out ``name`` (default: the configured branch) if not already on it."""
        target = name or self.spec.branch
        current = self.current_branch()
        if current == target:
            logger.info("Staying on branch: %s", current)
            return

        logger.info("Switching to branch %s...", target)
        local = {head.name for head in self.repo.heads}
        try:
            if target in local:
                self.repo.git.checkout(target)
            else:
                self.repo.git.checkout("-b", target, "--track", f"{self.spec.remote}/{target}")
        except GitCommandError as e:
            logger.error("Git checkout failed: %s", _stderr(e))
            self._try_git("merge", "--abort")
            if current:
                self._try_git("checkout", "--force", current)
            raise UpdateError(f"git checkout {target} failed: {_stderr(e)}") from e

    def update(self, strategy: UpdateStrategy | None = None) -> None:
        """Move the working tree to the remote tip with the configured strategy."""
        strategy = strategy or self.spec.strategy
        if strategy == UpdateStrategy.FAST_FORWARD:
            self._pull()
        else:
            self._reset_to_remote()

    def _pull(self) -> None:
        logger.info("Starting git pull...")
        try:
            self.repo.git.pull("--no-rebase", self.spec.remote, self.spec.branch)
            return
        except GitCommandError as e:
            logger.warning("Git pull failed, attempting to resolve: %s", _stderr(e))

        self._try_git("merge", "--abort")
        logger.info("Resetting tracked files and retrying pull...")
        self._try_git("reset", "--hard", "HEAD")

        try:
            self.repo.git.pull("--no-rebase", self.spec.remote, self.spec.branch)
        except GitCommandError as e:
            self._try_git("merge", "--abort")
            logger.error("Git pull failed even after reset: %s", _stderr(e))
            raise MergeConflictError(f"git pull failed after retry: {_stderr(e)}") from e
        logger.info("Git pull succeeded after reset")

    def _reset_to_remote(self) -> None:
        logger.info("Starting git reset...")
        discarded = self.diff_stat("HEAD", self.remote_ref)
        if discarded:
            logger.info("Changes that will be discarded by reset:")
            for line in discarded:
                logger.info("  %s", line)
        try:
            self.repo.git.reset("--hard", self.remote_ref)
        except GitCommandError as e:
            raise UpdateError(f"git reset --hard {self.remote_ref} failed: {_stderr(e)}") from e

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self) -> Checkpoint:
        if not self.exists():
            return Checkpoint(commit=None)
        return Checkpoint(commit=self.head_commit(), branch=self.current_branch())

    def restore_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Put the staging clone back where ``checkpoint`` recorded it."""
        if checkpoint.is_initial:
            logger.warning("Discarding staging clone %s", self.path)
            self.discard()
            return

        if not self.exists():
            logger.warning("No staging repository at %s; nothing to revert", self.path)
            return

        logger.warning("Reverting staging repository to %s", short_sha(checkpoint.commit))
        try:
            if checkpoint.branch and self.current_branch() != checkpoint.branch:
                self._try_git("merge", "--abort")
                self.repo.git.checkout("--force", checkpoint.branch)
            self.repo.git.reset("--hard", checkpoint.commit)
        except GitCommandError as e:
            raise UpdateError(
                f"Could not revert staging to {short_sha(checkpoint.commit)}: {_stderr(e)}"
            ) from e

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def head_commit(self) -> str | None:
        try:
            return self.repo.git.rev_parse("HEAD")
        except GitCommandError:
            return None

    def remote_tip(self) -> str:
        try:
            return self.repo.git.rev_parse(self.remote_ref)
        except GitCommandError as e:
            raise UpdateError(f"Cannot resolve {self.remote_ref}: {_stderr(e)}") from e

    def current_branch(self) -> str | None:
        if self.repo.head.is_detached:
            return None
        return self.repo.active_branch.name

    def tracked_files(self, ref: str = "HEAD") -> list[str]:
        try:
            output = self.repo.git.ls_tree("-r", "-z", "--name-only", ref)
        except GitCommandError as e:
            raise UpdateError(f"Cannot list files of {short_sha(ref)}: {_stderr(e)}") from e
        return [name for name in output.split("\0") if name]

    def changed_files(self, old: str, new: str) -> list[str]:
        try:
            output = self.repo.git.diff("--name-only", "-z", "--no-renames", old, new)
        except GitCommandError as e:
            raise UpdateError(
                f"Cannot diff {short_sha(old)}..{short_sha(new)}: {_stderr(e)}"
            ) from e
        return [name for name in output.split("\0") if name]

    def diff_stat(self, old: str, new: str) -> list[str]:
        try:
            return self.repo.git.diff("--stat", old, new).splitlines()
        except GitCommandError:
            return []

    def ensure_excludes(self, entries: list[str]) -> None:
        """Declare bookkeeping paths as never-trackable in ``.git/info/exclude``."""
        exclude_file = Path(self.repo.git_dir) / "info" / "exclude"
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_file.read_text().splitlines() if exclude_file.exists() else []
        missing = [entry for entry in entries if entry not in existing]
        if not missing:
            return
        with open(exclude_file, "a") as f:
            if existing and existing[-1] != "":
                f.write("\n")
            for entry in missing:
                f.write(entry + "\n")
                logger.info("Added '%s' to %s", entry, exclude_file)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch(self) -> None:
        logger.info("Starting git fetch from %s...", self.spec.remote)
        try:
            self.repo.git.fetch(self.spec.remote)
        except GitCommandError as e:
            logger.error("Git fetch failed: %s", _stderr(e))
            raise NetworkFailureError(f"git fetch failed: {_stderr(e)}") from e

    def _require_branch(self) -> None:
        available = self.remote_branches()
        if self.spec.branch in available:
            return
        logger.error(
            "Branch '%s' does not exist on remote '%s'", self.spec.branch, self.spec.remote
        )
        logger.error("Available remote branches: %s", ", ".join(available) or "(none)")
        logger.error("Update the git_branch option to match your repository")
        raise BranchNotFoundError(self.spec.branch, self.spec.remote, available)

    def _try_git(self, command: str, *args: str) -> bool:
        try:
            getattr(self.repo.git, command.replace("-", "_"))(*args)
            return True
        except GitCommandError as e:
            logger.debug("git %s %s failed: %s", command, " ".join(args), _stderr(e))
            return False


def _stderr(error: GitCommandError) -> str:
    return (error.stderr or "").strip() or str(error)
