"""Tests for the deploy engine."""

import tempfile
from pathlib import Path

import pytest

from confsync.deploy.engine import DeployEngine
from confsync.errors import DeployError, LegacyGitDirError
from confsync.safety.protected import ProtectedPathSet


def _trees(tmp: str):
    staging, live = Path(tmp) / "staging", Path(tmp) / "live"
    (staging / ".git").mkdir(parents=True)
    (staging / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (staging / "configuration.yaml").write_text("new\n")
    (staging / "automations.yaml").write_text("[]\n")
    live.mkdir()
    (live / "configuration.yaml").write_text("old\n")
    (live / "leftover.yaml").write_text("x\n")
    (live / "secrets.yaml").write_text("secret\n")
    return staging, live


def _excludes():
    return ProtectedPathSet.default().union([".git/"])


def test_dry_run_reports_without_writing():
    with tempfile.TemporaryDirectory() as tmp:
        staging, live = _trees(tmp)
        engine = DeployEngine(live, _excludes(), delete=True)
        result = engine.apply(staging, dry_run=True)

        assert result.dry_run
        assert result.added == ["automations.yaml"]
        assert result.updated == ["configuration.yaml"]
        assert result.deleted == ["leftover.yaml"]
        assert (live / "configuration.yaml").read_text() == "old\n"
        assert not (live / "automations.yaml").exists()


def test_apply_mirrors_and_skips_git_metadata():
    with tempfile.TemporaryDirectory() as tmp:
        staging, live = _trees(tmp)
        result = DeployEngine(live, _excludes(), delete=True).apply(staging)

        assert result.changed_count == 3
        assert (live / "configuration.yaml").read_text() == "new\n"
        assert not (live / "leftover.yaml").exists()
        assert not (live / ".git").exists()
        assert (live / "secrets.yaml").read_text() == "secret\n"


def test_copy_only_mode_keeps_extra_files():
    with tempfile.TemporaryDirectory() as tmp:
        staging, live = _trees(tmp)
        result = DeployEngine(live, _excludes(), delete=False).apply(staging)
        assert result.deleted == []
        assert (live / "leftover.yaml").exists()


def test_type_conflict_fails_before_writing():
    with tempfile.TemporaryDirectory() as tmp:
        staging, live = _trees(tmp)
        (staging / "packages").write_text("file now\n")
        (live / "packages").mkdir()
        (live / "packages" / "a.yaml").write_text("a\n")

        with pytest.raises(DeployError, match="deploy_delete"):
            DeployEngine(live, _excludes(), delete=False).apply(staging)
        assert (live / "configuration.yaml").read_text() == "old\n"


def test_legacy_git_dir_blocks_delete_mode_unless_allowed():
    with tempfile.TemporaryDirectory() as tmp:
        _, live = _trees(tmp)
        (live / ".git").mkdir()

        DeployEngine(live, _excludes(), delete=False).check_preconditions()
        with pytest.raises(LegacyGitDirError):
            DeployEngine(live, _excludes(), delete=True).check_preconditions()
        DeployEngine(
            live, _excludes(), delete=True, allow_legacy_git_dir=True
        ).check_preconditions()
