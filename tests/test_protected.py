"""Tests for protected-path patterns and the guard."""

import tempfile
from pathlib import Path

import pytest

from confsync.errors import IntegrityViolationError
from confsync.safety.protected import (
    PathPattern,
    PathPatternSet,
    ProtectedPathGuard,
    ProtectedPathSet,
)


def test_plain_pattern_matches_path_and_descendants():
    pattern = PathPattern(".storage/")
    assert pattern.matches(".storage")
    assert pattern.matches(".storage/core.config")
    assert not pattern.matches(".storage2")
    assert not pattern.matches("sub/.storage")


def test_literal_dots_are_not_wildcards():
    pattern = PathPattern("home-assistant_v2.db")
    assert pattern.matches("home-assistant_v2.db")
    assert not pattern.matches("home-assistant_v2Xdb")
    assert not pattern.matches("home-assistant_v2.db-wal")


def test_glob_pattern_covers_rotations():
    pattern = PathPattern(".git_pull.log.*")
    assert pattern.is_glob
    assert pattern.matches(".git_pull.log.1")
    assert not pattern.matches(".git_pull.log")


def test_pattern_set_dedupes_and_unions():
    patterns = PathPatternSet(["a/", "a", "b"])
    assert len(patterns) == 2
    merged = patterns.union(["c", "b/"])
    assert [p.path for p in merged] == ["a", "b", "c"]
    assert merged.matching(["a/x", "c", "d"]) == ["a/x", "c"]


def test_default_set_includes_runtime_state_and_extras():
    protected = ProtectedPathSet.default(["www"])
    for rel in (
        ".storage/auth",
        "secrets.yaml",
        "home-assistant_v2.db-shm",
        ".cloud/remote",
        "www/logo.png",
    ):
        assert protected.matches(rel), rel
    assert not protected.matches("configuration.yaml")


def test_verify_detects_vanished_path():
    with tempfile.TemporaryDirectory() as tmp:
        target = Path(tmp)
        (target / ".storage").mkdir()
        (target / "secrets.yaml").write_text("x: 1\n")
        guard = ProtectedPathGuard(target, ProtectedPathSet.default())

        snapshot = guard.snapshot()
        assert set(snapshot.existing) == {".storage", "secrets.yaml"}
        guard.verify(snapshot, "deploy")

        (target / "secrets.yaml").unlink()
        with pytest.raises(IntegrityViolationError) as exc:
            guard.verify(snapshot, "deploy")
        assert exc.value.paths == ["secrets.yaml"]


def test_preflight_refuses_tracked_protected_files():
    guard = ProtectedPathGuard("/nonexistent", ProtectedPathSet.default())
    guard.preflight(["configuration.yaml", "automations.yaml"], "a" * 40)
    with pytest.raises(IntegrityViolationError) as exc:
        guard.preflight(["configuration.yaml", "secrets.yaml", ".storage/auth"], "b" * 40)
    assert exc.value.paths == ["secrets.yaml", ".storage/auth"]
