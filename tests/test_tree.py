"""Tests for exclusion-aware tree scanning and mirroring."""

import os
import tempfile
from pathlib import Path

from confsync.safety.protected import PathPatternSet
from confsync.utils.tree import apply_mirror, count_entries, plan_mirror, scan_tree


def _write(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def test_scan_prunes_excluded_directories():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        _write(root, {"a.yaml": "1", ".storage/x": "2", "pkg/b.yaml": "3"})
        scan = scan_tree(root, PathPatternSet([".storage/"]))
        assert set(scan.files) == {"a.yaml", "pkg/b.yaml"}
        assert scan.dirs == {"pkg"}


def test_copy_only_plan_adds_and_updates():
    with tempfile.TemporaryDirectory() as tmp:
        src, dst = Path(tmp) / "src", Path(tmp) / "dst"
        _write(src, {"same.yaml": "x", "changed.yaml": "new", "added/one.yaml": "1"})
        _write(dst, {"same.yaml": "x", "changed.yaml": "old", "extra.yaml": "keep"})

        plan = plan_mirror(src, dst, PathPatternSet(), delete=False)
        assert plan.added == ["added/one.yaml"]
        assert plan.updated == ["changed.yaml"]
        assert plan.deleted == []

        apply_mirror(plan, src, dst)
        assert (dst / "changed.yaml").read_text() == "new"
        assert (dst / "added" / "one.yaml").read_text() == "1"
        assert (dst / "extra.yaml").read_text() == "keep"


def test_delete_plan_never_reaches_excluded_paths():
    with tempfile.TemporaryDirectory() as tmp:
        src, dst = Path(tmp) / "src", Path(tmp) / "dst"
        _write(src, {"configuration.yaml": "new", "secrets.yaml": "from-repo"})
        _write(
            dst,
            {
                "configuration.yaml": "old",
                "secrets.yaml": "live-secret",
                ".storage/auth": "state",
                "gone/stale.yaml": "x",
            },
        )
        excludes = PathPatternSet([".storage/", "secrets.yaml"])

        plan = plan_mirror(src, dst, excludes, delete=True)
        assert plan.deleted == ["gone/stale.yaml"]
        assert plan.stale_dirs == ["gone"]

        apply_mirror(plan, src, dst)
        assert (dst / "secrets.yaml").read_text() == "live-secret"
        assert (dst / ".storage" / "auth").read_text() == "state"
        assert not (dst / "gone").exists()


def test_file_replacing_directory_is_a_conflict_without_delete():
    with tempfile.TemporaryDirectory() as tmp:
        src, dst = Path(tmp) / "src", Path(tmp) / "dst"
        _write(src, {"packages": "now a file"})
        _write(dst, {"packages/old.yaml": "x"})

        assert plan_mirror(src, dst, PathPatternSet(), delete=False).conflicts == ["packages"]

        plan = plan_mirror(src, dst, PathPatternSet(), delete=True)
        assert plan.conflicts == []
        apply_mirror(plan, src, dst)
        assert (dst / "packages").read_text() == "now a file"


def test_relative_symlinks_are_copied_as_links():
    with tempfile.TemporaryDirectory() as tmp:
        src, dst = Path(tmp) / "src", Path(tmp) / "dst"
        _write(src, {"real.yaml": "x"})
        dst.mkdir()
        os.symlink("real.yaml", src / "alias.yaml")
        os.symlink("/etc/passwd", src / "escape")

        plan = plan_mirror(src, dst, PathPatternSet(), delete=False)
        assert sorted(plan.added) == ["alias.yaml", "real.yaml"]
        apply_mirror(plan, src, dst)
        assert os.readlink(dst / "alias.yaml") == "real.yaml"
        assert not os.path.lexists(dst / "escape")
        assert count_entries(dst) == 2
