"""Tests for the validation gate, the restart ignore list and external commands."""

import tempfile
from pathlib import Path

from _git_helpers import Remote
from confsync.config import RepositorySpec
from confsync.git.staging import StagingRepository
from confsync.models import SyncOutcome
from confsync.validation.commands import ExternalCommand
from confsync.validation.gate import RestartIgnoreList, ValidationGate


# --- Ignore list ---


def test_ignore_list_example_requires_restart_for_unlisted_file():
    with tempfile.TemporaryDirectory() as tmp:
        ignore = RestartIgnoreList(["ui-lovelace.yaml", "exampledirectory/", ".gitignore"], tmp)
        changed = ["ui-lovelace.yaml", "exampledirectory/x.txt", "a.b.c"]
        assert not ignore.covers(changed)
        assert ignore.covers(changed[:2])


def test_ignore_entries_match_literally():
    with tempfile.TemporaryDirectory() as tmp:
        ignore = RestartIgnoreList(["a.b.c", "x*.yaml"], tmp)
        assert ignore.matches("a.b.c")
        assert not ignore.matches("aXbXc")
        assert ignore.matches("x*.yaml")
        assert not ignore.matches("xyz.yaml")
        assert not ignore.matches("a.b.c.d")


def test_existing_directory_entry_is_a_prefix():
    with tempfile.TemporaryDirectory() as tmp:
        (Path(tmp) / "www").mkdir()
        ignore = RestartIgnoreList(["www"], tmp)
        assert ignore.matches("www/card.js")
        assert not ignore.matches("www2/card.js")


def test_empty_change_set_is_not_covered():
    assert not RestartIgnoreList(["a"], "/").covers([])


# --- External commands ---


def test_external_command_captures_output():
    with tempfile.TemporaryDirectory() as tmp:
        result = ExternalCommand("echo checked; exit 3", tmp).run()
        assert not result.ok
        assert result.exit_code == 3
        assert result.output_lines == ["checked"]


def test_external_command_timeout():
    with tempfile.TemporaryDirectory() as tmp:
        result = ExternalCommand("sleep 5", tmp, timeout=1).run()
        assert not result.ok
        assert "timed out" in result.error


# --- Gate ---


def _gate(tmp: str, validate: str, restart: str, ignore=(), auto_restart=True):
    root = Path(tmp)
    remote = Remote(root / "remote")
    old = remote.commit({"configuration.yaml": "v: 1\n", "ui-lovelace.yaml": "a\n"})
    staging = StagingRepository(root / "staging", RepositorySpec(url=remote.url))
    staging.clone()
    live = root / "live"
    live.mkdir()
    gate = ValidationGate(
        staging,
        validator=ExternalCommand(validate, live),
        restarter=ExternalCommand(restart, live),
        ignore=RestartIgnoreList(ignore, live),
        auto_restart=auto_restart,
    )
    return gate, remote, staging, old, live


def test_passing_validation_triggers_restart():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, old, live = _gate(tmp, "true", "touch restarted")
        new = remote.commit({"configuration.yaml": "v: 2\n"})
        staging.fetch()
        staging.update()

        result = gate.evaluate(old, new, revert=lambda: None)
        assert result.outcome == SyncOutcome.DEPLOYED
        assert result.restarted
        assert (live / "restarted").exists()


def test_restart_skipped_when_only_ignored_files_change():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, old, live = _gate(
            tmp, "true", "touch restarted", ignore=["ui-lovelace.yaml"]
        )
        new = remote.commit({"ui-lovelace.yaml": "b\n"})
        staging.fetch()
        staging.update()

        result = gate.evaluate(old, new, revert=lambda: None)
        assert result.outcome == SyncOutcome.DEPLOYED
        assert not result.restarted
        assert not (live / "restarted").exists()


def test_failed_validation_reverts_and_rechecks_once():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, old, live = _gate(
            tmp, "echo run >> checks; exit 1", "touch restarted"
        )
        new = remote.commit({"configuration.yaml": "broken\n"})
        staging.fetch()
        staging.update()
        reverted = []

        result = gate.evaluate(old, new, revert=lambda: reverted.append(True))
        assert result.outcome == SyncOutcome.ROLLED_BACK
        assert reverted == [True]
        assert (live / "checks").read_text().splitlines() == ["run", "run"]
        assert not (live / "restarted").exists()


def test_initial_deploy_never_restarts():
    with tempfile.TemporaryDirectory() as tmp:
        gate, _, _, old, live = _gate(tmp, "true", "touch restarted")
        result = gate.evaluate(None, old, revert=lambda: None)
        assert result.outcome == SyncOutcome.DEPLOYED
        assert not result.restarted


def test_no_change_is_skipped():
    with tempfile.TemporaryDirectory() as tmp:
        gate, _, _, old, live = _gate(tmp, "touch validated", "true")
        assert gate.evaluate(old, old, revert=lambda: None).outcome == SyncOutcome.SKIPPED
        assert not (live / "validated").exists()


def test_empty_validator_is_skipped():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, old, _ = _gate(tmp, "", "true", auto_restart=False)
        new = remote.commit({"configuration.yaml": "v: 2\n"})
        result = gate.evaluate(old, new, revert=lambda: None)
        assert result.outcome == SyncOutcome.DEPLOYED


def test_empty_commit_needs_no_restart():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, old, live = _gate(tmp, "true", "touch restarted")
        new = remote.commit({}, message="empty")
        staging.fetch()
        staging.update()

        result = gate.evaluate(old, new, revert=lambda: None)
        assert result.outcome == SyncOutcome.DEPLOYED
        assert not result.restarted
        assert not (live / "restarted").exists()


def test_unknown_old_commit_still_restarts():
    with tempfile.TemporaryDirectory() as tmp:
        gate, remote, staging, _, live = _gate(
            tmp, "true", "touch restarted", ignore=["ui-lovelace.yaml"]
        )
        new = remote.commit({"ui-lovelace.yaml": "b\n"})
        staging.fetch()
        staging.update()

        result = gate.evaluate("0" * 40, new, revert=lambda: None)
        assert result.restarted
        assert (live / "restarted").exists()
