"""Tests for options loading and derived paths."""

import json
import tempfile
from pathlib import Path

import pytest

from confsync.config import (
    BACKUP_DIR_NAME,
    STAGING_DIR_NAME,
    config_from_dict,
    load_config,
)
from confsync.errors import ConfigError
from confsync.models import UpdateStrategy


def test_minimal_options_use_defaults():
    config = config_from_dict({"repository": "https://example.com/conf.git"})
    assert config.repository.remote == "origin"
    assert config.repository.branch == "main"
    assert config.repository.strategy == UpdateStrategy.FAST_FORWARD
    assert config.target_dir == Path("/config")
    assert config.max_backups == 3
    assert config.staging_path == Path("/config") / STAGING_DIR_NAME
    assert config.backup_path == Path("/config") / BACKUP_DIR_NAME
    assert not config.deploy_delete
    assert not config.repeat.active


def test_missing_repository_is_rejected():
    with pytest.raises(ConfigError, match="repository"):
        config_from_dict({"git_branch": "main"})


def test_git_command_aliases():
    assert config_from_dict({"repository": "x", "git_command": "reset"}).repository.strategy == (
        UpdateStrategy.HARD_RESET
    )
    assert config_from_dict(
        {"repository": "x", "git_command": "fast-forward"}
    ).repository.strategy == UpdateStrategy.FAST_FORWARD
    with pytest.raises(ConfigError, match="git_command"):
        config_from_dict({"repository": "x", "git_command": "rebase"})


def test_bool_and_int_validation():
    with pytest.raises(ConfigError, match="deploy_delete"):
        config_from_dict({"repository": "x", "deploy_delete": "maybe"})
    with pytest.raises(ConfigError, match="repeat.interval"):
        config_from_dict({"repository": "x", "repeat": {"active": True, "interval": 0}})
    config = config_from_dict({"repository": "x", "deploy_delete": "true"})
    assert config.deploy_delete


def test_list_options_accept_strings():
    config = config_from_dict(
        {
            "repository": "x",
            "mirror_protect_user_dirs": "www media",
            "restart_ignore": ["ui-lovelace.yaml", " ", "www/"],
        }
    )
    assert config.protect_user_dirs == ("www", "media")
    assert config.restart_ignore == ("ui-lovelace.yaml", "www/")


def test_load_json_options_file():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "options.json"
        path.write_text(
            json.dumps(
                {
                    "repository": "git@example.com:me/conf.git",
                    "git_branch": "prod",
                    "git_command": "reset",
                    "repeat": {"active": True, "interval": 60},
                    "deployment_key_file": "/data/id_ed25519",
                }
            )
        )
        config = load_config(path)
        assert config.repository.branch == "prod"
        assert config.repeat.interval == 60
        assert config.credentials.key_file == Path("/data/id_ed25519")


def test_load_rejects_bad_files():
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(ConfigError, match="not found"):
            load_config(Path(tmp) / "missing.yaml")
        bad = Path(tmp) / "bad.yaml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(bad)


def test_bookkeeping_patterns_include_custom_paths_inside_target():
    with tempfile.TemporaryDirectory() as tmp:
        target = Path(tmp) / "config"
        target.mkdir()
        config = config_from_dict(
            {
                "repository": "x",
                "target_dir": str(target),
                "backup_dir": str(target / "snapshots"),
                "log_file": str(Path(tmp) / "outside.log"),
            }
        )
        patterns = config.bookkeeping_patterns()
        assert f"{STAGING_DIR_NAME}/" in patterns
        assert "snapshots/" in patterns
        assert not any("outside" in p for p in patterns)


def test_lock_path_is_stable_per_target():
    a = config_from_dict({"repository": "x", "target_dir": "/srv/a"})
    b = config_from_dict({"repository": "x", "target_dir": "/srv/b"})
    assert a.lock_path == config_from_dict({"repository": "y", "target_dir": "/srv/a"}).lock_path
    assert a.lock_path != b.lock_path
