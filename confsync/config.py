"""Configuration — load the options file into an immutable ``SyncConfig``.

The options file is YAML; a JSON options file (as written by a supervisor)
is accepted too, since JSON parses as YAML. Option names follow the
add-on options schema (``git_branch``, ``git_command``, ``deploy_delete``
and so on) so existing option files keep working.
"""

from __future__ import annotations

import hashlib
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from confsync.errors import ConfigError
from confsync.models import UpdateStrategy

DEFAULT_CONFIG_PATH = "/data/options.json"
DEFAULT_TARGET_DIR = "/config"
DEFAULT_MAX_BACKUPS = 3
DEFAULT_INTERVAL_SECONDS = 300

STAGING_DIR_NAME = ".git_sync_repo"
BACKUP_DIR_NAME = ".git_pull_backups"
LOG_FILE_NAME = ".git_pull.log"

_STRATEGY_ALIASES = {
    "pull": UpdateStrategy.FAST_FORWARD,
    "fast-forward": UpdateStrategy.FAST_FORWARD,
    "reset": UpdateStrategy.HARD_RESET,
    "hard-reset": UpdateStrategy.HARD_RESET,
}


@dataclass(frozen=True)
class RepositorySpec:
    """Which upstream to mirror, and how to move to its tip."""

    url: str
    remote: str = "origin"
    branch: str = "main"
    strategy: UpdateStrategy = UpdateStrategy.FAST_FORWARD
    prune: bool = False


@dataclass(frozen=True)
class Credentials:
    """Identity used for outbound git traffic.

    Provisioning the key material itself is someone else's job; this only
    points git at what is already there.
    """

    username: str = ""
    password: str = ""
    key_file: Path | None = None
    strict_host_key_checking: bool = False

    @property
    def has_password(self) -> bool:
        return bool(self.username)


@dataclass(frozen=True)
class RepeatSettings:
    active: bool = False
    interval: int = DEFAULT_INTERVAL_SECONDS


@dataclass(frozen=True)
class SyncConfig:
    """Everything one pipeline run needs, passed explicitly to every component."""

    repository: RepositorySpec
    target_dir: Path = Path(DEFAULT_TARGET_DIR)
    staging_dir: Path | None = None
    backup_dir: Path | None = None
    log_file: Path | None = None
    lock_file: Path | None = None
    max_backups: int = DEFAULT_MAX_BACKUPS
    deploy_delete: bool = False
    deploy_dry_run: bool = False
    allow_legacy_config_git_dir: bool = False
    protect_user_dirs: tuple[str, ...] = ()
    auto_restart: bool = False
    restart_ignore: tuple[str, ...] = ()
    validate_command: str = "ha core check"
    restart_command: str = "ha core restart"
    command_timeout: int | None = None
    credentials: Credentials = field(default_factory=Credentials)
    repeat: RepeatSettings = field(default_factory=RepeatSettings)

    @property
    def staging_path(self) -> Path:
        return self.staging_dir or self.target_dir / STAGING_DIR_NAME

    @property
    def backup_path(self) -> Path:
        return self.backup_dir or self.target_dir / BACKUP_DIR_NAME

    @property
    def log_path(self) -> Path:
        return self.log_file or self.target_dir / LOG_FILE_NAME

    @property
    def lock_path(self) -> Path:
        """Lock file scoped to the target directory, outside of it by default."""
        if self.lock_file:
            return self.lock_file
        digest = hashlib.sha1(str(self.target_dir.resolve()).encode()).hexdigest()[:12]
        return Path(tempfile.gettempdir()) / f"confsync-{digest}.lock"

    def bookkeeping_patterns(self) -> list[str]:
        """Relative patterns for the pipeline's own paths inside the target."""
        patterns = [
            f"{STAGING_DIR_NAME}/",
            f"{BACKUP_DIR_NAME}/",
            LOG_FILE_NAME,
            f"{LOG_FILE_NAME}.*",
        ]
        for path, is_dir in (
            (self.staging_path, True),
            (self.backup_path, True),
            (self.log_path, False),
            (self.lock_path, False),
        ):
            rel = _relative_to(path, self.target_dir)
            if rel is None:
                continue
            entry = f"{rel}/" if is_dir else rel
            if entry not in patterns:
                patterns.append(entry)
            if not is_dir and f"{rel}.*" not in patterns:
                patterns.append(f"{rel}.*")
        return patterns

    def with_overrides(self, **changes: Any) -> SyncConfig:
        return replace(self, **changes)


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate an options file."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Options file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Options file {path} is not valid YAML/JSON: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Options file {path} must contain a mapping")
    return config_from_dict(data)


def config_from_dict(data: dict[str, Any]) -> SyncConfig:
    """Build a ``SyncConfig`` from already-parsed options."""
    url = str(data.get("repository") or "").strip()
    if not url:
        raise ConfigError("Missing required option: repository")

    command = str(data.get("git_command", "pull")).strip().lower()
    if command not in _STRATEGY_ALIASES:
        raise ConfigError(
            f"git_command '{command}' is not valid. Must be 'pull' or 'reset'"
        )

    repository = RepositorySpec(
        url=url,
        remote=_require_str(data, "git_remote", "origin"),
        branch=_require_str(data, "git_branch", "main"),
        strategy=_STRATEGY_ALIASES[command],
        prune=_bool(data, "git_prune", False),
    )

    key_file = data.get("deployment_key_file")
    credentials = Credentials(
        username=str(data.get("deployment_user") or ""),
        password=str(data.get("deployment_password") or ""),
        key_file=Path(key_file).expanduser() if key_file else None,
        strict_host_key_checking=_bool(data, "strict_host_key_checking", False),
    )

    repeat_data = data.get("repeat") or {}
    if not isinstance(repeat_data, dict):
        raise ConfigError("repeat must be a mapping with 'active' and 'interval'")
    repeat = RepeatSettings(
        active=_bool(repeat_data, "active", False),
        interval=_positive_int(repeat_data, "interval", DEFAULT_INTERVAL_SECONDS, "repeat.interval"),
    )

    timeout = data.get("command_timeout")
    if timeout is not None:
        timeout = _positive_int(data, "command_timeout", 0)

    return SyncConfig(
        repository=repository,
        target_dir=Path(data.get("target_dir") or DEFAULT_TARGET_DIR),
        staging_dir=_optional_path(data, "staging_dir"),
        backup_dir=_optional_path(data, "backup_dir"),
        log_file=_optional_path(data, "log_file"),
        lock_file=_optional_path(data, "lock_file"),
        max_backups=_positive_int(data, "max_backups", DEFAULT_MAX_BACKUPS),
        deploy_delete=_bool(data, "deploy_delete", False),
        deploy_dry_run=_bool(data, "deploy_dry_run", False),
        allow_legacy_config_git_dir=_bool(data, "allow_legacy_config_git_dir", False),
        protect_user_dirs=_str_tuple(data, "mirror_protect_user_dirs"),
        auto_restart=_bool(data, "auto_restart", False),
        restart_ignore=_str_tuple(data, "restart_ignore"),
        validate_command=str(data.get("validate_command", "ha core check") or ""),
        restart_command=str(data.get("restart_command", "ha core restart") or ""),
        command_timeout=timeout,
        credentials=credentials,
        repeat=repeat,
    )


def _require_str(data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key)
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip()


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigError(f"{key} must be true or false (got {value!r})")


def _positive_int(data: dict[str, Any], key: str, default: int, name: str = "") -> int:
    value = data.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name or key} must be an integer (got {value!r})")
    if number <= 0:
        raise ConfigError(f"{name or key} must be > 0 (got {number})")
    return number


def _str_tuple(data: dict[str, Any], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings (got {value!r})")
    return tuple(str(v).strip() for v in value if str(v).strip())


def _optional_path(data: dict[str, Any], key: str) -> Path | None:
    value = data.get(key)
    return Path(value) if value else None


def _relative_to(path: Path, root: Path) -> str | None:
    try:
        return path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return None
