"""Point git at an identity that has already been provisioned.

Two shapes are supported: a username/password pair for HTTP(S) remotes,
kept in a private credential store inside the staging ``.git`` directory,
and a private key file for SSH remotes, wired through ``GIT_SSH_COMMAND``.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from urllib.parse import quote, urlsplit

from git import Repo

from confsync.config import Credentials

logger = logging.getLogger(__name__)

CREDENTIAL_STORE_NAME = "confsync-credentials"


def git_environment(credentials: Credentials) -> dict[str, str]:
    """Environment for every git invocation against the staging repository."""
    env = {"GIT_TERMINAL_PROMPT": "0"}
    if credentials.key_file:
        parts = ["ssh", "-i", shlex.quote(str(credentials.key_file)), "-o", "IdentitiesOnly=yes"]
        if not credentials.strict_host_key_checking:
            parts += [
                "-o", "StrictHostKeyChecking=no",
                "-o", "UserKnownHostsFile=/dev/null",
                "-o", "LogLevel=ERROR",
            ]
        env["GIT_SSH_COMMAND"] = " ".join(parts)
    return env


def install_credential_store(repo: Repo, url: str, credentials: Credentials) -> Path | None:
    """Store username/password for the remote host and enable the store helper.

    Returns the store path, or ``None`` when no password auth applies.
    """
    if not credentials.has_password:
        return None

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        logger.warning(
            "deployment_user is set but %s is not an HTTP(S) URL; ignoring password auth",
            url,
        )
        return None

    host = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
    store = Path(repo.git_dir) / CREDENTIAL_STORE_NAME
    entry = (
        f"{parts.scheme}://{quote(credentials.username, safe='')}:"
        f"{quote(credentials.password, safe='')}@{host}\n"
    )

    logger.info("Setting up credential helper for user: %s", credentials.username)
    fd = os.open(store, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(entry)
    with repo.config_writer() as writer:
        writer.set_value("credential", "helper", f"store --file={store}")
    return store
