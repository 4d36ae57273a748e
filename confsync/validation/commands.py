"""Run the external validator and restart commands."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 5000


@dataclass
class CommandResult:
    """Result of running one external command."""

    command: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and self.exit_code == 0

    @property
    def output_lines(self) -> list[str]:
        text = "\n".join(part for part in (self.stdout, self.stderr) if part)
        return [line for line in text.splitlines() if line.strip()]


class ExternalCommand:
    """A shell command run from the live directory, capturing its output."""

    def __init__(self, command: str, cwd: str | Path, timeout: int | None = None):
        self.command = command
        self.cwd = Path(cwd)
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.command.strip())

    def run(self) -> CommandResult:
        logger.debug("Running '%s' in %s", self.command, self.cwd)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                self.command,
                shell=True,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=self.command,
                error=f"timed out after {self.timeout}s",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except OSError as e:
            return CommandResult(
                command=self.command,
                error=str(e),
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        return CommandResult(
            command=self.command,
            exit_code=proc.returncode,
            stdout=proc.stdout[:_OUTPUT_LIMIT],
            stderr=proc.stderr[:_OUTPUT_LIMIT],
            duration_ms=int((time.monotonic() - start) * 1000),
        )
