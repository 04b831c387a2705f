"""
External process execution.

Commands are described by a ``ProcessResult`` instead of relying on shell
redirection, so callers decide what to do with the captured output.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence

from decant.errors import DecantError

logger = logging.getLogger(__name__)

# Lines of tool output attached to a raised error
DIAGNOSTIC_TAIL_LINES = 40


class OutputPolicy(str, Enum):
    """What to do with a child process' stdout/stderr."""
    STREAM = "stream"        # Inherit the parent's streams
    CAPTURE = "capture"      # Capture and keep on the result
    SUPPRESS = "suppress"    # Capture, only surfaced if the caller asks


@dataclass
class ProcessResult:
    """Outcome of a finished command."""
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    policy: OutputPolicy = OutputPolicy.CAPTURE

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined diagnostic text, last lines only."""
        text = "\n".join(part for part in (self.stdout, self.stderr) if part)
        lines = text.strip().splitlines()
        return "\n".join(lines[-DIAGNOSTIC_TAIL_LINES:])

    def check(self, error_cls: type[DecantError], message: str) -> ProcessResult:
        """Raise ``error_cls`` with the tool output attached if the command failed."""
        if self.ok:
            return self
        detail = self.output
        full = f"{message} (exit code {self.returncode})"
        if detail:
            full = f"{full}:\n{detail}"
        raise error_cls(full, output=detail)


class ProcessRunner:
    """
    Run blocking commands without timeouts.

    Subclass and override ``run`` to fake tools in tests.
    """

    def __init__(self, env: Mapping[str, str] | None = None):
        self.env = dict(env) if env else {}

    def run(
        self,
        cmd: Sequence[str | Path],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        policy: OutputPolicy = OutputPolicy.CAPTURE,
    ) -> ProcessResult:
        args = [str(c) for c in cmd]
        full_env = os.environ.copy()
        full_env.update(self.env)
        if env:
            full_env.update(env)

        logger.debug("run: %s (cwd=%s)", " ".join(args), cwd or ".")

        capture = policy != OutputPolicy.STREAM
        try:
            proc = subprocess.run(
                args,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                capture_output=capture,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            return ProcessResult(args=args, returncode=127, stderr=str(e), policy=policy)

        return ProcessResult(
            args=args,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            policy=policy,
        )
