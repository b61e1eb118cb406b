"""Subprocess execution with consistent logging and error handling."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.timeouts import SUBPROCESS_DEFAULT_TIMEOUT_S
from runnerinstall.errors import CommandError, FatalError, TransientError, mask_secrets

logger = logging.getLogger(__name__)

# Environment for non-interactive package operations
NONINTERACTIVE_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "NEEDRESTART_MODE": "a",
}


@dataclass(frozen=True)
class CmdResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs commands on the local machine.

    - Always logs the command (with secrets masked).
    - Captures stdout/stderr so failures carry their output.
    - Raises CommandError on non-zero exit when ``check`` is set.
    """

    def __init__(self, dry_run: bool = False, sudo: bool = False):
        self.dry_run = dry_run
        # sudo only when asked for and not already root
        is_root = hasattr(os, "geteuid") and os.geteuid() == 0
        self.sudo = sudo and not is_root

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        timeout: float = SUBPROCESS_DEFAULT_TIMEOUT_S,
        privileged: bool = False,
        context: str = "",
    ) -> CmdResult:
        cmd = list(argv)
        if privileged and self.sudo:
            cmd = ["sudo", "-E"] + cmd

        logger.info(f"CMD {' '.join(mask_secrets(cmd))}")
        if self.dry_run:
            return CmdResult(argv=cmd, returncode=0, stdout="", stderr="")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise TransientError(
                f"Command timed out after {timeout:.0f} seconds: {' '.join(mask_secrets(cmd))}"
                + (f"\nContext: {context}" if context else "")
            )
        except FileNotFoundError:
            raise FatalError(
                f"Command not found: {cmd[0]}" + (f" ({context})" if context else ""),
                ErrorCode.DEPENDENCY_MISSING,
            )

        if result.stdout:
            logger.debug(f"STDOUT {result.stdout.strip()[-4000:]}")
        if result.stderr:
            logger.debug(f"STDERR {result.stderr.strip()[-4000:]}")

        if check and result.returncode != 0:
            raise CommandError(
                argv=cmd,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                context=context,
            )

        return CmdResult(argv=cmd, returncode=result.returncode, stdout=result.stdout, stderr=result.stderr)
