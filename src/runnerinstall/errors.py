"""
Exception hierarchy for installation failures.

Operations signal how a failure should be treated by the exception class
they raise: ``TransientError`` is retried by the RetryExecutor,
``FatalError`` short-circuits without consuming retry budget. Exceptions
never cross the orchestrator boundary; they are turned into ErrorRecords.
"""

from __future__ import annotations

from typing import Optional, Sequence

from runnerinstall.contracts.errors import ErrorCode

__all__ = [
    "InstallerError",
    "TransientError",
    "FatalError",
    "CommandError",
    "InstallationCancelled",
    "mask_secrets",
]


class InstallerError(Exception):
    """Base class for installer failures carrying an error code."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class TransientError(InstallerError):
    """A recoverable failure (momentary lock, network blip, timeout)."""

    default_code = ErrorCode.PACKAGE_INSTALL_FAILED


class FatalError(InstallerError):
    """A failure that retrying cannot fix (bad credentials, unsupported OS)."""


class InstallationCancelled(FatalError):
    """Raised when the cancellation token is observed at a boundary."""

    default_code = ErrorCode.INSTALLATION_CANCELLED

    def __init__(self, message: str = "Installation cancelled"):
        super().__init__(message, ErrorCode.INSTALLATION_CANCELLED)


_SECRET_FLAGS = ("--token", "--pat")


def mask_secrets(argv: Sequence[str]) -> list:
    """Return a copy of argv with the value after secret flags masked."""
    masked = []
    hide_next = False
    for arg in argv:
        if hide_next:
            masked.append("***")
            hide_next = False
            continue
        if arg in _SECRET_FLAGS:
            hide_next = True
        elif any(arg.startswith(f"{flag}=") for flag in _SECRET_FLAGS):
            arg = arg.split("=", 1)[0] + "=***"
        masked.append(arg)
    return masked


class CommandError(TransientError):
    """Rich error for subprocess failures with context."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        context: str = "",
        code: Optional[ErrorCode] = None,
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.context = context
        super().__init__(self._format_message(), code)

    def _format_message(self) -> str:
        parts = []
        if self.context:
            parts.append(self.context)
        parts.append(f"Command: {' '.join(mask_secrets(self.argv))}")
        parts.append(f"Exit code: {self.returncode}")
        if self.stderr:
            parts.append(f"Error: {self.stderr.strip()[-2000:]}")
        return "\n".join(parts)
