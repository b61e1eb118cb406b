"""
System readiness validation.

Waits for a freshly provisioned machine to become installable: boot-time
initialization (cloud-init) finished, enough free disk and memory, and the
install sources reachable. This is cooperative polling: all four checks
run on every tick, and the machine is ready only when they all pass in
the same poll. A check that errors counts as not ready for that tick.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

import psutil

from runnerinstall.command import CommandRunner
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.metrics import EventName, Stage
from runnerinstall.contracts.timeouts import (
    DEFAULT_NETWORK_ENDPOINTS,
    MIN_DISK_FREE_MB,
    MIN_MEMORY_FREE_MB,
    NETWORK_CHECK_TIMEOUT_S,
    READINESS_POLL_INTERVAL_S,
)
from runnerinstall.errors import FatalError, InstallerError
from runnerinstall.logger import InstallEventLogger
from runnerinstall.models import SystemState
from runnerinstall.runtime import CancellationToken, Clock, SystemClock, elapsed_ms

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024

BOOT_FINISHED_MARKER = "/var/lib/cloud/instance/boot-finished"


class ReadinessOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReadinessResult:
    outcome: ReadinessOutcome
    state: Optional[SystemState]
    polls: int
    waited_ms: int
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def ready(self) -> bool:
        return self.outcome == ReadinessOutcome.READY


class HostChecks(Protocol):
    """The four readiness probes of a target machine."""

    def init_complete(self) -> bool:
        ...

    def disk_free_mb(self) -> int:
        ...

    def mem_free_mb(self) -> int:
        ...

    def network_reachable(self) -> bool:
        ...


def parse_endpoint(endpoint: str, default_port: int = 443) -> Tuple[str, int]:
    """Split ``host:port`` (port optional)."""
    host, sep, port = endpoint.rpartition(":")
    if not sep:
        return endpoint, default_port
    return host, int(port)


class LocalHostChecks:
    """Readiness checks against the machine this process runs on."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        disk_path: str = "/",
        endpoints: Sequence[str] = DEFAULT_NETWORK_ENDPOINTS,
        network_timeout: float = NETWORK_CHECK_TIMEOUT_S,
        boot_marker: str = BOOT_FINISHED_MARKER,
    ):
        self._runner = runner or CommandRunner()
        self.disk_path = disk_path
        self.endpoints = tuple(endpoints)
        self.network_timeout = network_timeout
        self.boot_marker = boot_marker

    def init_complete(self) -> bool:
        """
        Check whether cloud-init has finished.

        ``status: error`` counts as finished (the boot is over, just
        unhappily). Without a conclusive status, a running cloud-init
        process means not finished and the boot-finished marker means
        finished. Machines without cloud-init are always finished.
        """
        if shutil.which("cloud-init") is None:
            logger.debug("cloud-init not installed, assuming complete")
            return True

        result = self._runner.run(["cloud-init", "status"], check=False)
        output = f"{result.stdout}\n{result.stderr}"
        if "status: done" in output:
            return True
        if "status: running" in output:
            return False
        if "status: error" in output:
            logger.warning("cloud-init completed with errors")
            return True

        logger.debug(f"cloud-init status unclear ({output.strip()!r}), checking alternatives")
        for proc in psutil.process_iter(["name", "cmdline"]):
            try:
                cmdline = " ".join(proc.info.get("cmdline") or [])
                if proc.info.get("name") == "cloud-init" or "/usr/bin/cloud-init" in cmdline:
                    return False
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if os.path.exists(self.boot_marker):
            return True
        logger.debug("Cannot determine cloud-init status, assuming complete")
        return True

    def disk_free_mb(self) -> int:
        return int(psutil.disk_usage(self.disk_path).free // _MIB)

    def mem_free_mb(self) -> int:
        return int(psutil.virtual_memory().available // _MIB)

    def network_reachable(self) -> bool:
        """True if any endpoint accepts a TCP connection."""
        for endpoint in self.endpoints:
            host, port = parse_endpoint(endpoint)
            try:
                with socket.create_connection((host, port), timeout=self.network_timeout):
                    logger.debug(f"Connectivity confirmed via {endpoint}")
                    return True
            except OSError as e:
                logger.debug(f"Endpoint {endpoint} not reachable: {e}")
        return False


class ReadinessValidator:
    """
    Determines whether the machine is ready for installation work.

    Args:
        checks: Host checks implementation
        min_disk_mb: Free disk floor on the install filesystem
        min_memory_mb: Available memory floor
        poll_interval: Seconds between polls
        clock: Time source (fake in tests)
        events: Structured event logger
        cancel_token: Observed before every poll
    """

    def __init__(
        self,
        checks: HostChecks,
        min_disk_mb: int = MIN_DISK_FREE_MB,
        min_memory_mb: int = MIN_MEMORY_FREE_MB,
        poll_interval: float = READINESS_POLL_INTERVAL_S,
        clock: Optional[Clock] = None,
        events: Optional[InstallEventLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.checks = checks
        self.min_disk_mb = min_disk_mb
        self.min_memory_mb = min_memory_mb
        self.poll_interval = poll_interval
        self._events = events or InstallEventLogger()
        self._cancel = cancel_token or CancellationToken()
        self._clock = clock or SystemClock(self._cancel)

    def _run_check(self, name: str, check: Callable[[], object], errors: Dict[str, str]):
        try:
            return check()
        except FatalError:
            raise
        except Exception as e:
            logger.warning(f"Readiness check '{name}' failed: {e}")
            errors[name] = str(e) or type(e).__name__
            return None

    def poll(self) -> SystemState:
        """Run all four checks once."""
        errors: Dict[str, str] = {}
        init_complete = self._run_check("init", self.checks.init_complete, errors)
        disk_free = self._run_check("disk", self.checks.disk_free_mb, errors)
        mem_free = self._run_check("memory", self.checks.mem_free_mb, errors)
        reachable = self._run_check("network", self.checks.network_reachable, errors)

        return SystemState(
            init_complete=bool(init_complete),
            disk_free_mb=disk_free,
            mem_free_mb=mem_free,
            network_reachable=bool(reachable),
            disk_ok=disk_free is not None and disk_free >= self.min_disk_mb,
            memory_ok=mem_free is not None and mem_free >= self.min_memory_mb,
            checked_at=self._clock.now(),
            check_errors=errors,
        )

    def wait_until_ready(self, timeout: float) -> ReadinessResult:
        """
        Poll until ready or the timeout ceiling is reached.

        The last poll happens at the deadline, so TIMED_OUT is returned at
        the ceiling and never more than one poll interval after it.
        """
        started = self._clock.monotonic()
        deadline = started + timeout
        polls = 0
        state: Optional[SystemState] = None
        logger.info(f"Checking system readiness (timeout: {timeout:.0f}s)")

        while True:
            if self._cancel.cancelled:
                return ReadinessResult(ReadinessOutcome.CANCELLED, state, polls, elapsed_ms(self._clock, started))

            try:
                state = self.poll()
            except InstallerError as e:
                logger.error(f"Readiness validation cannot proceed: {e}")
                return ReadinessResult(
                    ReadinessOutcome.ERROR, state, polls, elapsed_ms(self._clock, started),
                    error=str(e), error_code=e.code,
                )
            polls += 1

            failed = state.failed_checks()
            self._events.emit(
                EventName.READINESS_POLL.value,
                stage=Stage.VALIDATING_READINESS.value,
                message="system ready" if state.ready else f"system not ready: {', '.join(failed)}",
                duration_ms=elapsed_ms(self._clock, started),
                level="info" if state.ready else "debug",
                poll=polls,
                init_complete=state.init_complete,
                disk_free_mb=state.disk_free_mb,
                mem_free_mb=state.mem_free_mb,
                network_reachable=state.network_reachable,
                check_errors=state.check_errors or None,
            )

            if state.ready:
                logger.info(f"System ready after {polls} poll(s)")
                return ReadinessResult(ReadinessOutcome.READY, state, polls, elapsed_ms(self._clock, started))

            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                logger.error(
                    f"Timeout waiting for system readiness after {timeout:.0f} seconds "
                    f"(failing: {', '.join(failed)})"
                )
                return ReadinessResult(ReadinessOutcome.TIMED_OUT, state, polls, elapsed_ms(self._clock, started))

            logger.debug(f"System not ready ({', '.join(failed)}), next poll in {min(self.poll_interval, remaining):.0f}s")
            self._clock.sleep(min(self.poll_interval, remaining))
