"""
Pytest configuration and fixtures for runnerinstall tests.

Waiting components are driven by a FakeClock that advances on sleep, so
timeouts of several minutes run instantly. Host checks, probes and steps
are scripted: each call consumes the next entry of a list and the last
entry repeats.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence

import pytest

from runnerinstall.config import reset_config
from runnerinstall.contention import PackageContentionMonitor
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.diagnostics import DiagnosticsCollector
from runnerinstall.logger import InstallEventLogger, MemoryEventSink
from runnerinstall.models import LockHolder, PackageManagerStatus, RetryPolicy
from runnerinstall.orchestrator import InstallationOrchestrator
from runnerinstall.readiness import ReadinessValidator
from runnerinstall.retry import RetryExecutor
from runnerinstall.runtime import CancellationToken
from runnerinstall.steps import InstallStep


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path) -> Generator[None, None, None]:
    """Strip RUNNERINSTALL_* variables and run from an empty directory (no .env)."""
    for key in list(os.environ):
        if key.startswith("RUNNERINSTALL_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("GITHUB_PAT", raising=False)
    monkeypatch.delenv("RUNNER_REGISTRATION_TOKEN", raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


# ============================================================================
# Time
# ============================================================================


class FakeClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self.t

    def now(self) -> datetime:
        return self.base + timedelta(seconds=self.t)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Scripted collaborators
# ============================================================================


def _next(script: List[Any], index: int) -> Any:
    return script[min(index, len(script) - 1)]


class ScriptedHostChecks:
    """
    HostChecks returning scripted values per poll.

    Each entry is a dict with any of init/disk/memory/network; missing
    keys default to passing values. An Exception value is raised.
    """

    DEFAULTS = {"init": True, "disk": 10_000, "memory": 4_000, "network": True}

    def __init__(self, script: Sequence[Dict[str, Any]] = ({},)):
        self.script = list(script)
        self.polls = 0

    def _value(self, name: str) -> Any:
        entry = _next(self.script, self.polls)
        value = entry.get(name, self.DEFAULTS[name])
        if isinstance(value, BaseException):
            raise value
        return value

    def init_complete(self) -> bool:
        return self._value("init")

    def disk_free_mb(self) -> int:
        return self._value("disk")

    def mem_free_mb(self) -> int:
        return self._value("memory")

    def network_reachable(self) -> bool:
        # network is the last check of a poll
        try:
            return self._value("network")
        finally:
            self.polls += 1


class ScriptedProbe:
    """ProcessProbe returning scripted statuses; Exception entries are raised."""

    family = "scripted"
    maintenance_services = ()
    log_files = ()

    def __init__(self, script: Sequence[Any] = ()):
        self.script = list(script) or [clear_status()]
        self.calls = 0

    def status(self) -> PackageManagerStatus:
        entry = _next(self.script, self.calls)
        self.calls += 1
        if isinstance(entry, BaseException):
            raise entry
        return entry


def holder(pid: int = 4242, command: str = "apt-get", resource: str = "/var/lib/dpkg/lock-frontend") -> LockHolder:
    return LockHolder(pid=pid, command=command, resource=resource)


def busy_status(*holders: LockHolder) -> PackageManagerStatus:
    return PackageManagerStatus(busy=True, lock_holders=tuple(holders or (holder(),)))


def clear_status() -> PackageManagerStatus:
    return PackageManagerStatus(busy=False, lock_holders=())


class ScriptedStep(InstallStep):
    """Install step whose calls follow a script of exceptions and return values."""

    def __init__(
        self,
        step_id: str,
        script: Sequence[Any] = (None,),
        failure_code: ErrorCode = ErrorCode.PACKAGE_INSTALL_FAILED,
        uses_package_manager: bool = False,
        stage: str = "installing",
    ):
        self.step_id = step_id
        self.script = list(script)
        self.failure_code = failure_code
        self.uses_package_manager = uses_package_manager
        self.stage = stage
        self.calls = 0

    def run(self) -> Any:
        entry = _next(self.script, self.calls)
        self.calls += 1
        if isinstance(entry, BaseException):
            raise entry
        return entry


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def event_sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def events(event_sink) -> InstallEventLogger:
    return InstallEventLogger(event_sink, run_id="test-run", host="test-host")


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def quiet_diagnostics(clock) -> DiagnosticsCollector:
    """Collector with in-memory sections only (no psutil, no network)."""
    return DiagnosticsCollector(
        collectors={
            "system": lambda ctx: {"hostname": "test-host"},
            "context": lambda ctx: ctx.to_dict() if ctx else {},
        },
        clock=clock,
    )


@pytest.fixture
def make_orchestrator(clock, events, cancel_token, quiet_diagnostics):
    """Factory for orchestrators wired with fakes."""

    def factory(
        host_script: Sequence[Dict[str, Any]] = ({},),
        probe_script: Sequence[Any] = (),
        install_steps: Sequence[InstallStep] = (),
        verification_steps: Sequence[InstallStep] = (),
        policy: Optional[RetryPolicy] = None,
        metrics=None,
        diagnostics: Optional[DiagnosticsCollector] = None,
        **kwargs,
    ) -> InstallationOrchestrator:
        checks = ScriptedHostChecks(host_script)
        probe = ScriptedProbe(probe_script)
        orchestrator = InstallationOrchestrator(
            readiness=ReadinessValidator(
                checks, poll_interval=10, clock=clock, events=events, cancel_token=cancel_token
            ),
            contention=PackageContentionMonitor(probe, clock=clock, events=events, cancel_token=cancel_token),
            executor=RetryExecutor(clock=clock, events=events, cancel_token=cancel_token),
            install_steps=install_steps,
            verification_steps=verification_steps,
            diagnostics=diagnostics or quiet_diagnostics,
            policy=policy or RetryPolicy(base_delay=30, max_delay=300, max_attempts=3),
            events=events,
            metrics=metrics,
            clock=clock,
            cancel_token=cancel_token,
            target_host="test-host",
            run_id="test-run",
            **kwargs,
        )
        orchestrator.host_checks = checks
        orchestrator.probe = probe
        return orchestrator

    return factory
