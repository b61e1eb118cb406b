"""
Installation state machine.

Drives one installation run on one machine:

    START -> VALIDATING_READINESS -> AWAITING_PACKAGE_MANAGER
          -> INSTALLING -> VERIFYING -> SUCCEEDED

Any non-terminal state can move to FAILED. A failed run always carries
exactly one ErrorRecord with a diagnostics snapshot attached, and runs
are not resumable: a new attempt is a new orchestrator.

Exceptions never escape ``run``; every outcome is an InstallationResult.
"""

from __future__ import annotations

import logging
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from runnerinstall.command import CommandRunner
from runnerinstall.contention import ContentionOutcome, PackageContentionMonitor
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.metrics import EventName
from runnerinstall.contracts.timeouts import RETRY_CONTENTION_POLL_INTERVAL_S
from runnerinstall.control_plane import GitHubControlPlane
from runnerinstall.diagnostics import DiagnosticsCollector
from runnerinstall.errors import InstallationCancelled
from runnerinstall.logger import EventSink, InstallEventLogger, JsonLinesEventSink
from runnerinstall.metrics import MetricsRecorder
from runnerinstall.models import ErrorRecord, InstallationContext, RetryPolicy, StepRecord, SystemState
from runnerinstall.probe import PsutilProcessProbe, probe_for_platform
from runnerinstall.readiness import LocalHostChecks, ReadinessOutcome, ReadinessValidator
from runnerinstall.retry import Exhausted, RetryExecutor, RetryOutcome
from runnerinstall.runtime import CancellationToken, Clock, SystemClock, elapsed_ms
from runnerinstall.steps import InstallStep, build_install_steps, build_verification_steps

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    START = "start"
    VALIDATING_READINESS = "validating_readiness"
    AWAITING_PACKAGE_MANAGER = "awaiting_package_manager"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (OrchestratorState.SUCCEEDED, OrchestratorState.FAILED)


_ALLOWED = {
    OrchestratorState.START: {OrchestratorState.VALIDATING_READINESS},
    OrchestratorState.VALIDATING_READINESS: {OrchestratorState.AWAITING_PACKAGE_MANAGER},
    OrchestratorState.AWAITING_PACKAGE_MANAGER: {OrchestratorState.INSTALLING},
    OrchestratorState.INSTALLING: {OrchestratorState.VERIFYING},
    OrchestratorState.VERIFYING: {OrchestratorState.SUCCEEDED},
}


@dataclass(frozen=True)
class Transition:
    from_state: OrchestratorState
    to_state: OrchestratorState
    at: datetime
    reason: str = ""


@dataclass
class InstallationResult:
    """Terminal outcome of one run."""

    state: OrchestratorState
    context: InstallationContext
    error: Optional[ErrorRecord] = None
    transitions: List[Transition] = field(default_factory=list)
    identity: Optional[str] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == OrchestratorState.SUCCEEDED

    @property
    def exit_status(self) -> int:
        return 0 if self.succeeded else self.error.exit_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "identity": self.identity,
            "duration_ms": self.duration_ms,
            "context": self.context.to_dict(),
            "error": self.error.to_log_dict() if self.error else None,
            "transitions": [
                {"from": t.from_state.value, "to": t.to_state.value, "at": t.at.isoformat(), "reason": t.reason}
                for t in self.transitions
            ],
        }


class _RunFailed(Exception):
    """Internal signal carrying the record of a failed stage."""

    def __init__(self, record: ErrorRecord):
        super().__init__(record.message)
        self.record = record


def readiness_error_code(state: Optional[SystemState]) -> ErrorCode:
    """Most specific code for a machine that never became ready."""
    if state is None:
        return ErrorCode.SYSTEM_NOT_READY
    failed = set(state.failed_checks())
    if "init" in failed:
        return ErrorCode.CLOUD_INIT_TIMEOUT
    if failed & {"disk", "memory"}:
        return ErrorCode.INSUFFICIENT_RESOURCES
    if failed == {"network"}:
        return ErrorCode.NETWORK_CONNECTIVITY
    return ErrorCode.SYSTEM_NOT_READY


class InstallationOrchestrator:
    """
    Runs readiness, contention, install and verification for one machine.

    Use ``from_config`` for a fully wired instance; the constructor takes
    every collaborator explicitly so tests can substitute fakes.
    """

    def __init__(
        self,
        readiness: ReadinessValidator,
        contention: PackageContentionMonitor,
        executor: RetryExecutor,
        install_steps: Sequence[InstallStep],
        verification_steps: Sequence[InstallStep],
        diagnostics: DiagnosticsCollector,
        policy: RetryPolicy,
        events: Optional[InstallEventLogger] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Optional[Clock] = None,
        cancel_token: Optional[CancellationToken] = None,
        readiness_timeout: float = 600,
        contention_timeout: float = 300,
        poll_interval: float = 10,
        retry_contention_timeout: float = 120,
        target_host: Optional[str] = None,
        run_id: Optional[str] = None,
        closeables: Sequence[Any] = (),
    ):
        self.readiness = readiness
        self.contention = contention
        self.executor = executor
        self.install_steps = list(install_steps)
        self.verification_steps = list(verification_steps)
        self.diagnostics = diagnostics
        self.policy = policy
        self.events = events or InstallEventLogger()
        self.metrics = metrics
        self._cancel = cancel_token or CancellationToken()
        self._clock = clock or SystemClock(self._cancel)
        self.readiness_timeout = readiness_timeout
        self.contention_timeout = contention_timeout
        self.poll_interval = poll_interval
        self.retry_contention_timeout = retry_contention_timeout
        self.target_host = target_host or socket.gethostname()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._closeables = list(closeables)

        if not self.events.run_id:
            self.events.run_id = self.run_id
        if not self.events.host:
            self.events.host = self.target_host

        self.state = OrchestratorState.START
        self.transitions: List[Transition] = []
        self._started = False

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config,
        pat: Optional[str] = None,
        registration_token: Optional[str] = None,
        skip_registration_check: bool = False,
        event_sink: Optional[EventSink] = None,
        metrics: Optional[MetricsRecorder] = None,
        runner: Optional[CommandRunner] = None,
        probe: Optional[PsutilProcessProbe] = None,
        clock: Optional[Clock] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> "InstallationOrchestrator":
        """
        Wire a production orchestrator from an InstallerConfig.

        Raises:
            ValueError: repository or credentials missing
            FatalError: unsupported OS family
        """
        if not config.repository:
            raise ValueError("a target repository (owner/repo) is required")
        if not pat and not registration_token:
            raise ValueError("either a GitHub PAT or a registration token is required")

        runner = runner or CommandRunner(sudo=config.use_sudo)
        cancel_token = cancel_token or CancellationToken()
        clock = clock or SystemClock(cancel_token)
        run_id = uuid.uuid4().hex[:12]
        host = socket.gethostname()

        events = InstallEventLogger(
            event_sink if event_sink is not None else JsonLinesEventSink(
                config.get_event_log_path(),
                max_bytes=config.event_log_max_bytes,
                backup_count=config.event_log_backups,
            ),
            run_id=run_id,
            host=host,
        )
        probe = probe or probe_for_platform(runner=runner, clock=clock)

        control_plane = None
        if pat:
            control_plane = GitHubControlPlane(
                config.repository,
                pat,
                api_url=config.github_api_url,
                github_url=config.github_url,
            )
        if registration_token:
            token_source = lambda: registration_token  # noqa: E731
        else:
            token_source = control_plane.registration_token
        registration_url = f"{config.github_url}/{config.repository}"

        readiness = ReadinessValidator(
            LocalHostChecks(
                runner=runner,
                disk_path=config.disk_path,
                endpoints=config.network_endpoints,
                network_timeout=config.network_timeout,
            ),
            min_disk_mb=config.min_disk_mb,
            min_memory_mb=config.min_memory_mb,
            poll_interval=config.readiness_poll_interval,
            clock=clock,
            events=events,
            cancel_token=cancel_token,
        )
        contention = PackageContentionMonitor(probe, clock=clock, events=events, cancel_token=cancel_token)
        executor = RetryExecutor(clock=clock, events=events, cancel_token=cancel_token)

        return cls(
            readiness=readiness,
            contention=contention,
            executor=executor,
            install_steps=build_install_steps(
                config, runner, probe, token_source, registration_url, control_plane
            ),
            verification_steps=build_verification_steps(
                config, runner, None if skip_registration_check else control_plane
            ),
            diagnostics=DiagnosticsCollector.from_config(config, probe=probe, runner=runner, clock=clock),
            policy=config.retry_policy(),
            events=events,
            metrics=metrics if metrics is not None else MetricsRecorder(
                config.get_metrics_path(), otlp_endpoint=config.otlp_endpoint
            ),
            clock=clock,
            cancel_token=cancel_token,
            readiness_timeout=config.readiness_timeout,
            contention_timeout=config.contention_timeout,
            poll_interval=config.poll_interval,
            retry_contention_timeout=config.retry_contention_timeout,
            target_host=host,
            run_id=run_id,
            closeables=[control_plane] if control_plane else [],
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> InstallationResult:
        """Execute the whole installation; never raises for installation failures."""
        if self._started:
            raise RuntimeError("installation runs are not resumable; create a new orchestrator")
        self._started = True

        started = self._clock.monotonic()
        context = InstallationContext(
            target_host=self.target_host,
            max_retries=self.policy.max_attempts,
            run_id=self.run_id,
            started_at=self._clock.now(),
        )
        self.events.emit(
            EventName.RUN_STARTED.value,
            stage=self.state.value,
            message=f"installation started on {self.target_host}",
            max_retries=self.policy.max_attempts,
        )

        identity: Optional[str] = None
        try:
            identity = self._run_stages(context)
        except _RunFailed as failure:
            self._fail(context, failure.record)
        except InstallationCancelled as e:
            self._fail(context, ErrorRecord.create(
                ErrorCode.INSTALLATION_CANCELLED, e.message, evidence={"stage": self.state.value}
            ))
        except Exception as e:
            logger.exception(f"Unexpected error during {self.state.value}")
            self._fail(context, ErrorRecord.create(
                ErrorCode.UNKNOWN_ERROR,
                f"Unexpected error during {self.state.value}: {type(e).__name__}: {e}",
                evidence={"stage": self.state.value, "error_type": type(e).__name__},
            ))
        finally:
            for resource in self._closeables:
                try:
                    resource.close()
                except Exception as e:
                    logger.debug(f"Error closing {resource!r}: {e}")

        context.identity = identity
        result = InstallationResult(
            state=self.state,
            context=context,
            error=context.last_error if self.state == OrchestratorState.FAILED else None,
            transitions=list(self.transitions),
            identity=identity,
            duration_ms=elapsed_ms(self._clock, started),
        )

        if result.succeeded:
            logger.info(f"Installation succeeded in {result.duration_ms / 1000:.0f}s ({identity})")
            self.events.emit(
                EventName.RUN_SUCCEEDED.value,
                stage=self.state.value,
                message=f"installation succeeded: {identity}",
                duration_ms=result.duration_ms,
                identity=identity,
                retries=context.total_retries,
            )

        if self.metrics is not None:
            try:
                self.metrics.record_run(result)
            except Exception as e:
                logger.warning(f"Failed to record run metrics: {e}")
        return result

    def _run_stages(self, context: InstallationContext) -> Optional[str]:
        self._transition(OrchestratorState.VALIDATING_READINESS, "begin readiness validation")
        self._validate_readiness(context)

        self._transition(OrchestratorState.AWAITING_PACKAGE_MANAGER, "system ready")
        self._await_package_manager(context)

        self._transition(OrchestratorState.INSTALLING, "package managers available")
        self._run_steps(self.install_steps, context)

        self._transition(OrchestratorState.VERIFYING, "installation complete")
        identity = self._run_steps(self.verification_steps, context)

        self._transition(OrchestratorState.SUCCEEDED, "verification passed")
        return identity

    def _validate_readiness(self, context: InstallationContext) -> None:
        self._cancel.raise_if_cancelled()
        result = self.readiness.wait_until_ready(self.readiness_timeout)
        context.total_wait_ms += result.waited_ms

        if result.outcome == ReadinessOutcome.READY:
            return
        if result.outcome == ReadinessOutcome.CANCELLED:
            self._cancel.raise_if_cancelled()

        evidence: Dict[str, Any] = {"outcome": result.outcome.value, "polls": result.polls, "waited_ms": result.waited_ms}
        if result.state is not None:
            evidence["system_state"] = result.state.model_dump(mode="json")
        if result.error:
            evidence["error"] = result.error

        if result.outcome == ReadinessOutcome.TIMED_OUT:
            failing = ", ".join(result.state.failed_checks()) if result.state else "unknown"
            code = readiness_error_code(result.state)
            message = f"System not ready after {self.readiness_timeout:.0f}s (failing: {failing})"
        else:
            code = result.error_code or ErrorCode.SYSTEM_NOT_READY
            message = f"Readiness validation failed: {result.error}"
        raise _RunFailed(ErrorRecord.create(code, message, evidence=evidence))

    def _await_package_manager(self, context: InstallationContext) -> None:
        self._cancel.raise_if_cancelled()
        result = self.contention.wait_for_clear(self.contention_timeout, self.poll_interval)
        context.total_wait_ms += result.waited_ms

        if result.outcome == ContentionOutcome.CLEAR:
            return
        if result.outcome == ContentionOutcome.CANCELLED:
            self._cancel.raise_if_cancelled()

        holders = ", ".join(str(h) for h in result.lock_holders) or "unknown holder"
        raise _RunFailed(ErrorRecord.create(
            ErrorCode.PACKAGE_MANAGER_BUSY,
            f"Package managers still busy after {self.contention_timeout:.0f}s: {holders}",
            evidence=result.evidence(),
        ))

    def _run_steps(self, steps: Sequence[InstallStep], context: InstallationContext) -> Optional[str]:
        identity: Optional[str] = None
        for step in steps:
            self._cancel.raise_if_cancelled()
            logger.info(f"Step {step.step_id}: {step.description or step.step_id}")
            started = self._clock.monotonic()
            outcome = self.executor.execute(
                step,
                self.policy,
                context,
                step_id=step.step_id,
                failure_code=step.failure_code,
                before_retry=self._wait_before_retry(context, step.stage) if step.uses_package_manager else None,
                stage=step.stage,
            )
            context.steps.append(self._step_record(step, outcome, context, elapsed_ms(self._clock, started)))
            if isinstance(outcome, Exhausted):
                raise _RunFailed(outcome.error_record)
            if isinstance(outcome.result, str):
                identity = outcome.result
        return identity

    def _step_record(
        self, step: InstallStep, outcome: RetryOutcome, context: InstallationContext, duration_ms: int
    ) -> StepRecord:
        error_code = None
        if isinstance(outcome, Exhausted):
            error_code = outcome.error_record.code
            status = "cancelled" if error_code == ErrorCode.INSTALLATION_CANCELLED else "failed"
        else:
            status = "succeeded"
        return StepRecord(
            step_id=step.step_id,
            status=status,
            attempts=outcome.attempts,
            retry_count=context.retry_counts.get(step.step_id, 0),
            duration_ms=duration_ms,
            error_code=error_code,
            finished_at=self._clock.now(),
        )

    def _wait_before_retry(self, context: InstallationContext, stage: str):
        """Hook that waits out lock contention before an install step retry."""

        def hook(step_id: str, next_attempt: int, error: BaseException) -> None:
            if self.retry_contention_timeout <= 0:
                return
            result = self.contention.wait_for_clear(
                self.retry_contention_timeout, RETRY_CONTENTION_POLL_INTERVAL_S, stage=stage
            )
            context.total_wait_ms += result.waited_ms
            if result.outcome == ContentionOutcome.CANCELLED:
                self._cancel.raise_if_cancelled()
            elif result.outcome == ContentionOutcome.TIMED_OUT:
                logger.warning(
                    f"Package managers still busy before attempt {next_attempt} of {step_id}; retrying anyway"
                )

        return hook

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, to_state: OrchestratorState, reason: str) -> None:
        if to_state != OrchestratorState.FAILED and to_state not in _ALLOWED.get(self.state, set()):
            raise RuntimeError(f"Illegal transition {self.state.value} -> {to_state.value}")
        if to_state == OrchestratorState.FAILED and self.state.terminal:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {to_state.value}")

        transition = Transition(self.state, to_state, self._clock.now(), reason)
        self.transitions.append(transition)
        logger.info(f"{self.state.value} -> {to_state.value}: {reason}")
        self.events.emit(
            EventName.STATE_CHANGED.value,
            stage=to_state.value,
            message=reason,
            level="error" if to_state == OrchestratorState.FAILED else "info",
            from_state=self.state.value,
        )
        self.state = to_state

    def _fail(self, context: InstallationContext, record: ErrorRecord) -> None:
        snapshot = self.diagnostics.collect(context)
        record = record.with_diagnostics(snapshot)
        context.last_error = record
        self.events.emit(
            EventName.DIAGNOSTICS_COLLECTED.value,
            stage=self.state.value,
            message="diagnostics collected",
            unavailable_sections=list(snapshot.unavailable_sections()) or None,
        )

        failed_in = self.state.value
        self._transition(OrchestratorState.FAILED, f"{record.code.value}: {record.message}")
        logger.error(f"Installation failed during {failed_in}: [{record.code.value}/{record.numeric_code}] {record.message}")
        self.events.emit(
            EventName.RUN_FAILED.value,
            stage=OrchestratorState.FAILED.value,
            message=record.message,
            attempt=context.attempt or None,
            level="error",
            failed_stage=failed_in,
            code=record.code.value,
            numericCode=record.numeric_code,
        )
