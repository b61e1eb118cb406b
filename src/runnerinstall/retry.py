"""
Bounded exponential-backoff execution.

Every retried operation in the installer goes through ``RetryExecutor``.
A failure is either transient (retried after ``policy.delay(n - 1)``) or
fatal (reported immediately, without consuming retry budget). The caller
gets back a ``Success`` or an ``Exhausted`` value; exceptions from the
operation never escape ``execute``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.metrics import EventName, Stage
from runnerinstall.errors import CommandError, FatalError, InstallerError, TransientError
from runnerinstall.logger import InstallEventLogger
from runnerinstall.models import ErrorRecord, InstallationContext, RetryPolicy
from runnerinstall.runtime import CancellationToken, Clock, SystemClock

logger = logging.getLogger(__name__)

# Called before each retry with (step_id, next_attempt, last_error).
BeforeRetryHook = Callable[[str, int, BaseException], None]


@dataclass(frozen=True)
class Success:
    result: Any
    attempts: int

    ok = True


@dataclass(frozen=True)
class Exhausted:
    error_record: ErrorRecord
    attempts: int
    fatal: bool = False

    ok = False


RetryOutcome = Union[Success, Exhausted]


def is_retryable(exc: BaseException) -> bool:
    """Default classification: everything except FatalError is retried."""
    return not isinstance(exc, FatalError)


def _error_evidence(step_id: str, attempts: int, exc: BaseException) -> Dict[str, Any]:
    evidence: Dict[str, Any] = {
        "step": step_id,
        "attempts": attempts,
        "last_error": str(exc) or type(exc).__name__,
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, CommandError):
        evidence["returncode"] = exc.returncode
        if exc.stderr:
            evidence["stderr"] = exc.stderr.strip()[-2000:]
    return evidence


def _code_for(exc: BaseException, failure_code: ErrorCode) -> ErrorCode:
    """Use the error's own code when it names a specific failure."""
    if isinstance(exc, InstallerError) and exc.code not in (
        ErrorCode.UNKNOWN_ERROR,
        TransientError.default_code,
    ):
        return exc.code
    return failure_code


class RetryExecutor:
    """
    Runs operations with bounded exponential backoff.

    Args:
        clock: Time source for backoff sleeps
        events: Structured event logger
        cancel_token: Observed before each attempt and after each sleep
        classify: Returns True when an exception should be retried
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        events: Optional[InstallEventLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
        classify: Optional[Callable[[BaseException], bool]] = None,
    ):
        self._events = events or InstallEventLogger()
        self._cancel = cancel_token or CancellationToken()
        self._clock = clock or SystemClock(self._cancel)
        self._classify = classify or is_retryable

    def _cancelled(self, step_id: str, attempts: int, context: Optional[InstallationContext]) -> Exhausted:
        reason = self._cancel.reason or "cancelled"
        record = ErrorRecord.create(
            ErrorCode.INSTALLATION_CANCELLED,
            f"Installation cancelled during {step_id}: {reason}",
            evidence={"step": step_id, "attempts": attempts},
        )
        if context is not None:
            context.last_error = record
        return Exhausted(record, attempts, fatal=True)

    def execute(
        self,
        operation: Callable[[], Any],
        policy: RetryPolicy,
        context: Optional[InstallationContext] = None,
        step_id: str = "operation",
        failure_code: ErrorCode = ErrorCode.PACKAGE_INSTALL_FAILED,
        before_retry: Optional[BeforeRetryHook] = None,
        stage: str = Stage.INSTALLING.value,
    ) -> RetryOutcome:
        """
        Call ``operation`` until it succeeds or the budget is spent.

        After failed attempt ``n`` (1-based) the executor sleeps
        ``policy.delay(n - 1)``, so the first retry waits ``base_delay``.

        Args:
            operation: Zero-argument callable
            policy: Backoff configuration
            context: Run context; its attempt, retry counts and wait total are updated
            step_id: Name used in logs, events and retry counts
            failure_code: Error code reported when retries are exhausted
            before_retry: Hook run after the backoff sleep, before the next attempt
            stage: Stage name used in emitted events

        Returns:
            Success or Exhausted
        """
        max_attempts = policy.max_attempts
        if context is not None:
            max_attempts = min(max_attempts, context.max_retries)

        attempt = 0
        while True:
            if self._cancel.cancelled:
                return self._cancelled(step_id, attempt, context)

            attempt += 1
            if context is not None:
                context.begin_attempt(step_id, attempt)
                context.retry_counts[step_id] = attempt - 1

            self._events.emit(
                EventName.STEP_ATTEMPT.value,
                stage=stage,
                attempt=attempt,
                message=f"{step_id}: attempt {attempt}/{max_attempts}",
                step=step_id,
            )

            started = self._clock.monotonic()
            try:
                result = operation()
            except Exception as exc:
                duration_ms = int(round((self._clock.monotonic() - started) * 1000))
                retryable = self._classify(exc)
                self._events.emit(
                    EventName.STEP_FAILED.value,
                    stage=stage,
                    attempt=attempt,
                    message=f"{step_id}: {exc}",
                    duration_ms=duration_ms,
                    level="warn" if retryable and attempt < max_attempts else "error",
                    step=step_id,
                    error_type=type(exc).__name__,
                    retryable=retryable,
                )

                if not retryable or attempt >= max_attempts:
                    fatal = not retryable
                    if fatal:
                        logger.error(f"{step_id} failed with a non-retryable error: {exc}")
                    else:
                        logger.error(f"{step_id} failed after {attempt} attempts: {exc}")
                    record = ErrorRecord.create(
                        _code_for(exc, failure_code),
                        f"{step_id} failed after {attempt} attempt(s): {exc}",
                        evidence=_error_evidence(step_id, attempt, exc),
                    )
                    if context is not None:
                        context.last_error = record
                    return Exhausted(record, attempt, fatal=fatal)

                delay = policy.delay(attempt - 1)
                logger.warning(
                    f"{step_id} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.0f}s: {exc}"
                )
                self._events.emit(
                    EventName.STEP_RETRY_SCHEDULED.value,
                    stage=stage,
                    attempt=attempt,
                    message=f"{step_id}: retrying in {delay:.0f}s",
                    level="warn",
                    step=step_id,
                    delay_ms=int(delay * 1000),
                )
                self._clock.sleep(delay)
                if context is not None:
                    context.total_wait_ms += int(delay * 1000)

                if self._cancel.cancelled:
                    return self._cancelled(step_id, attempt, context)

                if before_retry is not None:
                    try:
                        before_retry(step_id, attempt + 1, exc)
                    except FatalError as hook_exc:
                        record = ErrorRecord.create(
                            hook_exc.code,
                            f"{step_id} cannot be retried: {hook_exc}",
                            evidence=_error_evidence(step_id, attempt, hook_exc),
                        )
                        if context is not None:
                            context.last_error = record
                        return Exhausted(record, attempt, fatal=True)
                continue

            duration_ms = int(round((self._clock.monotonic() - started) * 1000))
            self._events.emit(
                EventName.STEP_SUCCEEDED.value,
                stage=stage,
                attempt=attempt,
                message=f"{step_id} succeeded",
                duration_ms=duration_ms,
                step=step_id,
            )
            if attempt > 1:
                logger.info(f"{step_id} succeeded on attempt {attempt}")
            return Success(result, attempt)
