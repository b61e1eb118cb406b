"""
Tests for RetryExecutor and RetryPolicy.
"""

import pytest

from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.errors import CommandError, FatalError, TransientError
from runnerinstall.models import InstallationContext, RetryPolicy
from runnerinstall.retry import Exhausted, RetryExecutor, Success, is_retryable


def failing_then(result, failures):
    """Operation raising each of ``failures`` in turn, then returning ``result``."""
    calls = {"count": 0}
    pending = list(failures)

    def operation():
        calls["count"] += 1
        if pending:
            raise pending.pop(0)
        return result

    operation.calls = calls
    return operation


@pytest.fixture
def policy():
    return RetryPolicy(base_delay=30, max_delay=300, max_attempts=3)


@pytest.fixture
def executor(clock, events, cancel_token):
    return RetryExecutor(clock=clock, events=events, cancel_token=cancel_token)


@pytest.fixture
def context():
    return InstallationContext(target_host="test-host", max_retries=3, run_id="test-run")


class TestRetryPolicy:
    """Tests for the backoff formula."""

    def test_delays_double_from_base(self):
        policy = RetryPolicy(base_delay=30, max_delay=300, max_attempts=5)
        assert [policy.delay(n) for n in range(5)] == [30, 60, 120, 240, 300]

    def test_delay_capped_for_large_attempts(self):
        policy = RetryPolicy(base_delay=1, max_delay=10, max_attempts=3)
        assert policy.delay(5000) == 10

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy().delay(-1)

    def test_ceiling_below_base_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=60, max_delay=30)

    def test_policy_is_immutable(self):
        policy = RetryPolicy()
        with pytest.raises(Exception):
            policy.base_delay = 1


class TestRetryExecutorSuccess:
    """Tests for operations that eventually succeed."""

    def test_first_attempt_success_does_not_sleep(self, executor, policy, clock):
        outcome = executor.execute(lambda: "done", policy, step_id="step")

        assert isinstance(outcome, Success)
        assert outcome.ok
        assert outcome.result == "done"
        assert outcome.attempts == 1
        assert clock.sleeps == []

    def test_first_retry_waits_base_delay(self, executor, policy, clock, context):
        operation = failing_then("ok", [TransientError("lock"), TransientError("lock")])

        outcome = executor.execute(operation, policy, context, step_id="install")

        assert outcome.ok
        assert outcome.attempts == 3
        assert clock.sleeps == [30, 60]
        assert context.retry_counts == {"install": 2}
        assert context.total_wait_ms == 90_000
        assert context.attempt == 3

    def test_generic_exceptions_are_retried(self, executor, policy):
        operation = failing_then("ok", [RuntimeError("flaky")])
        outcome = executor.execute(operation, policy)
        assert outcome.ok
        assert outcome.attempts == 2

    def test_events_for_each_attempt(self, executor, policy, event_sink):
        operation = failing_then("ok", [TransientError("lock")])
        executor.execute(operation, policy, step_id="install")

        assert len(event_sink.of_type("step.attempt")) == 2
        assert len(event_sink.of_type("step.failed")) == 1
        assert len(event_sink.of_type("step.retry_scheduled")) == 1
        succeeded = event_sink.of_type("step.succeeded")
        assert len(succeeded) == 1
        assert succeeded[0]["attempt"] == 2
        assert succeeded[0]["step"] == "install"

    def test_retry_scheduled_event_carries_delay(self, executor, policy, event_sink):
        executor.execute(failing_then("ok", [TransientError("lock")]), policy)
        scheduled = event_sink.of_type("step.retry_scheduled")[0]
        assert scheduled["delay_ms"] == 30_000
        assert scheduled["level"] == "warn"


class TestRetryExecutorExhaustion:
    """Tests for operations that never succeed."""

    def test_exhaustion_after_max_attempts(self, executor, policy, clock, context):
        operation = failing_then("never", [TransientError("lock")] * 10)

        outcome = executor.execute(operation, policy, context, step_id="install")

        assert isinstance(outcome, Exhausted)
        assert not outcome.ok
        assert not outcome.fatal
        assert outcome.attempts == 3
        assert operation.calls["count"] == 3
        # No sleep after the final attempt
        assert clock.sleeps == [30, 60]
        assert context.last_error is outcome.error_record

    def test_exhaustion_uses_step_failure_code(self, executor, policy):
        operation = failing_then("never", [TransientError("503")] * 3)

        outcome = executor.execute(operation, policy, failure_code=ErrorCode.RUNNER_DOWNLOAD_FAILED)

        assert outcome.error_record.code == ErrorCode.RUNNER_DOWNLOAD_FAILED
        assert outcome.error_record.remediation_hints == ErrorCode.RUNNER_DOWNLOAD_FAILED.remediation_hints

    def test_specific_error_code_wins_over_failure_code(self, executor, policy):
        operation = failing_then(
            "never", [TransientError("Could not get lock", ErrorCode.DPKG_LOCK_TIMEOUT)] * 3
        )

        outcome = executor.execute(operation, policy, failure_code=ErrorCode.PACKAGE_INSTALL_FAILED)

        assert outcome.error_record.code == ErrorCode.DPKG_LOCK_TIMEOUT

    def test_evidence_describes_last_failure(self, executor, policy):
        error = CommandError(["apt-get", "install", "-y", "jq"], 100, stderr="E: broken\n")
        outcome = executor.execute(failing_then(None, [error] * 3), policy, step_id="install_packages")

        evidence = outcome.error_record.evidence
        assert evidence["step"] == "install_packages"
        assert evidence["attempts"] == 3
        assert evidence["error_type"] == "CommandError"
        assert evidence["returncode"] == 100
        assert evidence["stderr"] == "E: broken"

    def test_context_caps_attempts(self, executor, policy):
        context = InstallationContext(target_host="h", max_retries=2)
        operation = failing_then("never", [TransientError("x")] * 5)

        outcome = executor.execute(operation, policy, context)

        assert outcome.attempts == 2
        assert operation.calls["count"] == 2

    def test_single_attempt_policy(self, executor, clock):
        outcome = executor.execute(
            failing_then("never", [TransientError("x")]),
            RetryPolicy(base_delay=30, max_delay=300, max_attempts=1),
        )
        assert outcome.attempts == 1
        assert clock.sleeps == []


class TestRetryExecutorFatal:
    """Tests for non-retryable failures."""

    def test_fatal_error_short_circuits(self, executor, policy, clock):
        operation = failing_then("never", [FatalError("bad credentials", ErrorCode.GITHUB_AUTH_FAILED)])

        outcome = executor.execute(operation, policy, failure_code=ErrorCode.RUNNER_CONFIG_FAILED)

        assert isinstance(outcome, Exhausted)
        assert outcome.fatal
        assert outcome.attempts == 1
        assert outcome.error_record.code == ErrorCode.GITHUB_AUTH_FAILED
        assert clock.sleeps == []

    def test_custom_classifier(self, clock, events, policy):
        executor = RetryExecutor(clock=clock, events=events, classify=lambda exc: False)
        outcome = executor.execute(failing_then("never", [TransientError("x")]), policy)
        assert outcome.fatal
        assert outcome.attempts == 1

    def test_is_retryable(self):
        assert is_retryable(TransientError("x"))
        assert is_retryable(ValueError("x"))
        assert not is_retryable(FatalError("x"))


class TestRetryExecutorCancellation:
    """Tests for cancellation at attempt boundaries."""

    def test_cancelled_before_first_attempt(self, executor, policy, cancel_token):
        cancel_token.cancel("test")
        operation = failing_then("ok", [])

        outcome = executor.execute(operation, policy, step_id="install")

        assert isinstance(outcome, Exhausted)
        assert outcome.fatal
        assert outcome.attempts == 0
        assert outcome.error_record.code == ErrorCode.INSTALLATION_CANCELLED
        assert operation.calls["count"] == 0

    def test_cancelled_during_backoff(self, executor, policy, clock, cancel_token, context):
        clock.on_sleep = lambda seconds: cancel_token.cancel("SIGTERM")
        operation = failing_then("ok", [TransientError("lock")])

        outcome = executor.execute(operation, policy, context)

        assert outcome.error_record.code == ErrorCode.INSTALLATION_CANCELLED
        assert operation.calls["count"] == 1
        assert "SIGTERM" in outcome.error_record.message
        assert context.last_error.code == ErrorCode.INSTALLATION_CANCELLED


class TestBeforeRetryHook:
    """Tests for the hook run between attempts."""

    def test_hook_called_before_each_retry(self, executor, policy):
        calls = []
        first, second = TransientError("a"), TransientError("b")

        outcome = executor.execute(
            failing_then("ok", [first, second]),
            policy,
            step_id="install",
            before_retry=lambda step, attempt, exc: calls.append((step, attempt, exc)),
        )

        assert outcome.ok
        assert calls == [("install", 2, first), ("install", 3, second)]

    def test_hook_not_called_on_success(self, executor, policy):
        calls = []
        executor.execute(lambda: None, policy, before_retry=lambda *args: calls.append(args))
        assert calls == []

    def test_fatal_hook_stops_retries(self, executor, policy):
        def hook(step, attempt, exc):
            raise FatalError("probe says unsupported", ErrorCode.UNSUPPORTED_OS)

        operation = failing_then("ok", [TransientError("lock")])
        outcome = executor.execute(operation, policy, before_retry=hook)

        assert outcome.fatal
        assert outcome.error_record.code == ErrorCode.UNSUPPORTED_OS
        assert operation.calls["count"] == 1
