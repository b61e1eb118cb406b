"""
Metric and event name contracts.

Defines the canonical names for metrics, stages and events emitted during
an installation run. All telemetry emission and querying should use these
definitions to prevent naming drift.
"""

from __future__ import annotations

from enum import Enum


class MetricName(str, Enum):
    """Canonical OpenTelemetry instrument names."""

    RUNS = "runnerinstall.runs"  # Counter: completed runs, by outcome
    RETRIES = "runnerinstall.retries"  # Counter: retries consumed, by step
    WAIT_DURATION = "runnerinstall.wait.duration"  # Histogram: ms spent waiting
    RUN_DURATION = "runnerinstall.run.duration"  # Histogram: ms per run


class Stage(str, Enum):
    """Orchestrator stages as they appear in the event log."""

    START = "start"
    VALIDATING_READINESS = "validating_readiness"
    AWAITING_PACKAGE_MANAGER = "awaiting_package_manager"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventName(str, Enum):
    """Event types written to the structured event log."""

    RUN_STARTED = "run.started"
    RUN_SUCCEEDED = "run.succeeded"
    RUN_FAILED = "run.failed"
    STATE_CHANGED = "state.changed"
    READINESS_POLL = "readiness.poll"
    CONTENTION_POLL = "contention.poll"
    STEP_ATTEMPT = "step.attempt"
    STEP_SUCCEEDED = "step.succeeded"
    STEP_FAILED = "step.failed"
    STEP_RETRY_SCHEDULED = "step.retry_scheduled"
    DIAGNOSTICS_COLLECTED = "diagnostics.collected"


# Histogram boundaries (ms) for wait and run durations
DURATION_BUCKETS_MS = [
    1000, 5000, 10000, 30000, 60000, 120000,
    300000, 600000, 1200000, 1800000, 3600000,
]
