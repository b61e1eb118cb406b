"""
Data model for an installation run.

Immutable values (SystemState, PackageManagerStatus, RetryPolicy,
ErrorRecord, DiagnosticsSnapshot) are frozen pydantic models: each poll or
failure produces a new value instead of mutating an old one. The only
mutable record is InstallationContext, owned by a single orchestrator run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from runnerinstall.contracts.errors import ErrorCode

UNAVAILABLE = "unavailable"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SystemState(BaseModel):
    """Result of one readiness poll."""

    model_config = ConfigDict(frozen=True)

    init_complete: bool = False
    disk_free_mb: Optional[int] = None
    mem_free_mb: Optional[int] = None
    network_reachable: bool = False
    checked_at: datetime = Field(default_factory=_utcnow)
    disk_ok: bool = False
    memory_ok: bool = False
    check_errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def ready(self) -> bool:
        """True iff all four checks passed in this poll."""
        return (
            self.init_complete
            and self.disk_ok
            and self.memory_ok
            and self.network_reachable
        )

    def failed_checks(self) -> Tuple[str, ...]:
        failed = []
        if not self.init_complete:
            failed.append("init")
        if not self.disk_ok:
            failed.append("disk")
        if not self.memory_ok:
            failed.append("memory")
        if not self.network_reachable:
            failed.append("network")
        return tuple(failed)


class LockHolder(BaseModel):
    """A process (or service) holding the package subsystem."""

    model_config = ConfigDict(frozen=True)

    pid: Optional[int] = None
    command: str
    resource: str = ""

    def __str__(self) -> str:
        who = f"PID {self.pid} ({self.command})" if self.pid is not None else self.command
        return f"{who} holding {self.resource}" if self.resource else who


class PackageManagerStatus(BaseModel):
    """Result of one contention poll."""

    model_config = ConfigDict(frozen=True)

    busy: bool = False
    lock_holders: Tuple[LockHolder, ...] = ()
    estimated_clear_at: Optional[datetime] = None
    checked_at: datetime = Field(default_factory=_utcnow)

    @property
    def clear(self) -> bool:
        return not self.busy and not self.lock_holders


class RetryPolicy(BaseModel):
    """
    Immutable backoff configuration.

    ``delay(attempt) = min(base_delay * 2**attempt, max_delay)``, where
    ``attempt`` is the zero-based retry index.
    """

    model_config = ConfigDict(frozen=True)

    base_delay: float = Field(default=30, ge=0)
    max_delay: float = Field(default=300, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_ceiling(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        try:
            return min(self.base_delay * (2 ** attempt), self.max_delay)
        except OverflowError:
            return self.max_delay


class DiagnosticsSnapshot(BaseModel):
    """Best-effort system snapshot taken at the point of failure."""

    model_config = ConfigDict(frozen=True)

    collected_at: datetime = Field(default_factory=_utcnow)
    sections: Dict[str, Any] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    def unavailable_sections(self) -> Tuple[str, ...]:
        return tuple(name for name, value in self.sections.items() if value == UNAVAILABLE)


class ErrorRecord(BaseModel):
    """The classified description of why a run terminated in failure."""

    model_config = ConfigDict(frozen=True)

    code: ErrorCode
    message: str
    remediation_hints: Tuple[str, ...] = ()
    diagnostics_snapshot: Optional[DiagnosticsSnapshot] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def create(
        cls,
        code: ErrorCode,
        message: str,
        evidence: Optional[Dict[str, Any]] = None,
        diagnostics_snapshot: Optional[DiagnosticsSnapshot] = None,
    ) -> "ErrorRecord":
        """Build a record whose hints are derived from the code."""
        return cls(
            code=code,
            message=message,
            remediation_hints=code.remediation_hints,
            evidence=evidence or {},
            diagnostics_snapshot=diagnostics_snapshot,
        )

    @property
    def numeric_code(self) -> int:
        return self.code.numeric_code

    @property
    def exit_status(self) -> int:
        return self.code.exit_status

    def with_diagnostics(self, snapshot: DiagnosticsSnapshot) -> "ErrorRecord":
        """Return a copy of this record with the snapshot attached."""
        return self.model_copy(update={"diagnostics_snapshot": snapshot})

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "numeric_code": self.numeric_code,
            "message": self.message,
            "remediation_hints": list(self.remediation_hints),
            "evidence": self.evidence,
        }


class StepRecord(BaseModel):
    """Outcome of one install or verification step within a run."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    status: str
    attempts: int
    retry_count: int = 0
    duration_ms: int = 0
    error_code: Optional[ErrorCode] = None
    finished_at: datetime = Field(default_factory=_utcnow)

    def to_artifact(self) -> Dict[str, Any]:
        return {
            "name": self.step_id,
            "status": self.status,
            "attempts": self.attempts,
            "retryCount": self.retry_count,
            "durationMs": self.duration_ms,
            "errorCode": self.error_code.value if self.error_code else None,
            "finishedAt": self.finished_at.isoformat(),
        }


@dataclass
class InstallationContext:
    """Mutable per-run record, owned by exactly one orchestrator run."""

    target_host: str
    max_retries: int
    run_id: str = ""
    attempt: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    last_error: Optional[ErrorRecord] = None
    current_step: Optional[str] = None
    retry_counts: Dict[str, int] = field(default_factory=dict)
    total_wait_ms: int = 0
    identity: Optional[str] = None
    steps: List[StepRecord] = field(default_factory=list)

    def begin_attempt(self, step_id: str, attempt: int) -> None:
        if attempt > self.max_retries:
            raise ValueError(
                f"attempt {attempt} exceeds max_retries {self.max_retries} for {step_id}"
            )
        self.current_step = step_id
        self.attempt = attempt

    @property
    def total_retries(self) -> int:
        return sum(self.retry_counts.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "target_host": self.target_host,
            "max_retries": self.max_retries,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "current_step": self.current_step,
            "retry_counts": dict(self.retry_counts),
            "total_wait_ms": self.total_wait_ms,
            "last_error": self.last_error.code.value if self.last_error else None,
            "steps": [step.to_artifact() for step in self.steps],
        }
