"""
Wait for package-manager contention to clear.

On first boot the package subsystem is usually held by unattended upgrades
or cloud-init package runs. The monitor polls a ProcessProbe until the
holder set is empty, logging who holds the locks on every busy poll.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Tuple

from runnerinstall.contracts.metrics import EventName, Stage
from runnerinstall.contracts.timeouts import CONTENTION_POLL_INTERVAL_S
from runnerinstall.logger import InstallEventLogger
from runnerinstall.models import LockHolder, PackageManagerStatus
from runnerinstall.probe import ProcessProbe
from runnerinstall.runtime import CancellationToken, Clock, SystemClock, elapsed_ms

logger = logging.getLogger(__name__)


class ContentionOutcome(str, Enum):
    CLEAR = "clear"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ContentionResult:
    outcome: ContentionOutcome
    status: Optional[PackageManagerStatus]
    busy_polls: int
    waited_ms: int

    @property
    def clear(self) -> bool:
        return self.outcome == ContentionOutcome.CLEAR

    @property
    def lock_holders(self) -> Tuple[LockHolder, ...]:
        return self.status.lock_holders if self.status else ()

    def evidence(self) -> dict:
        return {
            "lock_holders": [str(h) for h in self.lock_holders],
            "busy_polls": self.busy_polls,
            "waited_ms": self.waited_ms,
        }


class PackageContentionMonitor:
    """
    Polls a ProcessProbe until no process holds the package subsystem.

    Args:
        probe: OS-family process probe
        clock: Time source (fake in tests)
        events: Structured event logger
        cancel_token: Observed before every poll
        stage: Stage name used in emitted events
    """

    def __init__(
        self,
        probe: ProcessProbe,
        clock: Optional[Clock] = None,
        events: Optional[InstallEventLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
        stage: str = Stage.AWAITING_PACKAGE_MANAGER.value,
    ):
        self.probe = probe
        self._events = events or InstallEventLogger()
        self._cancel = cancel_token or CancellationToken()
        self._clock = clock or SystemClock(self._cancel)
        self.stage = stage

    def _poll(self) -> PackageManagerStatus:
        try:
            return self.probe.status()
        except Exception as e:
            # Unknown state is treated as busy.
            logger.warning(f"Package manager probe failed, treating as busy: {e}")
            return PackageManagerStatus(busy=True, lock_holders=(), checked_at=self._clock.now())

    @staticmethod
    def estimate_remaining(history: List[Tuple[float, int]]) -> Optional[float]:
        """
        Seconds until the holder set is empty, from its shrink rate.

        ``history`` holds ``(monotonic time, holder count)`` per poll. Only
        the last two observations are used; no estimate when the set did
        not shrink.
        """
        if len(history) < 2:
            return None
        (t0, c0), (t1, c1) = history[-2], history[-1]
        if t1 <= t0 or c1 >= c0 or c1 <= 0:
            return None
        rate = (c0 - c1) / (t1 - t0)
        return c1 / rate

    def wait_for_clear(
        self,
        timeout: float,
        poll_interval: float = CONTENTION_POLL_INTERVAL_S,
        stage: Optional[str] = None,
    ) -> ContentionResult:
        """
        Block until the package subsystem is clear, the timeout passes, or cancellation.

        ``stage`` overrides the monitor's stage on emitted events, for waits
        made from inside another stage.
        """
        stage = stage or self.stage
        started = self._clock.monotonic()
        deadline = started + timeout
        busy_polls = 0
        status: Optional[PackageManagerStatus] = None
        history: List[Tuple[float, int]] = []

        while True:
            if self._cancel.cancelled:
                return ContentionResult(ContentionOutcome.CANCELLED, status, busy_polls, elapsed_ms(self._clock, started))

            status = self._poll()
            now = self._clock.monotonic()

            if status.clear:
                if busy_polls:
                    logger.info(f"Package managers available after {busy_polls} busy poll(s)")
                self._events.emit(
                    EventName.CONTENTION_POLL.value,
                    stage=stage,
                    message="package managers available",
                    duration_ms=elapsed_ms(self._clock, started),
                    busy=False,
                )
                return ContentionResult(ContentionOutcome.CLEAR, status, busy_polls, elapsed_ms(self._clock, started))

            busy_polls += 1
            history.append((now, len(status.lock_holders)))
            remaining_estimate = self.estimate_remaining(history)
            if remaining_estimate is not None:
                status = status.model_copy(update={
                    "estimated_clear_at": status.checked_at + timedelta(seconds=remaining_estimate),
                })

            holders = ", ".join(str(h) for h in status.lock_holders) or "unknown holder"
            estimate = f", estimated clear in {remaining_estimate:.0f}s" if remaining_estimate is not None else ""
            logger.warning(f"Package managers busy: {holders}{estimate}")
            self._events.emit(
                EventName.CONTENTION_POLL.value,
                stage=stage,
                message=f"package managers busy: {holders}",
                duration_ms=elapsed_ms(self._clock, started),
                level="warn",
                busy=True,
                lock_holders=[str(h) for h in status.lock_holders],
                estimated_clear_at=status.estimated_clear_at.isoformat() if status.estimated_clear_at else None,
            )

            remaining = deadline - now
            if remaining <= 0:
                logger.error(f"Timeout waiting for package managers after {timeout:.0f} seconds ({holders})")
                return ContentionResult(ContentionOutcome.TIMED_OUT, status, busy_polls, elapsed_ms(self._clock, started))

            self._clock.sleep(min(poll_interval, remaining))
