"""
Clock and cancellation primitives.

Every wait in the installer (readiness polls, contention polls, retry
backoff) goes through a ``Clock`` so tests can substitute a fake one that
advances on sleep, and every wait observes a ``CancellationToken`` at its
poll boundary.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

from runnerinstall.errors import InstallationCancelled


class Clock(Protocol):
    """Time source used by all waiting components."""

    def monotonic(self) -> float:
        ...

    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """
    Wall-clock implementation backed by the time module.

    With a cancel token, ``sleep`` returns as soon as the token is
    cancelled; callers observe the token after the sleep as usual.
    """

    def __init__(self, cancel_token: Optional[CancellationToken] = None):
        self._cancel = cancel_token

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._cancel is not None:
            self._cancel.wait(seconds)
        else:
            time.sleep(seconds)


class CancellationToken:
    """
    Cooperative cancellation signal.

    Set from another thread or a signal handler; checked by waiting
    components before each poll or attempt. Cancellation is never observed
    in the middle of an operation.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` seconds pass; True when cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InstallationCancelled(f"Installation cancelled: {self.reason}")


def elapsed_ms(clock: Clock, started: float) -> int:
    """Milliseconds elapsed on ``clock`` since monotonic timestamp ``started``."""
    return int(round((clock.monotonic() - started) * 1000))
