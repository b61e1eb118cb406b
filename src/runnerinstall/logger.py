"""
Structured logging for installation events.

Outputs one JSON object per line for every stage change, poll and attempt
of an installation run, so an unattended install can be reconstructed
after the fact. Each entry carries the standard fields:

- timestamp, stage, attempt, message, durationMs
- event type, level, run_id and host for filtering

Events go to an injected ``EventSink`` (append-only) and are mirrored to
the ``runnerinstall.events`` stdlib logger. There is no module-level sink:
concurrent runs each hold their own.

Usage:
    from runnerinstall.logger import InstallEventLogger, JsonLinesEventSink

    events = InstallEventLogger(JsonLinesEventSink("/var/log/runnerinstall/events.jsonl"),
                                run_id="abc123", host="ip-10-0-0-12")
    events.emit("step.attempt", stage="installing", attempt=1, message="apt-get update")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Protocol, Union

from runnerinstall.state import file_lock

_events_logger = logging.getLogger("runnerinstall.events")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class EventSink(Protocol):
    """Append-only destination for structured events."""

    def write(self, entry: Dict[str, Any]) -> None:
        ...


class MemoryEventSink:
    """Keeps events in memory (tests, result summaries)."""

    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    def write(self, entry: Dict[str, Any]) -> None:
        self.entries.append(entry)

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e.get("event") == event]


class JsonLinesEventSink:
    """
    Appends one JSON line per event to a file or stream.

    Files are opened in append mode per write so several runs sharing a
    log file never truncate each other. With ``max_bytes`` set, a file
    that would grow past it is rotated first: ``events.jsonl`` becomes
    ``events.jsonl.1``, older copies shift up and at most
    ``backup_count`` are kept. Rotation holds the file's sidecar lock so
    concurrent runs rotate once.
    """

    def __init__(self, target: Union[str, Path, IO[str]], max_bytes: int = 0, backup_count: int = 5):
        self._lock = threading.Lock()
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        if isinstance(target, (str, Path)):
            self.path: Optional[Path] = Path(target).expanduser()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._stream: Optional[IO[str]] = None
        else:
            self.path = None
            self._stream = target

    def _backup(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{index}")

    def _rotate_if_needed(self, incoming: int) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size == 0 or size + incoming <= self.max_bytes:
            return

        if self.backup_count <= 0:
            self.path.unlink()
            return
        for index in range(self.backup_count - 1, 0, -1):
            if self._backup(index).exists():
                os.replace(self._backup(index), self._backup(index + 1))
        os.replace(self.path, self._backup(1))
        _events_logger.info(f"Rotated event log {self.path} at {size} bytes")

    def write(self, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, default=str) + "\n"
        with self._lock:
            if self.path is None:
                self._stream.write(line)
                self._stream.flush()
            elif self.max_bytes:
                with file_lock(self.path):
                    self._rotate_if_needed(len(line.encode("utf-8")))
                    self._append(line)
            else:
                self._append(line)

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)


class InstallEventLogger:
    """
    Structured logger for installation events.

    Every entry includes ``timestamp``, ``stage``, ``attempt``, ``message``
    and ``durationMs``; ``attempt`` and ``durationMs`` are null when they do
    not apply.
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        run_id: str = "",
        host: str = "",
        extra_labels: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize event logger.

        Args:
            sink: Destination for events (defaults to an in-memory sink)
            run_id: Identifier of the installation run
            host: Target machine identity
            extra_labels: Additional labels attached to every entry
        """
        self.sink = sink if sink is not None else MemoryEventSink()
        self.run_id = run_id
        self.host = host
        self.extra_labels = extra_labels or {}
        self._logger = _events_logger

    def emit(
        self,
        event: str,
        stage: str,
        message: str,
        attempt: Optional[int] = None,
        duration_ms: Optional[int] = None,
        level: str = "info",
        **extra_fields: Any,
    ) -> Dict[str, Any]:
        """Emit a structured log entry and return it."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "stage": stage,
            "attempt": attempt,
            "message": message,
            "durationMs": duration_ms,
            "run_id": self.run_id,
            "host": self.host,
        }
        entry.update({k: v for k, v in extra_fields.items() if v is not None})
        if self.extra_labels:
            entry["labels"] = self.extra_labels

        try:
            self.sink.write(entry)
        except OSError as e:
            # A full disk must not turn a successful install into a failed one.
            self._logger.warning(f"Event sink write failed: {e}")

        self._logger.debug(json.dumps(entry, default=str))
        return entry


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "info", fmt: str = "text", stream: Optional[IO[str]] = None) -> None:
    """
    Install a single stderr handler on the ``runnerinstall`` logger.

    Event entries are mirrored at debug level, so they only reach the
    console when ``level`` is debug.
    """
    root = logging.getLogger("runnerinstall")
    root.setLevel(_LEVELS.get(level, logging.INFO))

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    for handler in list(root.handlers):
        if getattr(handler, "_runnerinstall_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        ))
    setattr(handler, "_runnerinstall_handler", True)
    root.addHandler(handler)
