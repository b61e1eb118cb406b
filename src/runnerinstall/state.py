"""
File locking and atomic JSON persistence.

The metrics artifact is shared by every installer run on a machine, and
runs may overlap (a retried provisioning job next to a manual one). Writers
take an exclusive lock on a sidecar ``.lock`` file and replace the artifact
atomically, so readers never see a half-written file.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import IO, Any, Dict, Generator, Optional

logger = logging.getLogger(__name__)


# Cross-platform file locking
if sys.platform == "win32":
    import msvcrt

    def _lock_file(f: IO, exclusive: bool = True) -> None:
        """Lock file on Windows."""
        msvcrt.locking(f.fileno(), msvcrt.LK_LOCK if exclusive else msvcrt.LK_RLCK, 1)

    def _unlock_file(f: IO) -> None:
        """Unlock file on Windows."""
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
else:
    import fcntl

    def _lock_file(f: IO, exclusive: bool = True) -> None:
        """Lock file on Unix."""
        fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)

    def _unlock_file(f: IO) -> None:
        """Unlock file on Unix."""
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


@contextlib.contextmanager
def file_lock(path: Path, exclusive: bool = True) -> Generator[IO, None, None]:
    """
    Hold a lock on ``<path>.lock`` for the duration of the block.

    Args:
        path: Path to the file being protected
        exclusive: Exclusive (write) lock if True, shared (read) lock otherwise

    Example:
        with file_lock(metrics_file):
            data = read_json(metrics_file)
            data["successCount"] += 1
            atomic_write_json(metrics_file, data)
    """
    path = Path(path)
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    lock_file = open(lock_path, "r+")
    try:
        _lock_file(lock_file, exclusive)
        yield lock_file
    finally:
        try:
            _unlock_file(lock_file)
        except OSError as e:
            logger.debug(f"Unlock of {lock_path} failed: {e}")
        finally:
            lock_file.close()


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    """
    Read a JSON object from ``path``.

    Returns None when the file is missing. A corrupt file is logged and
    treated as missing so the next write starts fresh.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt JSON file {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: expected a JSON object")
        return None
    return data


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
