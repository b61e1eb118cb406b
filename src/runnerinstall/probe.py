"""
Package-manager process and lock inspection.

A ProcessProbe answers one question per call: is the package subsystem
busy right now, and who is holding it? Each OS family gets its own probe
(process names, lock files, maintenance services, package commands);
``probe_for_platform`` picks one from ``/etc/os-release``.

Lock holders are found the way ``lsof`` would: by scanning open files of
every process for the family's lock files. Processes that exit or deny
access during the scan are skipped.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple

import psutil

from runnerinstall.command import CommandRunner
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.errors import CommandError, FatalError, InstallerError, TransientError
from runnerinstall.models import LockHolder, PackageManagerStatus
from runnerinstall.runtime import Clock, SystemClock

logger = logging.getLogger(__name__)

__all__ = [
    "ProcessProbe",
    "PsutilProcessProbe",
    "AptProcessProbe",
    "DnfProcessProbe",
    "probe_for_platform",
    "read_os_release",
]


class ProcessProbe(Protocol):
    """Inspects the local OS for package-manager activity."""

    def status(self) -> PackageManagerStatus:
        ...


class PsutilProcessProbe:
    """
    Base probe built on psutil.

    Subclasses describe an OS family through class attributes; the
    detection logic is shared.
    """

    family = "generic"
    process_names: FrozenSet[str] = frozenset()
    lock_files: Tuple[str, ...] = ()
    maintenance_services: Tuple[str, ...] = ()

    update_command: Tuple[str, ...] = ()
    install_command: Tuple[str, ...] = ()
    lock_error_markers: Tuple[str, ...] = ()
    missing_package_markers: Tuple[str, ...] = ()
    log_files: Tuple[str, ...] = ()

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        clock: Optional[Clock] = None,
        check_services: bool = True,
    ):
        self._runner = runner or CommandRunner()
        self._clock = clock or SystemClock()
        self._check_services = check_services

    def status(self) -> PackageManagerStatus:
        holders: Dict[Tuple[Optional[int], str], LockHolder] = {}
        for holder in self.find_lock_holders() + self.find_processes() + self.find_active_services():
            holders.setdefault((holder.pid, holder.resource), holder)

        ordered = tuple(sorted(holders.values(), key=lambda h: (h.pid is None, h.pid or 0, h.resource)))
        if ordered:
            logger.debug(f"{self.family} package manager busy: {', '.join(str(h) for h in ordered)}")
        return PackageManagerStatus(
            busy=bool(ordered),
            lock_holders=ordered,
            checked_at=self._clock.now(),
        )

    def _matches(self, name: str, cmdline: List[str]) -> bool:
        if name in self.process_names:
            return True
        # Script-based tools (unattended-upgrade) run under an interpreter.
        for arg in cmdline[:2]:
            if os.path.basename(arg) in self.process_names:
                return True
        return False

    def find_processes(self) -> List[LockHolder]:
        """Running package-management processes, excluding this one."""
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                info = proc.info
                if info["pid"] == own_pid:
                    continue
                name = info.get("name") or ""
                cmdline = info.get("cmdline") or []
                if self._matches(name, cmdline):
                    found.append(LockHolder(pid=info["pid"], command=name, resource=f"{name} process"))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def find_lock_holders(self) -> List[LockHolder]:
        """Processes with one of the family's lock files open."""
        existing = {p for p in self.lock_files if os.path.exists(p)}
        if not existing:
            return []

        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                if proc.info["pid"] == own_pid:
                    continue
                for opened in proc.open_files():
                    if opened.path in existing:
                        found.append(LockHolder(
                            pid=proc.info["pid"],
                            command=proc.info.get("name") or "unknown",
                            resource=opened.path,
                        ))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def find_active_services(self) -> List[LockHolder]:
        """Maintenance services that are running right now."""
        if not self._check_services:
            return []
        active = []
        for service in self.maintenance_services:
            try:
                result = self._runner.run(
                    ["systemctl", "is-active", "--quiet", service],
                    check=False,
                )
            except InstallerError as e:
                logger.debug(f"Cannot query {service}: {e}")
                continue
            if result.ok:
                active.append(LockHolder(pid=None, command=service, resource="systemd service"))
        return active

    def classify_failure(self, error: CommandError) -> InstallerError:
        """Map a failed package command to a transient or fatal error."""
        output = f"{error.stdout}\n{error.stderr}"
        if any(marker in output for marker in self.missing_package_markers):
            return FatalError(error.message, ErrorCode.DEPENDENCY_MISSING)
        if any(marker in output for marker in self.lock_error_markers):
            return TransientError(error.message, ErrorCode.DPKG_LOCK_TIMEOUT)
        return error


class AptProcessProbe(PsutilProcessProbe):
    """Debian/Ubuntu family."""

    family = "debian"
    process_names = frozenset({
        "apt",
        "apt-get",
        "aptitude",
        "dpkg",
        "unattended-upgrade",
        "unattended-upgrades",
        "unattended-upgr",
        "packagekitd",
    })
    lock_files = (
        "/var/lib/dpkg/lock",
        "/var/lib/dpkg/lock-frontend",
        "/var/cache/apt/archives/lock",
        "/var/lib/apt/lists/lock",
    )
    # Oneshot units: only active while a run is in progress.
    maintenance_services = ("apt-daily.service", "apt-daily-upgrade.service")

    update_command = ("apt-get", "update", "-y")
    install_command = ("apt-get", "install", "-y", "--no-install-recommends")
    lock_error_markers = (
        "Could not get lock",
        "Unable to acquire the dpkg frontend lock",
        "Unable to lock directory",
        "is another process using it",
        "dpkg was interrupted",
    )
    missing_package_markers = (
        "Unable to locate package",
        "has no installation candidate",
    )
    log_files = (
        "/var/log/apt/history.log",
        "/var/log/dpkg.log",
        "/var/log/cloud-init-output.log",
    )


class DnfProcessProbe(PsutilProcessProbe):
    """RHEL/Fedora family."""

    family = "rhel"
    process_names = frozenset({"dnf", "yum", "rpm", "packagekitd", "dnf-automatic"})
    lock_files = (
        "/var/run/yum.pid",
        "/var/lib/rpm/.rpm.lock",
        "/var/lib/dnf/rpmdb_lock.pid",
    )
    maintenance_services = ("dnf-makecache.service", "dnf-automatic.service")

    update_command = ("dnf", "makecache", "-y")
    install_command = ("dnf", "install", "-y")
    lock_error_markers = (
        "Waiting for process with pid",
        "Another app is currently holding the yum lock",
        "cannot get a lock",
    )
    missing_package_markers = (
        "No match for argument",
        "Unable to find a match",
    )
    log_files = (
        "/var/log/dnf.log",
        "/var/log/dnf.rpm.log",
        "/var/log/cloud-init-output.log",
    )


_FAMILIES = {
    "debian": AptProcessProbe,
    "ubuntu": AptProcessProbe,
    "rhel": DnfProcessProbe,
    "fedora": DnfProcessProbe,
    "centos": DnfProcessProbe,
    "amzn": DnfProcessProbe,
}


def read_os_release(path: str = "/etc/os-release") -> Dict[str, str]:
    """Parse an os-release file into a dict."""
    values: Dict[str, str] = {}
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key] = value.strip().strip('"').strip("'")
    return values


def probe_for_platform(os_release_path: str = "/etc/os-release", **kwargs) -> PsutilProcessProbe:
    """Return the probe for this machine's OS family."""
    try:
        release = read_os_release(os_release_path)
    except OSError as e:
        raise FatalError(f"Cannot determine OS family from {os_release_path}: {e}", ErrorCode.UNSUPPORTED_OS)

    candidates = [release.get("ID", "")] + release.get("ID_LIKE", "").split()
    for candidate in candidates:
        probe_cls = _FAMILIES.get(candidate.lower())
        if probe_cls is not None:
            logger.debug(f"Using {probe_cls.__name__} for OS '{release.get('ID')}'")
            return probe_cls(**kwargs)

    raise FatalError(
        f"Unsupported OS family: ID={release.get('ID')!r} ID_LIKE={release.get('ID_LIKE')!r}",
        ErrorCode.UNSUPPORTED_OS,
    )
