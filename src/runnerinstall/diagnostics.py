"""
Failure diagnostics.

When a run fails nobody is watching the machine, so the failure report
has to carry everything an operator would have looked at: system facts,
resource figures, package-manager activity, service state, log tails and
network reachability.

Collection is fail-soft. Every section is gathered independently; a
section whose collector raises is recorded as ``"unavailable"`` with the
error message, and ``collect`` itself never raises.
"""

from __future__ import annotations

import logging
import os
import platform
import socket
import time
from collections import deque
from glob import glob
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import psutil

from runnerinstall.command import CommandRunner
from runnerinstall.contracts.timeouts import (
    DEFAULT_NETWORK_ENDPOINTS,
    DIAGNOSTICS_LOG_LINES,
    NETWORK_CHECK_TIMEOUT_S,
)
from runnerinstall.models import UNAVAILABLE, DiagnosticsSnapshot, InstallationContext
from runnerinstall.probe import ProcessProbe, PsutilProcessProbe
from runnerinstall.readiness import parse_endpoint
from runnerinstall.runtime import Clock, SystemClock

logger = logging.getLogger(__name__)

Collector = Callable[[Optional[InstallationContext]], Any]

_MIB = 1024 * 1024

DEFAULT_LOG_FILES = (
    "/var/log/apt/history.log",
    "/var/log/dpkg.log",
    "/var/log/cloud-init-output.log",
)


def tail_file(path: str, lines: int) -> list:
    """Last ``lines`` lines of a text file."""
    with open(path, encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


def collect_system(_context: Optional[InstallationContext] = None) -> Dict[str, Any]:
    uname = platform.uname()
    info: Dict[str, Any] = {
        "hostname": socket.gethostname(),
        "os": uname.system,
        "kernel": uname.release,
        "architecture": uname.machine,
        "uptime_s": int(time.time() - psutil.boot_time()),
        "python": platform.python_version(),
    }
    if hasattr(os, "getloadavg"):
        info["load_average"] = list(os.getloadavg())
    try:
        info["os_release"] = platform.freedesktop_os_release().get("PRETTY_NAME")
    except OSError:
        pass
    return info


class DiagnosticsCollector:
    """
    Gathers a DiagnosticsSnapshot at the point of failure.

    Args:
        collectors: Section name -> collector; replaces the defaults entirely
        probe: Process probe for the processes section
        runner: Command runner for service queries
        disk_path: Filesystem reported in the resources section
        log_files: Log files tailed in the logs section
        runner_dir: Runner install dir; its ``_diag`` logs are tailed too
        log_lines: Lines captured per log file
        endpoints: host:port endpoints checked in the network section
        services: systemd units reported in the services section
        clock: Time source for the snapshot timestamp
    """

    def __init__(
        self,
        collectors: Optional[Dict[str, Collector]] = None,
        probe: Optional[ProcessProbe] = None,
        runner: Optional[CommandRunner] = None,
        disk_path: str = "/",
        log_files: Sequence[str] = DEFAULT_LOG_FILES,
        runner_dir: Optional[str] = None,
        log_lines: int = DIAGNOSTICS_LOG_LINES,
        endpoints: Sequence[str] = DEFAULT_NETWORK_ENDPOINTS,
        network_timeout: float = NETWORK_CHECK_TIMEOUT_S,
        services: Optional[Sequence[str]] = None,
        clock: Optional[Clock] = None,
    ):
        self.probe = probe
        self._runner = runner or CommandRunner()
        self.disk_path = disk_path
        self.log_files = list(log_files)
        self.runner_dir = runner_dir
        self.log_lines = log_lines
        self.endpoints = list(endpoints)
        self.network_timeout = network_timeout
        if services is None:
            services = getattr(probe, "maintenance_services", ())
        self.services = list(services)
        self._clock = clock or SystemClock()

        if collectors is None:
            collectors = {
                "system": collect_system,
                "resources": self.collect_resources,
                "processes": self.collect_processes,
                "services": self.collect_services,
                "logs": self.collect_logs,
                "network": self.collect_network,
                "context": self.collect_context,
            }
        self.collectors = dict(collectors)

    def collect(self, context: Optional[InstallationContext] = None) -> DiagnosticsSnapshot:
        """Run every collector; never raises."""
        sections: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for name, collector in self.collectors.items():
            try:
                sections[name] = collector(context)
            except Exception as e:
                logger.warning(f"Diagnostics section '{name}' unavailable: {e}")
                sections[name] = UNAVAILABLE
                errors[name] = f"{type(e).__name__}: {e}"

        try:
            collected_at = self._clock.now()
        except Exception as e:
            logger.debug(f"Clock failed during diagnostics: {e}")
            return DiagnosticsSnapshot(sections=sections, errors=errors)
        return DiagnosticsSnapshot(collected_at=collected_at, sections=sections, errors=errors)

    def collect_resources(self, _context: Optional[InstallationContext] = None) -> Dict[str, Any]:
        disk = psutil.disk_usage(self.disk_path)
        memory = psutil.virtual_memory()
        return {
            "disk_path": self.disk_path,
            "disk_total_mb": disk.total // _MIB,
            "disk_free_mb": disk.free // _MIB,
            "disk_used_percent": disk.percent,
            "memory_total_mb": memory.total // _MIB,
            "memory_available_mb": memory.available // _MIB,
            "memory_used_percent": memory.percent,
        }

    def collect_processes(self, _context: Optional[InstallationContext] = None) -> Dict[str, Any]:
        if self.probe is None:
            raise RuntimeError("no process probe configured")
        status = self.probe.status()
        return {
            "busy": status.busy,
            "lock_holders": [str(h) for h in status.lock_holders],
        }

    def collect_services(self, _context: Optional[InstallationContext] = None) -> Dict[str, str]:
        states = {}
        for service in self.services:
            result = self._runner.run(["systemctl", "is-active", service], check=False)
            states[service] = result.stdout.strip() or result.stderr.strip() or "unknown"
        return states

    def _runner_diag_logs(self) -> list:
        if not self.runner_dir:
            return []
        logs = sorted(glob(os.path.join(self.runner_dir, "_diag", "*.log")), key=os.path.getmtime)
        return logs[-2:]

    def collect_logs(self, _context: Optional[InstallationContext] = None) -> Dict[str, Any]:
        logs: Dict[str, Any] = {}
        for path in self.log_files + self._runner_diag_logs():
            if not Path(path).exists():
                continue
            try:
                logs[path] = tail_file(path, self.log_lines)
            except OSError as e:
                logs[path] = f"{UNAVAILABLE}: {e}"
        return logs

    def collect_network(self, _context: Optional[InstallationContext] = None) -> Dict[str, Any]:
        reachability: Dict[str, bool] = {}
        resolution: Dict[str, Any] = {}
        for endpoint in self.endpoints:
            host, port = parse_endpoint(endpoint)
            try:
                resolution[host] = sorted({info[4][0] for info in socket.getaddrinfo(host, port)})
            except OSError as e:
                resolution[host] = f"{UNAVAILABLE}: {e}"
            try:
                with socket.create_connection((host, port), timeout=self.network_timeout):
                    reachability[endpoint] = True
            except OSError:
                reachability[endpoint] = False
        return {"reachable": reachability, "dns": resolution}

    def collect_context(self, context: Optional[InstallationContext] = None) -> Dict[str, Any]:
        if context is None:
            return {}
        return context.to_dict()

    @classmethod
    def from_config(
        cls,
        config,
        probe: Optional[PsutilProcessProbe] = None,
        runner: Optional[CommandRunner] = None,
        clock: Optional[Clock] = None,
    ) -> "DiagnosticsCollector":
        log_files = list(DEFAULT_LOG_FILES)
        for path in getattr(probe, "log_files", ()):
            if path not in log_files:
                log_files.append(path)
        return cls(
            probe=probe,
            runner=runner,
            disk_path=config.disk_path,
            log_files=log_files,
            runner_dir=config.runner_dir,
            log_lines=config.diagnostics_log_lines,
            endpoints=config.network_endpoints,
            network_timeout=config.network_timeout,
            clock=clock,
        )
