"""
Error code contracts.

Defines the canonical failure taxonomy for an installation run. Every
terminal failure maps to exactly one ErrorCode, which carries its
documented numeric code, the process exit status the CLI returns for it,
the error family it belongs to, and fixed remediation hints.

Hints are looked up by code, never composed from the failure message, so
two runs failing the same way always print the same guidance.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Tuple


class ErrorKind(str, Enum):
    """Error families, used for propagation decisions."""

    SYSTEM_NOT_READY = "SYSTEM_NOT_READY"
    PACKAGE_MANAGER_BUSY = "PACKAGE_MANAGER_BUSY"
    PACKAGE_INSTALL_FAILED = "PACKAGE_INSTALL_FAILED"
    SERVICE_VERIFICATION_FAILED = "SERVICE_VERIFICATION_FAILED"
    TRANSIENT = "TRANSIENT"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


class ErrorCode(str, Enum):
    """
    Canonical error codes for terminal installation failures.

    The string value is the symbolic name; use ``numeric_code`` for the
    documented number and ``exit_status`` for the process exit status.
    """

    SYSTEM_NOT_READY = "SYSTEM_NOT_READY"
    CLOUD_INIT_TIMEOUT = "CLOUD_INIT_TIMEOUT"
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"
    NETWORK_CONNECTIVITY = "NETWORK_CONNECTIVITY"
    UNSUPPORTED_OS = "UNSUPPORTED_OS"
    PACKAGE_MANAGER_BUSY = "PACKAGE_MANAGER_BUSY"
    PACKAGE_INSTALL_FAILED = "PACKAGE_INSTALL_FAILED"
    DEPENDENCY_MISSING = "DEPENDENCY_MISSING"
    DPKG_LOCK_TIMEOUT = "DPKG_LOCK_TIMEOUT"
    RUNNER_DOWNLOAD_FAILED = "RUNNER_DOWNLOAD_FAILED"
    RUNNER_CONFIG_FAILED = "RUNNER_CONFIG_FAILED"
    RUNNER_SERVICE_FAILED = "RUNNER_SERVICE_FAILED"
    GITHUB_AUTH_FAILED = "GITHUB_AUTH_FAILED"
    GITHUB_REGISTRATION_FAILED = "GITHUB_REGISTRATION_FAILED"
    INSTALLATION_CANCELLED = "INSTALLATION_CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def numeric_code(self) -> int:
        return _CODE_TABLE[self][0]

    @property
    def exit_status(self) -> int:
        return _CODE_TABLE[self][1]

    @property
    def kind(self) -> ErrorKind:
        return _CODE_TABLE[self][2]

    @property
    def remediation_hints(self) -> Tuple[str, ...]:
        return REMEDIATION_HINTS.get(self, REMEDIATION_HINTS[ErrorCode.UNKNOWN_ERROR])

    @classmethod
    def from_numeric(cls, numeric: int) -> "ErrorCode":
        for code, (number, _, _) in _CODE_TABLE.items():
            if number == numeric:
                return code
        raise ValueError(f"Unknown numeric error code: {numeric}")

    @classmethod
    def from_exit_status(cls, status: int) -> "ErrorCode":
        for code, (_, exit_status, _) in _CODE_TABLE.items():
            if exit_status == status:
                return code
        raise ValueError(f"Unknown exit status: {status}")


# code -> (numeric code, exit status, family)
_CODE_TABLE: Dict[ErrorCode, Tuple[int, int, ErrorKind]] = {
    ErrorCode.SYSTEM_NOT_READY: (100, 10, ErrorKind.SYSTEM_NOT_READY),
    ErrorCode.CLOUD_INIT_TIMEOUT: (101, 11, ErrorKind.SYSTEM_NOT_READY),
    ErrorCode.INSUFFICIENT_RESOURCES: (102, 12, ErrorKind.SYSTEM_NOT_READY),
    ErrorCode.NETWORK_CONNECTIVITY: (103, 13, ErrorKind.SYSTEM_NOT_READY),
    ErrorCode.UNSUPPORTED_OS: (104, 14, ErrorKind.SYSTEM_NOT_READY),
    ErrorCode.PACKAGE_MANAGER_BUSY: (200, 20, ErrorKind.PACKAGE_MANAGER_BUSY),
    ErrorCode.PACKAGE_INSTALL_FAILED: (201, 21, ErrorKind.PACKAGE_INSTALL_FAILED),
    ErrorCode.DEPENDENCY_MISSING: (202, 22, ErrorKind.PACKAGE_INSTALL_FAILED),
    ErrorCode.DPKG_LOCK_TIMEOUT: (203, 23, ErrorKind.PACKAGE_MANAGER_BUSY),
    ErrorCode.RUNNER_DOWNLOAD_FAILED: (300, 30, ErrorKind.PACKAGE_INSTALL_FAILED),
    ErrorCode.RUNNER_CONFIG_FAILED: (301, 31, ErrorKind.PACKAGE_INSTALL_FAILED),
    ErrorCode.RUNNER_SERVICE_FAILED: (302, 32, ErrorKind.SERVICE_VERIFICATION_FAILED),
    ErrorCode.GITHUB_AUTH_FAILED: (303, 33, ErrorKind.SERVICE_VERIFICATION_FAILED),
    ErrorCode.GITHUB_REGISTRATION_FAILED: (304, 34, ErrorKind.SERVICE_VERIFICATION_FAILED),
    ErrorCode.INSTALLATION_CANCELLED: (900, 90, ErrorKind.CANCELLED),
    ErrorCode.UNKNOWN_ERROR: (999, 99, ErrorKind.UNKNOWN),
}


_RESOURCE_HINTS = (
    "Check disk space with 'df -h' and free space with 'sudo apt-get clean' and 'sudo apt-get autoremove'.",
    "Check memory usage with 'free -h' and system load with 'top'.",
    "Consider a larger instance type if resources are consistently low.",
)

_NETWORK_HINTS = (
    "Test basic connectivity: 'ping -c 3 8.8.8.8'.",
    "Test DNS resolution: 'nslookup github.com'.",
    "Test GitHub connectivity: 'curl -I https://api.github.com'.",
    "Ensure outbound HTTPS (443) and HTTP (80) are allowed by security groups and firewalls.",
    "Check GitHub service status at https://www.githubstatus.com/.",
)

_PACKAGE_MANAGER_HINTS = (
    "Check what holds the locks: 'sudo lsof /var/lib/dpkg/lock*'.",
    "Check running package processes: \"ps aux | grep -E '(apt|dpkg|unattended-upgrade)'\".",
    "Wait for automatic updates to finish: 'sudo systemctl status unattended-upgrades'.",
    "Only if the processes are stuck: stop them, then run 'sudo dpkg --configure -a' and 'sudo apt-get update'.",
)

_PACKAGE_INSTALL_HINTS = (
    "Re-run the installation; install steps are safe to repeat.",
    "Repair an interrupted dpkg run with 'sudo dpkg --configure -a'.",
    "Refresh package lists with 'sudo apt-get update' and check the apt sources.",
    "Inspect '/var/log/apt/term.log' and '/var/log/dpkg.log' for the failing package.",
)

_AUTH_HINTS = (
    "Verify the token: 'curl -H \"Authorization: token <PAT>\" https://api.github.com/user'.",
    "Ensure the token has the 'repo' scope (and organization permissions for organization repositories).",
    "Confirm you have admin permissions on the repository and Actions are enabled.",
    "Generate a new token at https://github.com/settings/tokens if it has expired.",
)

REMEDIATION_HINTS: Dict[ErrorCode, Tuple[str, ...]] = {
    ErrorCode.SYSTEM_NOT_READY: (
        "Check cloud-init status: 'cloud-init status --long'.",
        *_RESOURCE_HINTS[:2],
        _NETWORK_HINTS[0],
        "Re-run the installation once the instance has finished booting.",
    ),
    ErrorCode.CLOUD_INIT_TIMEOUT: (
        "Check cloud-init status: 'cloud-init status --long'.",
        "Monitor cloud-init logs: 'tail -f /var/log/cloud-init-output.log'.",
        "Check for running processes: 'ps aux | grep cloud-init'.",
        "If cloud-init is stuck: 'sudo cloud-init clean --reboot'.",
        "Increase the readiness timeout if the image runs long first-boot scripts.",
    ),
    ErrorCode.INSUFFICIENT_RESOURCES: _RESOURCE_HINTS,
    ErrorCode.NETWORK_CONNECTIVITY: _NETWORK_HINTS,
    ErrorCode.UNSUPPORTED_OS: (
        "Use a Debian/Ubuntu or RHEL/Fedora family image.",
        "Check '/etc/os-release' for the detected ID and ID_LIKE values.",
    ),
    ErrorCode.PACKAGE_MANAGER_BUSY: _PACKAGE_MANAGER_HINTS,
    ErrorCode.DPKG_LOCK_TIMEOUT: _PACKAGE_MANAGER_HINTS,
    ErrorCode.PACKAGE_INSTALL_FAILED: _PACKAGE_INSTALL_HINTS,
    ErrorCode.DEPENDENCY_MISSING: (
        "Check the package name exists for this distribution: 'apt-cache policy <package>'.",
        "Enable the 'universe' component on Ubuntu if the package lives there.",
        "Refresh package lists with 'sudo apt-get update'.",
    ),
    ErrorCode.RUNNER_DOWNLOAD_FAILED: (
        "Check access to https://github.com/actions/runner/releases.",
        *_NETWORK_HINTS[1:4],
        "Pin a specific runner version if the latest-release lookup is rate limited.",
    ),
    ErrorCode.RUNNER_CONFIG_FAILED: (
        "Registration tokens expire after one hour; request a new one and re-run.",
        "Remove a stale configuration with './config.sh remove --token <token>' in the runner directory.",
        "Check the runner diagnostics under '<runner_dir>/_diag'.",
    ),
    ErrorCode.RUNNER_SERVICE_FAILED: (
        "Check the service: 'sudo ./svc.sh status' in the runner directory.",
        "Inspect the service journal: 'sudo journalctl -u actions.runner.*'.",
        "Reinstall the service: 'sudo ./svc.sh uninstall && sudo ./svc.sh install && sudo ./svc.sh start'.",
    ),
    ErrorCode.GITHUB_AUTH_FAILED: _AUTH_HINTS,
    ErrorCode.GITHUB_REGISTRATION_FAILED: (
        "Check the runner list under the repository Settings > Actions > Runners.",
        "Confirm the runner name matches the one passed to the installer.",
        *_AUTH_HINTS[1:3],
    ),
    ErrorCode.INSTALLATION_CANCELLED: (
        "The run was cancelled; re-run the installation when ready.",
        "Install steps are idempotent; a fresh run starts again from readiness validation.",
    ),
    ErrorCode.UNKNOWN_ERROR: (
        "Check system logs: 'sudo journalctl -xe'.",
        "Verify system status: 'systemctl status'.",
        "Check available resources: 'df -h && free -h'.",
        "Test network connectivity: 'ping -c 3 github.com'.",
        "Collect diagnostics with 'runnerinstall diagnose' and re-run with '--log-level debug'.",
    ),
}


def code_table() -> List[Dict[str, object]]:
    """Return the documented code table, ordered by numeric code."""
    rows = []
    for code in sorted(ErrorCode, key=lambda c: c.numeric_code):
        rows.append({
            "code": code.value,
            "numeric": code.numeric_code,
            "exit_status": code.exit_status,
            "kind": code.kind.value,
        })
    return rows
