"""
runnerinstall - Resilient installation of CI runners onto fresh machines.

Waits for a newly provisioned instance to settle (cloud-init done, disk,
memory and network available), waits out package-manager lock contention,
installs with bounded exponential-backoff retries, verifies the runner
service and its registration, and leaves a structured event log, a
cross-run metrics artifact and a diagnostics snapshot on failure.

Example usage:
    from runnerinstall import InstallationOrchestrator, load_config

    config = load_config("/etc/runnerinstall.yaml", repository="octo/app")
    result = InstallationOrchestrator.from_config(config, pat=token).run()
    if not result.succeeded:
        print(result.error.code, result.error.remediation_hints)
"""

__version__ = "0.1.0"
__all__ = [
    "InstallationOrchestrator",
    "InstallationResult",
    "InstallerConfig",
    "load_config",
    "ErrorCode",
    "__version__",
]


# Lazy imports to avoid loading psutil/httpx/OTel at import time
def __getattr__(name: str):
    if name == "InstallationOrchestrator":
        from runnerinstall.orchestrator import InstallationOrchestrator
        return InstallationOrchestrator
    if name == "InstallationResult":
        from runnerinstall.orchestrator import InstallationResult
        return InstallationResult
    if name == "InstallerConfig":
        from runnerinstall.config import InstallerConfig
        return InstallerConfig
    if name == "load_config":
        from runnerinstall.config import load_config
        return load_config
    if name == "ErrorCode":
        from runnerinstall.contracts.errors import ErrorCode
        return ErrorCode
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
