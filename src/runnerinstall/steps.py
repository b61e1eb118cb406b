"""
Install and verification steps.

Each step is one idempotent operation the orchestrator runs through the
RetryExecutor: a second call after a partial failure must finish the job,
not fail because the first call got halfway. Steps raise TransientError
for failures worth retrying and FatalError for the ones that are not.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import socket
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import httpx

from runnerinstall.command import NONINTERACTIVE_ENV, CommandRunner
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.metrics import Stage
from runnerinstall.contracts.timeouts import HTTP_DOWNLOAD_TIMEOUT_S, SUBPROCESS_INSTALL_TIMEOUT_S
from runnerinstall.control_plane import ControlPlane, RunnerRelease, runner_release
from runnerinstall.errors import CommandError, FatalError, TransientError
from runnerinstall.probe import PsutilProcessProbe

logger = logging.getLogger(__name__)

_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}


def runner_arch(machine: Optional[str] = None) -> str:
    """Runner release architecture for this machine."""
    machine = (machine or platform.machine()).lower()
    try:
        return _ARCH[machine]
    except KeyError:
        raise FatalError(f"No runner release for architecture {machine!r}", ErrorCode.UNSUPPORTED_OS)


class InstallStep:
    """
    Base class for steps.

    Subclasses set ``step_id`` and ``failure_code`` and implement ``run``.
    ``uses_package_manager`` marks steps that take the package lock, so
    the orchestrator waits for contention before retrying them.
    """

    step_id = "step"
    description = ""
    failure_code = ErrorCode.PACKAGE_INSTALL_FAILED
    stage = Stage.INSTALLING.value
    uses_package_manager = False

    def run(self) -> Any:
        raise NotImplementedError

    def __call__(self) -> Any:
        return self.run()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.step_id}>"


class _PackageStep(InstallStep):
    uses_package_manager = True

    def __init__(self, runner: CommandRunner, probe: PsutilProcessProbe):
        self.runner = runner
        self.probe = probe

    def _run_package_command(self, argv: Sequence[str], context: str) -> None:
        try:
            self.runner.run(
                argv,
                env=NONINTERACTIVE_ENV,
                timeout=SUBPROCESS_INSTALL_TIMEOUT_S,
                privileged=True,
                context=context,
            )
        except CommandError as e:
            raise self.probe.classify_failure(e) from e


class UpdatePackageIndex(_PackageStep):
    step_id = "update_package_index"
    description = "Refresh package index"

    def run(self) -> None:
        self._run_package_command(self.probe.update_command, "Refreshing package index")


class InstallPackages(_PackageStep):
    step_id = "install_packages"
    description = "Install OS packages"

    def __init__(self, runner: CommandRunner, probe: PsutilProcessProbe, packages: Sequence[str]):
        super().__init__(runner, probe)
        self.packages = list(packages)

    def run(self) -> None:
        if not self.packages:
            logger.info("No OS packages requested")
            return
        self._run_package_command(
            list(self.probe.install_command) + self.packages,
            f"Installing {', '.join(self.packages)}",
        )


def _extract_all(tar: tarfile.TarFile, dest: Path) -> None:
    """Extract ``tar`` into ``dest``, refusing members that land outside it."""
    if hasattr(tarfile, "data_filter"):
        tar.extractall(dest, filter="data")
        return
    # Interpreters without extraction filters
    root = dest.resolve()
    for member in tar.getmembers():
        target = (dest / member.name).resolve()
        if target != root and root not in target.parents:
            raise tarfile.TarError(f"Archive member outside the runner directory: {member.name}")
        if member.issym() or member.islnk():
            link = (target.parent / member.linkname).resolve()
            if link != root and root not in link.parents:
                raise tarfile.TarError(f"Archive link outside the runner directory: {member.name}")
    tar.extractall(dest)


class DownloadRunner(InstallStep):
    """Download and unpack the runner tarball into ``runner_dir``."""

    step_id = "download_runner"
    description = "Download runner"
    failure_code = ErrorCode.RUNNER_DOWNLOAD_FAILED

    def __init__(
        self,
        runner_dir: str,
        resolve_release: Callable[[], RunnerRelease],
        runner: Optional[CommandRunner] = None,
        runner_user: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.runner_dir = Path(runner_dir)
        self.resolve_release = resolve_release
        self.runner = runner or CommandRunner()
        self.runner_user = runner_user
        self.transport = transport

    def is_installed(self) -> bool:
        return (self.runner_dir / "config.sh").exists()

    def run(self) -> Optional[str]:
        if self.is_installed():
            logger.info(f"Runner already present in {self.runner_dir}, skipping download")
            return None

        release = self.resolve_release()
        logger.info(f"Downloading runner v{release.version} from {release.download_url}")
        self.runner_dir.mkdir(parents=True, exist_ok=True)

        fd, archive = tempfile.mkstemp(prefix="actions-runner-", suffix=".tar.gz", dir=self.runner_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                self._download(release.download_url, f)
            self._extract(Path(archive))
        finally:
            Path(archive).unlink(missing_ok=True)

        if self.runner_user:
            self.runner.run(
                ["chown", "-R", f"{self.runner_user}:", str(self.runner_dir)],
                privileged=True,
                context=f"Handing {self.runner_dir} to {self.runner_user}",
            )
        logger.info(f"Runner v{release.version} unpacked to {self.runner_dir}")
        return release.version

    def _download(self, url: str, f) -> None:
        try:
            with httpx.Client(
                timeout=HTTP_DOWNLOAD_TIMEOUT_S,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        raise FatalError(f"Runner release not found: {url}", ErrorCode.RUNNER_DOWNLOAD_FAILED)
                    if response.status_code >= 400:
                        raise TransientError(
                            f"Runner download returned HTTP {response.status_code}: {url}",
                            ErrorCode.RUNNER_DOWNLOAD_FAILED,
                        )
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.TransportError as e:
            raise TransientError(f"Runner download failed: {e}", ErrorCode.RUNNER_DOWNLOAD_FAILED)

    def _extract(self, archive: Path) -> None:
        staging = Path(tempfile.mkdtemp(prefix=".unpack-", dir=self.runner_dir))
        try:
            with tarfile.open(archive, "r:gz") as tar:
                _extract_all(tar, staging)
        except (tarfile.TarError, EOFError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise TransientError(f"Runner archive is corrupt: {e}", ErrorCode.RUNNER_DOWNLOAD_FAILED)

        # config.sh is moved last so a partial unpack is never taken as installed.
        entries = sorted(staging.iterdir(), key=lambda p: p.name == "config.sh")
        for entry in entries:
            target = self.runner_dir / entry.name
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            entry.rename(target)
        staging.rmdir()


class InstallRunnerDependencies(InstallStep):
    """Run the runner's own dependency installer (``bin/installdependencies.sh``)."""

    step_id = "install_runner_dependencies"
    description = "Install runner dependencies"
    failure_code = ErrorCode.DEPENDENCY_MISSING
    uses_package_manager = True

    def __init__(self, runner: CommandRunner, probe: PsutilProcessProbe, runner_dir: str):
        self.runner = runner
        self.probe = probe
        self.runner_dir = Path(runner_dir)

    def run(self) -> None:
        script = self.runner_dir / "bin" / "installdependencies.sh"
        if not script.exists():
            logger.warning(f"{script} not found, skipping runner dependency installation")
            return
        try:
            self.runner.run(
                [str(script)],
                cwd=str(self.runner_dir),
                env=NONINTERACTIVE_ENV,
                timeout=SUBPROCESS_INSTALL_TIMEOUT_S,
                privileged=True,
                context="Installing runner dependencies",
            )
        except CommandError as e:
            raise self.probe.classify_failure(e) from e


# Files config.sh writes when it registers a runner
RUNNER_CONFIG_FILES = (".runner", ".credentials", ".credentials_rsaparams")


def _as_runner_user(argv: List[str], runner_user: Optional[str]) -> List[str]:
    if runner_user and hasattr(os, "geteuid") and os.geteuid() == 0:
        return ["sudo", "-u", runner_user, "-E", "--"] + argv
    return argv


class ConfigureRunner(InstallStep):
    """Register the runner with ``config.sh``, replacing any previous registration."""

    step_id = "configure_runner"
    description = "Configure runner"
    failure_code = ErrorCode.RUNNER_CONFIG_FAILED

    def __init__(
        self,
        runner: CommandRunner,
        runner_dir: str,
        token_source: Callable[[], str],
        url: str,
        name: str,
        labels: Sequence[str],
        runner_user: Optional[str] = None,
        remove_token_source: Optional[Callable[[], str]] = None,
    ):
        self.runner = runner
        self.runner_dir = Path(runner_dir)
        self.token_source = token_source
        self.url = url
        self.name = name
        self.labels = list(labels)
        self.runner_user = runner_user
        self.remove_token_source = remove_token_source

    def _env(self) -> dict:
        if not self.runner_user and hasattr(os, "geteuid") and os.geteuid() == 0:
            return {"RUNNER_ALLOW_RUNASROOT": "1"}
        return {}

    def _remove_previous(self, config_sh: str, registration_token: str) -> None:
        """Unregister a previous configuration, or drop its local files when that fails."""
        logger.info("Removing existing runner configuration")
        token = registration_token
        if self.remove_token_source is not None:
            try:
                token = self.remove_token_source()
            except TransientError as e:
                logger.warning(f"Could not obtain a remove token, using the registration token: {e}")

        result = self.runner.run(
            _as_runner_user([config_sh, "remove", "--token", token], self.runner_user),
            check=False,
            cwd=str(self.runner_dir),
            env=self._env(),
            context="Removing previous runner configuration",
        )
        if result.ok:
            return

        logger.warning(
            f"config.sh remove exited {result.returncode}; deleting local runner configuration files"
        )
        for name in RUNNER_CONFIG_FILES:
            path = self.runner_dir / name
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise TransientError(f"Cannot remove stale runner file {path}: {e}", self.failure_code)

    def run(self) -> None:
        # Fresh token per attempt; registration tokens expire after an hour.
        token = self.token_source()
        config_sh = str(self.runner_dir / "config.sh")

        if (self.runner_dir / ".runner").exists():
            self._remove_previous(config_sh, token)

        self.runner.run(
            _as_runner_user([
                config_sh,
                "--url", self.url,
                "--token", token,
                "--name", self.name,
                "--labels", ",".join(self.labels),
                "--work", "_work",
                "--unattended",
                "--replace",
            ], self.runner_user),
            cwd=str(self.runner_dir),
            env=self._env(),
            timeout=300,
            context=f"Configuring runner {self.name} for {self.url}",
        )
        logger.info(f"Runner {self.name} configured for {self.url}")


class InstallRunnerService(InstallStep):
    """Install and start the runner as a systemd service via ``svc.sh``."""

    step_id = "install_runner_service"
    description = "Install runner service"
    failure_code = ErrorCode.RUNNER_SERVICE_FAILED

    def __init__(self, runner: CommandRunner, runner_dir: str, runner_user: Optional[str] = None):
        self.runner = runner
        self.runner_dir = Path(runner_dir)
        self.runner_user = runner_user

    def run(self) -> None:
        svc = str(self.runner_dir / "svc.sh")
        cwd = str(self.runner_dir)
        # Start from a clean slate; both fail harmlessly when nothing is installed.
        self.runner.run([svc, "stop"], check=False, cwd=cwd, privileged=True)
        self.runner.run([svc, "uninstall"], check=False, cwd=cwd, privileged=True)

        install = [svc, "install"] + ([self.runner_user] if self.runner_user else [])
        self.runner.run(install, cwd=cwd, privileged=True, context="Installing runner service")
        self.runner.run([svc, "start"], cwd=cwd, privileged=True, context="Starting runner service")


class VerifyRunnerService(InstallStep):
    """Succeeds once ``svc.sh status`` reports the service active (running)."""

    step_id = "verify_runner_service"
    description = "Verify runner service"
    failure_code = ErrorCode.RUNNER_SERVICE_FAILED
    stage = Stage.VERIFYING.value

    def __init__(self, runner: CommandRunner, runner_dir: str):
        self.runner = runner
        self.runner_dir = Path(runner_dir)

    def run(self) -> None:
        svc = self.runner_dir / "svc.sh"
        if not svc.exists():
            raise FatalError(f"{svc} missing from runner installation", ErrorCode.RUNNER_SERVICE_FAILED)
        result = self.runner.run([str(svc), "status"], check=False, cwd=str(self.runner_dir), privileged=True)
        if "active (running)" not in result.stdout:
            raise TransientError(
                f"Runner service is not active: {result.stdout.strip()[-500:] or result.stderr.strip()[-500:]}",
                ErrorCode.RUNNER_SERVICE_FAILED,
            )
        logger.info("Runner service is active and running")


class VerifyRegistration(InstallStep):
    """
    Confirm the runner is registered and return its identity.

    With a control plane the runner must be listed and online. Without
    one, the local ``.runner`` file written by ``config.sh`` is the
    evidence of registration.
    """

    step_id = "verify_registration"
    description = "Verify runner registration"
    failure_code = ErrorCode.GITHUB_REGISTRATION_FAILED
    stage = Stage.VERIFYING.value

    def __init__(self, runner_name: str, runner_dir: str, control_plane: Optional[ControlPlane] = None):
        self.runner_name = runner_name
        self.runner_dir = Path(runner_dir)
        self.control_plane = control_plane

    def run(self) -> str:
        if self.control_plane is None:
            return self._local_identity()

        registration = self.control_plane.find_runner(self.runner_name)
        if registration is None:
            raise TransientError(
                f"Runner {self.runner_name} is not registered yet",
                ErrorCode.GITHUB_REGISTRATION_FAILED,
            )
        if not registration.online:
            raise TransientError(
                f"Runner {self.runner_name} is registered but {registration.status}",
                ErrorCode.GITHUB_REGISTRATION_FAILED,
            )
        logger.info(f"Runner {registration.name} (id {registration.id}) is online")
        return f"{registration.name}#{registration.id}"

    def _local_identity(self) -> str:
        marker = self.runner_dir / ".runner"
        try:
            data = json.loads(marker.read_text(encoding="utf-8-sig"))
        except FileNotFoundError:
            raise TransientError(f"{marker} not found; runner is not configured", ErrorCode.GITHUB_REGISTRATION_FAILED)
        except (json.JSONDecodeError, OSError) as e:
            raise TransientError(f"Cannot read {marker}: {e}", ErrorCode.GITHUB_REGISTRATION_FAILED)
        name = data.get("agentName") or self.runner_name
        agent_id = data.get("agentId")
        return f"{name}#{agent_id}" if agent_id is not None else name


def release_resolver(
    version: str,
    control_plane: Optional[ControlPlane] = None,
    api_url: str = "https://api.github.com",
    arch: Optional[str] = None,
) -> Callable[[], RunnerRelease]:
    """Build the callable DownloadRunner uses to pick a release."""

    def resolve() -> RunnerRelease:
        runner_arch_name = arch or runner_arch()
        if version != "latest":
            return runner_release(version, arch=runner_arch_name)
        if control_plane is not None:
            return control_plane.latest_runner_release(arch=runner_arch_name)
        # Anonymous lookup is enough for public release metadata.
        try:
            response = httpx.get(f"{api_url}/repos/actions/runner/releases/latest", timeout=30.0)
        except httpx.TransportError as e:
            raise TransientError(f"Cannot resolve latest runner release: {e}", ErrorCode.RUNNER_DOWNLOAD_FAILED)
        if response.status_code >= 400:
            raise TransientError(
                f"Latest runner release lookup returned HTTP {response.status_code}",
                ErrorCode.RUNNER_DOWNLOAD_FAILED,
            )
        tag = str(response.json().get("tag_name", "")).lstrip("v")
        if not tag:
            raise TransientError("Latest runner release has no tag", ErrorCode.RUNNER_DOWNLOAD_FAILED)
        return runner_release(tag, arch=runner_arch_name)

    return resolve


def default_runner_name() -> str:
    return socket.gethostname().split(".")[0]


def build_install_steps(
    config,
    runner: CommandRunner,
    probe: PsutilProcessProbe,
    token_source: Callable[[], str],
    registration_url: str,
    control_plane: Optional[ControlPlane] = None,
) -> List[InstallStep]:
    """Install steps in execution order for an InstallerConfig."""
    name = config.runner_name or default_runner_name()
    return [
        UpdatePackageIndex(runner, probe),
        InstallPackages(runner, probe, config.packages),
        DownloadRunner(
            config.runner_dir,
            release_resolver(config.runner_version, control_plane, config.github_api_url),
            runner=runner,
            runner_user=config.runner_user,
        ),
        InstallRunnerDependencies(runner, probe, config.runner_dir),
        ConfigureRunner(
            runner,
            config.runner_dir,
            token_source,
            url=registration_url,
            name=name,
            labels=config.runner_labels,
            runner_user=config.runner_user,
            remove_token_source=control_plane.remove_token if control_plane is not None else None,
        ),
        InstallRunnerService(runner, config.runner_dir, config.runner_user),
    ]


def build_verification_steps(
    config,
    runner: CommandRunner,
    control_plane: Optional[ControlPlane] = None,
) -> List[InstallStep]:
    """Verification steps; the last one returns the runner identity."""
    name = config.runner_name or default_runner_name()
    return [
        VerifyRunnerService(runner, config.runner_dir),
        VerifyRegistration(name, config.runner_dir, control_plane),
    ]
