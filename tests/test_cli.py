"""
Tests for the runnerinstall CLI.
"""

import importlib
import json
import logging
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from conftest import ScriptedHostChecks, ScriptedProbe, busy_status, clear_status
from runnerinstall.cli import main
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.errors import FatalError
from runnerinstall.metrics import MetricsRecorder
from runnerinstall.models import UNAVAILABLE, DiagnosticsSnapshot, ErrorRecord, InstallationContext
from runnerinstall.orchestrator import InstallationResult, OrchestratorState
from runnerinstall.runtime import CancellationToken

run_module = importlib.import_module("runnerinstall.cli.run")
check_module = importlib.import_module("runnerinstall.cli.check")
report_module = importlib.import_module("runnerinstall.cli.report")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    logger = logging.getLogger("runnerinstall")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


def make_result(succeeded=True, code=ErrorCode.RUNNER_CONFIG_FAILED):
    context = InstallationContext(target_host="test-host", max_retries=3, run_id="run-1")
    return InstallationResult(
        state=OrchestratorState.SUCCEEDED if succeeded else OrchestratorState.FAILED,
        context=context,
        error=None if succeeded else ErrorRecord.create(code, "config.sh exited 1"),
        identity="ci-runner-1" if succeeded else None,
        duration_ms=42_000,
    )


@pytest.fixture
def fake_orchestrator(monkeypatch):
    """Replace the orchestrator class used by `run`; returns the instance."""
    orchestrator = MagicMock()
    orchestrator.metrics = None
    orchestrator.cancel_token = CancellationToken()
    orchestrator.run.return_value = make_result()

    orchestrator_cls = MagicMock()
    orchestrator_cls.from_config.return_value = orchestrator
    monkeypatch.setattr(run_module, "InstallationOrchestrator", orchestrator_cls)
    orchestrator.cls = orchestrator_cls
    return orchestrator


class TestCodesCommand:
    def test_table(self, runner):
        result = runner.invoke(main, ["codes"])

        assert result.exit_code == 0
        assert "PACKAGE_MANAGER_BUSY" in result.output
        assert "UNKNOWN_ERROR" in result.output

    def test_json(self, runner):
        result = runner.invoke(main, ["codes", "--json"])

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert len(rows) == 16
        assert rows[0] == {"code": "SYSTEM_NOT_READY", "numeric": 100, "exit_status": 10, "kind": "SYSTEM_NOT_READY"}


class TestMetricsCommand:
    def test_missing_artifact(self, runner, tmp_path):
        result = runner.invoke(main, ["metrics", "--metrics-file", str(tmp_path / "missing.json")])

        assert result.exit_code == 0
        assert "Runs:       0 (0 succeeded, 0 failed)" in result.output

    def test_recorded_runs(self, runner, tmp_path):
        path = tmp_path / "metrics.json"
        recorder = MetricsRecorder(path)
        recorder.record_run(make_result())
        recorder.record_run(make_result(succeeded=False))
        recorder.shutdown()

        result = runner.invoke(main, ["metrics", "--metrics-file", str(path)])

        assert result.exit_code == 0
        assert "Runs:       2 (1 succeeded, 1 failed)" in result.output
        assert "RUNNER_CONFIG_FAILED: 1" in result.output

    def test_json(self, runner, tmp_path):
        result = runner.invoke(main, ["metrics", "--metrics-file", str(tmp_path / "m.json"), "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["successCount"] == 0


class TestRunCommand:
    def test_repository_required(self, runner):
        result = runner.invoke(main, ["run", "--pat", "ghp_x"])

        assert result.exit_code == 2
        assert "--repository is required" in result.output

    def test_credentials_required(self, runner):
        result = runner.invoke(main, ["run", "--repository", "octo/app"])

        assert result.exit_code == 2
        assert "--pat or --registration-token" in result.output

    def test_invalid_repository(self, runner):
        result = runner.invoke(main, ["run", "--repository", "not-a-repo", "--pat", "ghp_x"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_success(self, runner, fake_orchestrator):
        result = runner.invoke(main, ["run", "--repository", "octo/app", "--pat", "ghp_x", "--max-retries", "5"])

        assert result.exit_code == 0
        assert "ci-runner-1 installed and online" in result.output

        args, kwargs = fake_orchestrator.cls.from_config.call_args
        assert args[0].repository == "octo/app"
        assert args[0].max_retries == 5
        assert kwargs["pat"] == "ghp_x"
        assert kwargs["skip_registration_check"] is False

    def test_pat_from_environment(self, runner, fake_orchestrator):
        result = runner.invoke(main, ["run", "--repository", "octo/app"], env={"GITHUB_PAT": "ghp_env"})

        assert result.exit_code == 0
        assert fake_orchestrator.cls.from_config.call_args.kwargs["pat"] == "ghp_env"

    def test_failure_exit_status(self, runner, fake_orchestrator):
        fake_orchestrator.run.return_value = make_result(succeeded=False)

        result = runner.invoke(main, ["run", "--repository", "octo/app", "--registration-token", "AABB"])

        assert result.exit_code == ErrorCode.RUNNER_CONFIG_FAILED.exit_status
        assert "RUNNER_CONFIG_FAILED (301)" in result.output
        assert "Remediation:" in result.output
        assert "Run: run-1" in result.output

    def test_json_output(self, runner, fake_orchestrator):
        result = runner.invoke(main, ["run", "--repository", "octo/app", "--pat", "ghp_x", "--json"])

        assert result.exit_code == 0
        assert '"state": "succeeded"' in result.output

    def test_setup_error(self, runner, fake_orchestrator):
        fake_orchestrator.cls.from_config.side_effect = FatalError("no package manager", ErrorCode.UNSUPPORTED_OS)

        result = runner.invoke(main, ["run", "--repository", "octo/app", "--pat", "ghp_x"])

        assert result.exit_code == 14
        assert "UNSUPPORTED_OS" in result.output
        fake_orchestrator.run.assert_not_called()

    def test_metrics_shut_down(self, runner, fake_orchestrator):
        fake_orchestrator.metrics = MagicMock()

        runner.invoke(main, ["run", "--repository", "octo/app", "--pat", "ghp_x"])

        fake_orchestrator.metrics.shutdown.assert_called_once()


class TestCheckReadiness:
    @pytest.fixture
    def host(self, monkeypatch):
        checks = ScriptedHostChecks()
        monkeypatch.setattr(check_module, "LocalHostChecks", lambda **kwargs: checks)
        return checks

    def test_ready(self, runner, host):
        result = runner.invoke(main, ["check", "readiness", "--timeout", "0"])

        assert result.exit_code == 0
        assert "System ready" in result.output
        assert host.polls == 1

    def test_low_disk(self, runner, host):
        host.script = [{"disk": 100}]

        result = runner.invoke(main, ["check", "readiness", "--timeout", "0"])

        assert result.exit_code == ErrorCode.INSUFFICIENT_RESOURCES.exit_status
        assert "INSUFFICIENT_RESOURCES" in result.output

    def test_cloud_init_running(self, runner, host):
        host.script = [{"init": False}]

        result = runner.invoke(main, ["check", "readiness", "--timeout", "0"])

        assert result.exit_code == ErrorCode.CLOUD_INIT_TIMEOUT.exit_status

    def test_fatal_check_keeps_code(self, runner, host):
        host.script = [{"memory": FatalError("no /proc", ErrorCode.UNSUPPORTED_OS)}]

        result = runner.invoke(main, ["check", "readiness", "--timeout", "0"])

        assert result.exit_code == ErrorCode.UNSUPPORTED_OS.exit_status
        assert "UNSUPPORTED_OS" in result.output


class TestCheckContention:
    def test_clear(self, runner, monkeypatch):
        monkeypatch.setattr(check_module, "probe_for_platform", lambda **kwargs: ScriptedProbe([clear_status()]))

        result = runner.invoke(main, ["check", "contention", "--timeout", "0"])

        assert result.exit_code == 0
        assert "Package managers available (scripted)" in result.output

    def test_busy(self, runner, monkeypatch):
        monkeypatch.setattr(check_module, "probe_for_platform", lambda **kwargs: ScriptedProbe([busy_status()]))

        result = runner.invoke(main, ["check", "contention", "--timeout", "0"])

        assert result.exit_code == ErrorCode.PACKAGE_MANAGER_BUSY.exit_status
        assert "PID 4242 (apt-get)" in result.output

    def test_unsupported_os(self, runner, monkeypatch):
        def unsupported(**kwargs):
            raise FatalError("unknown distribution", ErrorCode.UNSUPPORTED_OS)

        monkeypatch.setattr(check_module, "probe_for_platform", unsupported)

        result = runner.invoke(main, ["check", "contention"])

        assert result.exit_code == ErrorCode.UNSUPPORTED_OS.exit_status


class TestDiagnoseCommand:
    @pytest.fixture
    def collector(self, monkeypatch):
        snapshot = DiagnosticsSnapshot(
            sections={"system": {"hostname": "test-host"}, "logs": UNAVAILABLE},
            errors={"logs": "permission denied"},
        )
        collector = MagicMock()
        collector.collect.return_value = snapshot
        monkeypatch.setattr(report_module.DiagnosticsCollector, "from_config", lambda *args, **kwargs: collector)
        monkeypatch.setattr(report_module, "probe_for_platform", lambda **kwargs: ScriptedProbe([clear_status()]))
        return collector

    def test_text(self, runner, collector):
        result = runner.invoke(main, ["diagnose"])

        assert result.exit_code == 0
        assert "hostname: test-host" in result.output
        assert "logs: unavailable (permission denied)" in result.output

    def test_json(self, runner, collector):
        result = runner.invoke(main, ["diagnose", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["sections"]["system"] == {"hostname": "test-host"}
