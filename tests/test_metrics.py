"""
Tests for the cross-run metrics artifact and OTel instruments.
"""

import json

import pytest
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.metrics import (
    METRICS_EXPORT_MODE_NONE,
    METRICS_EXPORT_MODE_READER,
    MetricsRecorder,
    check_endpoint_available,
    empty_artifact,
    load_artifact,
)
from runnerinstall.models import ErrorRecord, InstallationContext, StepRecord
from runnerinstall.orchestrator import InstallationResult, OrchestratorState


def make_result(succeeded=True, retries=None, wait_ms=0, code=ErrorCode.PACKAGE_MANAGER_BUSY, run_id="run-1"):
    context = InstallationContext(target_host="test-host", max_retries=3, run_id=run_id)
    context.retry_counts.update(retries or {})
    context.total_wait_ms = wait_ms
    return InstallationResult(
        state=OrchestratorState.SUCCEEDED if succeeded else OrchestratorState.FAILED,
        context=context,
        error=None if succeeded else ErrorRecord.create(code, "failed"),
        duration_ms=120_000,
    )


@pytest.fixture
def reader():
    return InMemoryMetricReader()


@pytest.fixture
def metrics_path(tmp_path):
    return tmp_path / "metrics" / "metrics.json"


@pytest.fixture
def recorder(metrics_path, reader):
    recorder = MetricsRecorder(metrics_path, reader=reader)
    yield recorder
    recorder.shutdown()


def collected_metrics(reader):
    data = reader.get_metrics_data()
    metrics = {}
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                metrics[metric.name] = metric
    return metrics


class TestArtifact:
    """Tests for the JSON artifact."""

    def test_success_recorded(self, recorder, metrics_path):
        data = recorder.record_run(make_result(retries={"install_packages": 2}, wait_ms=90_000))

        assert data["successCount"] == 1
        assert data["failureCount"] == 0
        assert data["retryCounts"] == {"2": 1}
        assert data["totalWaitMs"] == 90_000
        assert data["lastRun"]["state"] == "succeeded"
        assert data["lastRun"]["errorCode"] is None
        assert data["lastRun"]["retries"] == 2
        assert json.loads(metrics_path.read_text()) == data

    def test_accumulates_across_runs(self, recorder):
        recorder.record_run(make_result(wait_ms=1000, run_id="a"))
        recorder.record_run(make_result(succeeded=False, wait_ms=2000, run_id="b"))
        data = recorder.record_run(
            make_result(succeeded=False, retries={"configure_runner": 2}, code=ErrorCode.RUNNER_CONFIG_FAILED, run_id="c")
        )

        assert data["successCount"] == 1
        assert data["failureCount"] == 2
        assert data["failuresByCode"] == {"PACKAGE_MANAGER_BUSY": 1, "RUNNER_CONFIG_FAILED": 1}
        assert data["retryCounts"] == {"0": 2, "2": 1}
        assert data["totalWaitMs"] == 3000
        assert data["lastRun"]["runId"] == "c"
        assert data["lastRun"]["errorCode"] == "RUNNER_CONFIG_FAILED"

    def test_last_run_steps(self, recorder, metrics_path):
        result = make_result(succeeded=False, retries={"install_packages": 1}, code=ErrorCode.RUNNER_CONFIG_FAILED)
        result.context.steps.extend([
            StepRecord(step_id="install_packages", status="succeeded", attempts=2, retry_count=1, duration_ms=4000),
            StepRecord(step_id="configure_runner", status="failed", attempts=3, retry_count=2,
                       error_code=ErrorCode.RUNNER_CONFIG_FAILED),
        ])

        recorder.record_run(result)

        steps = load_artifact(metrics_path)["lastRun"]["steps"]
        assert [(s["name"], s["status"], s["attempts"]) for s in steps] == [
            ("install_packages", "succeeded", 2),
            ("configure_runner", "failed", 3),
        ]
        assert steps[0]["durationMs"] == 4000
        assert steps[1]["errorCode"] == "RUNNER_CONFIG_FAILED"

    def test_shared_between_recorders(self, metrics_path, reader):
        first = MetricsRecorder(metrics_path, reader=reader)
        first.record_run(make_result())
        first.shutdown()

        second = MetricsRecorder(metrics_path)
        second.record_run(make_result(succeeded=False))
        second.shutdown()

        data = load_artifact(metrics_path)
        assert data["successCount"] == 1
        assert data["failureCount"] == 1

    def test_corrupt_artifact_starts_fresh(self, recorder, metrics_path):
        metrics_path.parent.mkdir(parents=True, exist_ok=True)
        metrics_path.write_text("{not json")

        data = recorder.record_run(make_result())

        assert data["successCount"] == 1

    def test_load_missing(self, tmp_path):
        assert load_artifact(tmp_path / "missing.json") == empty_artifact()

    def test_load_fills_missing_keys(self, metrics_path):
        metrics_path.parent.mkdir(parents=True)
        metrics_path.write_text(json.dumps({"successCount": 4}))

        data = load_artifact(metrics_path)

        assert data["successCount"] == 4
        assert data["failuresByCode"] == {}

    def test_no_path_disables_artifact(self, reader, tmp_path):
        recorder = MetricsRecorder(None, reader=reader)
        data = recorder.record_run(make_result())
        recorder.shutdown()

        assert data["lastRun"]["runId"] == "run-1"
        assert recorder.load() == empty_artifact()
        assert list(tmp_path.iterdir()) == []

    def test_unwritable_artifact_does_not_raise(self, tmp_path, reader):
        blocker = tmp_path / "file"
        blocker.write_text("")
        recorder = MetricsRecorder(blocker / "metrics.json", reader=reader)

        data = recorder.record_run(make_result())
        recorder.shutdown()

        assert data["lastRun"]["state"] == "succeeded"


class TestInstruments:
    """Tests for OTel instruments."""

    def test_export_mode(self, recorder):
        assert recorder.export_mode == METRICS_EXPORT_MODE_READER

    def test_run_counter_and_histograms(self, recorder, reader):
        recorder.record_run(make_result(retries={"install_packages": 2}, wait_ms=90_000))
        recorder.record_run(make_result(succeeded=False))

        metrics = collected_metrics(reader)

        runs = metrics["runnerinstall.runs"]
        by_outcome = {dp.attributes["outcome"]: dp.value for dp in runs.data.data_points}
        assert by_outcome == {"succeeded": 1, "failed": 1}

        retries = metrics["runnerinstall.retries"]
        assert [(dp.attributes["step"], dp.value) for dp in retries.data.data_points] == [("install_packages", 2)]

        assert "runnerinstall.wait.duration" in metrics
        assert "runnerinstall.run.duration" in metrics

    def test_unreachable_otlp_endpoint(self, monkeypatch):
        monkeypatch.setattr("runnerinstall.metrics.check_endpoint_available", lambda endpoint: False)
        recorder = MetricsRecorder(None, otlp_endpoint="localhost:4317")

        assert recorder.export_mode == METRICS_EXPORT_MODE_NONE
        recorder.shutdown()

    def test_shutdown_is_idempotent(self, recorder):
        recorder.shutdown()
        recorder.shutdown()


class TestCheckEndpointAvailable:
    def test_unreachable(self, monkeypatch):
        def create_connection(address, timeout):
            raise ConnectionRefusedError()

        monkeypatch.setattr("runnerinstall.metrics.socket.create_connection", create_connection)
        assert not check_endpoint_available("http://localhost:4317")

    def test_reachable_url(self, monkeypatch):
        seen = []

        class Conn:
            def __enter__(self):
                return self

            def __exit__(self, *args):
                return False

        def create_connection(address, timeout):
            seen.append(address)
            return Conn()

        monkeypatch.setattr("runnerinstall.metrics.socket.create_connection", create_connection)
        assert check_endpoint_available("http://collector.internal:4317")
        assert check_endpoint_available("collector.internal")
        assert seen == [("collector.internal", 4317), ("collector.internal", 4317)]
