"""
Cross-run installation metrics.

Two outputs per finished run:

- A JSON artifact accumulated across runs on the machine: success and
  failure counts, a histogram of retries per run, total wait time,
  failures by error code and a summary of the last run. Updates happen
  under a file lock with an atomic replace.
- OpenTelemetry instruments on a private MeterProvider, exported over
  OTLP when an endpoint is configured and reachable.
"""

from __future__ import annotations

import atexit
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View
from opentelemetry.sdk.resources import Resource

from runnerinstall.contracts.metrics import DURATION_BUCKETS_MS, MetricName
from runnerinstall.contracts.timeouts import (
    OTEL_DEFAULT_GRPC_PORT,
    OTEL_ENDPOINT_CHECK_TIMEOUT_S,
    OTEL_FLUSH_TIMEOUT_MS,
)
from runnerinstall.readiness import parse_endpoint
from runnerinstall.state import atomic_write_json, file_lock, read_json

if TYPE_CHECKING:
    from runnerinstall.orchestrator import InstallationResult

logger = logging.getLogger(__name__)

# Export mode tracking
METRICS_EXPORT_MODE_OTLP = "otlp"
METRICS_EXPORT_MODE_READER = "reader"
METRICS_EXPORT_MODE_NONE = "none"


def empty_artifact() -> Dict[str, Any]:
    return {
        "successCount": 0,
        "failureCount": 0,
        "retryCounts": {},
        "totalWaitMs": 0,
        "failuresByCode": {},
        "lastRun": None,
    }


def load_artifact(path: Path) -> Dict[str, Any]:
    """Read the metrics artifact under a shared lock."""
    path = Path(path).expanduser()
    if not path.exists():
        return empty_artifact()
    with file_lock(path, exclusive=False):
        data = read_json(path)
    return {**empty_artifact(), **(data or {})}


def check_endpoint_available(endpoint: str, timeout: float = OTEL_ENDPOINT_CHECK_TIMEOUT_S) -> bool:
    """True if the OTLP endpoint (``host:port`` or URL) accepts connections."""
    try:
        if "://" in endpoint:
            from urllib.parse import urlparse
            parsed = urlparse(endpoint)
            host = parsed.hostname or "localhost"
            port = parsed.port or OTEL_DEFAULT_GRPC_PORT
        else:
            host, port = parse_endpoint(endpoint, OTEL_DEFAULT_GRPC_PORT)

        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (ValueError, OSError) as e:
        logger.debug(f"OTLP metrics endpoint check failed: {e}")
        return False


class MetricsRecorder:
    """
    Records finished installation runs.

    Args:
        path: JSON artifact location (None disables the artifact)
        otlp_endpoint: OTLP gRPC endpoint; instruments are only exported when set
        reader: Explicit metric reader (tests pass an InMemoryMetricReader)
        export_interval_ms: Periodic export interval for OTLP
        service_name: ``service.name`` resource attribute
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        otlp_endpoint: Optional[str] = None,
        reader: Optional[MetricReader] = None,
        export_interval_ms: int = 60000,
        service_name: str = "runnerinstall",
    ):
        self.path = Path(path).expanduser() if path else None
        self._export_mode = METRICS_EXPORT_MODE_NONE
        self._shutdown_called = False

        if reader is not None:
            self._export_mode = METRICS_EXPORT_MODE_READER
        elif otlp_endpoint:
            reader = self._setup_otlp_reader(otlp_endpoint, export_interval_ms)

        resource = Resource.create({
            "service.name": service_name,
            "host.name": socket.gethostname(),
        })
        duration_view = View(
            instrument_name="runnerinstall.*.duration",
            aggregation=ExplicitBucketHistogramAggregation(boundaries=DURATION_BUCKETS_MS),
        )
        # Private provider; never installed as the global one.
        self._provider = MeterProvider(
            resource=resource,
            metric_readers=[reader] if reader else [],
            views=[duration_view],
        )
        self._meter = self._provider.get_meter("runnerinstall.metrics")
        self._setup_instruments()

        atexit.register(self._atexit_shutdown)

    def _setup_otlp_reader(self, endpoint: str, export_interval_ms: int) -> Optional[MetricReader]:
        if not check_endpoint_available(endpoint):
            logger.warning(f"OTLP metrics endpoint {endpoint} not reachable. Metrics will not be exported.")
            return None

        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        logger.info(f"Configured OTLP metrics exporter to {endpoint}")
        self._export_mode = METRICS_EXPORT_MODE_OTLP
        return PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=endpoint, insecure=True),
            export_interval_millis=export_interval_ms,
        )

    def _setup_instruments(self) -> None:
        self._runs = self._meter.create_counter(
            name=MetricName.RUNS.value,
            description="Completed installation runs by outcome",
            unit="{runs}",
        )
        self._retries = self._meter.create_counter(
            name=MetricName.RETRIES.value,
            description="Retries consumed by step",
            unit="{retries}",
        )
        self._wait_duration = self._meter.create_histogram(
            name=MetricName.WAIT_DURATION.value,
            description="Time spent in backoff and contention waits per run",
            unit="ms",
        )
        self._run_duration = self._meter.create_histogram(
            name=MetricName.RUN_DURATION.value,
            description="Wall time per installation run",
            unit="ms",
        )

    @property
    def export_mode(self) -> str:
        """Current export mode: 'otlp', 'reader', or 'none'."""
        return self._export_mode

    def load(self) -> Dict[str, Any]:
        """Current artifact contents (empty counters when absent)."""
        if self.path is None:
            return empty_artifact()
        return load_artifact(self.path)

    def record_run(self, result: "InstallationResult") -> Dict[str, Any]:
        """
        Fold one finished run into the artifact and the instruments.

        Returns:
            The updated artifact
        """
        context = result.context
        succeeded = result.succeeded
        error_code = result.error.code.value if result.error else None
        retries = context.total_retries

        outcome = "succeeded" if succeeded else "failed"
        attrs = {"outcome": outcome}
        if error_code:
            attrs["error.code"] = error_code
        self._runs.add(1, attrs)
        for step_id, count in context.retry_counts.items():
            if count:
                self._retries.add(count, {"step": step_id})
        self._wait_duration.record(context.total_wait_ms, {"outcome": outcome})
        self._run_duration.record(result.duration_ms, {"outcome": outcome})

        last_run = {
            "runId": context.run_id,
            "host": context.target_host,
            "state": result.state.value,
            "errorCode": error_code,
            "retries": retries,
            "waitMs": context.total_wait_ms,
            "durationMs": result.duration_ms,
            "finishedAt": datetime.now(timezone.utc).isoformat(),
            "steps": [step.to_artifact() for step in context.steps],
        }

        if self.path is None:
            return {**empty_artifact(), "lastRun": last_run}

        try:
            with file_lock(self.path, exclusive=True):
                data = {**empty_artifact(), **(read_json(self.path) or {})}
                if succeeded:
                    data["successCount"] += 1
                else:
                    data["failureCount"] += 1
                    data["failuresByCode"][error_code] = data["failuresByCode"].get(error_code, 0) + 1
                bucket = str(retries)
                data["retryCounts"][bucket] = data["retryCounts"].get(bucket, 0) + 1
                data["totalWaitMs"] += context.total_wait_ms
                data["lastRun"] = last_run
                atomic_write_json(self.path, data)
        except OSError as e:
            # The install outcome stands even when the artifact cannot be written.
            logger.error(f"Failed to update metrics artifact {self.path}: {e}")
            return {**empty_artifact(), "lastRun": last_run}

        logger.debug(f"Recorded {outcome} run in {self.path}")
        return data

    def _atexit_shutdown(self) -> None:
        try:
            self._provider.force_flush(timeout_millis=OTEL_FLUSH_TIMEOUT_MS)
            self._provider.shutdown()
        except Exception as e:
            logger.debug(f"Error during metrics atexit shutdown: {e}")

    def shutdown(self) -> None:
        """Flush and shut down the provider. Safe to call multiple times."""
        if self._shutdown_called:
            return
        self._shutdown_called = True
        atexit.unregister(self._atexit_shutdown)
        try:
            self._provider.force_flush(timeout_millis=OTEL_FLUSH_TIMEOUT_MS)
            self._provider.shutdown()
        except Exception as e:
            logger.warning(f"Error during metrics shutdown: {e}")
