"""
Timeout and retry constants for runnerinstall.

Centralizes timeout values to ensure consistency across the codebase
and make tuning easier.
"""

from __future__ import annotations

# =============================================================================
# Readiness Validation
# =============================================================================

# Overall ceiling for waiting on boot initialization, resources and network
READINESS_TIMEOUT_S = 600

# Interval between readiness polls
READINESS_POLL_INTERVAL_S = 10

# Minimum free disk space required on the install filesystem
MIN_DISK_FREE_MB = 2048

# Minimum available memory required before installing
MIN_MEMORY_FREE_MB = 512

# TCP connect timeout for reachability checks
NETWORK_CHECK_TIMEOUT_S = 5.0

# Endpoints the runner needs to reach (host:port)
DEFAULT_NETWORK_ENDPOINTS = (
    "api.github.com:443",
    "github.com:443",
    "objects.githubusercontent.com:443",
)

# =============================================================================
# Package Manager Contention
# =============================================================================

# Overall ceiling for waiting on package-manager locks
CONTENTION_TIMEOUT_S = 300

# Interval between contention polls
CONTENTION_POLL_INTERVAL_S = 10

# Shorter contention wait used between retries of an install step
RETRY_CONTENTION_TIMEOUT_S = 120

# Poll interval used for the between-retries contention wait
RETRY_CONTENTION_POLL_INTERVAL_S = 5

# =============================================================================
# Retry Configuration
# =============================================================================

# Default number of attempts per install step
DEFAULT_MAX_RETRIES = 3

# Delay before the first retry
DEFAULT_BASE_DELAY_S = 30

# Hard ceiling on any single backoff delay
DEFAULT_MAX_DELAY_S = 300

# HTTP status codes that should trigger a retry
RETRYABLE_HTTP_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# =============================================================================
# Subprocess / HTTP Timeouts
# =============================================================================

# Default timeout for short commands (systemctl, cloud-init status)
SUBPROCESS_DEFAULT_TIMEOUT_S = 30

# Timeout for long-running package operations (apt-get install)
SUBPROCESS_INSTALL_TIMEOUT_S = 1800

# Default timeout for control-plane API requests
HTTP_CLIENT_TIMEOUT_S = 30.0

# Timeout for the runner archive download
HTTP_DOWNLOAD_TIMEOUT_S = 300.0

# =============================================================================
# Diagnostics
# =============================================================================

# Number of trailing log lines captured per log file
DIAGNOSTICS_LOG_LINES = 20

# =============================================================================
# Event Log
# =============================================================================

# Size at which the event log is rotated
EVENT_LOG_MAX_BYTES = 10 * 1024 * 1024

# Rotated event logs kept alongside the live one
EVENT_LOG_BACKUPS = 5

# =============================================================================
# OTel Provider Timeouts
# =============================================================================

# Timeout for force_flush operations on MeterProvider
OTEL_FLUSH_TIMEOUT_MS = 5000

# Timeout for checking if OTLP endpoint is reachable
OTEL_ENDPOINT_CHECK_TIMEOUT_S = 2.0

# Default OTLP gRPC port
OTEL_DEFAULT_GRPC_PORT = 4317
