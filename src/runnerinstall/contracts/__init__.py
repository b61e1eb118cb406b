"""
Contracts shared across runnerinstall: error codes, metric names, timeouts.
"""

from runnerinstall.contracts.errors import ErrorCode, ErrorKind, REMEDIATION_HINTS, code_table
from runnerinstall.contracts.metrics import EventName, MetricName, Stage

__all__ = [
    "ErrorCode",
    "ErrorKind",
    "REMEDIATION_HINTS",
    "code_table",
    "EventName",
    "MetricName",
    "Stage",
]
