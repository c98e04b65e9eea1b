"""
Health Probe Engine

Scheduled probe execution, the reusable create/observe/delete lifecycle,
outcome classification and result sinks.
"""

from .models import Outcome, OutcomeStatus, ProbeSchedule, ManagedResource, Deadline
from .classifier import StepCodes, classify, is_timeout
from .lifecycle import (
    ResourceDriver,
    ResourceLifecycle,
    ResourceGone,
    LifecycleError,
    QuotaExceeded,
)
from .scheduler import ProbeScheduler
from .sink import ResultSink, PrometheusResultSink, MemoryResultSink

__all__ = [
    "Outcome",
    "OutcomeStatus",
    "ProbeSchedule",
    "ManagedResource",
    "Deadline",
    "StepCodes",
    "classify",
    "is_timeout",
    "ResourceDriver",
    "ResourceLifecycle",
    "ResourceGone",
    "LifecycleError",
    "QuotaExceeded",
    "ProbeScheduler",
    "ResultSink",
    "PrometheusResultSink",
    "MemoryResultSink",
]
