"""
Result Sinks

The scheduler reports every probe run through ``ResultSink.record``.
Production uses Prometheus; tests inject the in-memory sink.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from .models import Outcome, OutcomeStatus

logger = logging.getLogger(__name__)

HEALTHY_STATUS = "healthy"
UNHEALTHY_STATUS = "unhealthy"
UNKNOWN_STATUS = "unknown"

# error_code is always set; healthy and unknown results reuse their status.
HEALTHY_CODE = HEALTHY_STATUS
UNKNOWN_CODE = UNKNOWN_STATUS


def status_labels(outcome: Optional[Outcome], error: Optional[BaseException]) -> Tuple[str, str]:
    """Map a run result to its (status, error_code) label pair."""
    if error is not None or outcome is None:
        return UNKNOWN_STATUS, UNKNOWN_CODE
    if outcome.status == OutcomeStatus.HEALTHY:
        return HEALTHY_STATUS, HEALTHY_CODE
    if outcome.status == OutcomeStatus.UNHEALTHY:
        return UNHEALTHY_STATUS, outcome.code
    return UNKNOWN_STATUS, UNKNOWN_CODE


@runtime_checkable
class ResultSink(Protocol):
    """Receives the result of every probe run."""

    def record(
        self,
        probe_type: str,
        probe_name: str,
        outcome: Optional[Outcome],
        error: Optional[BaseException] = None,
    ) -> None:
        """
        Record one run.

        Args:
            probe_type: Registry type id of the probe
            probe_name: Unique probe name
            outcome: Classified outcome
            error: Invocation error, if the probe itself failed
        """
        ...


class PrometheusResultSink:
    """
    Prometheus-backed result sink.

    Uses a dedicated CollectorRegistry so probe metrics are isolated from
    the default global registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._results_total = Counter(
            "cluster_probe_result_total",
            "Total number of probe runs, labeled by status and code",
            ["probe_type", "probe_name", "status", "error_code"],
            registry=self._registry,
        )

        self._run_duration = Histogram(
            "cluster_probe_run_duration_seconds",
            "Probe run duration in seconds",
            ["probe_type", "probe_name"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def record(
        self,
        probe_type: str,
        probe_name: str,
        outcome: Optional[Outcome],
        error: Optional[BaseException] = None,
    ) -> None:
        status, code = status_labels(outcome, error)
        self._results_total.labels(
            probe_type=probe_type,
            probe_name=probe_name,
            status=status,
            error_code=code,
        ).inc()

    def observe_duration(self, probe_type: str, probe_name: str, seconds: float) -> None:
        self._run_duration.labels(probe_type=probe_type, probe_name=probe_name).observe(seconds)

    def generate(self) -> bytes:
        """Serialize all collected metrics in Prometheus text exposition format."""
        return generate_latest(self._registry)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose ``/metrics`` on a background HTTP server thread."""
        start_http_server(port, addr=addr, registry=self._registry)
        logger.info(f"Serving Prometheus metrics at {addr}:{port}/metrics")


@dataclass
class RecordedResult:
    probe_type: str
    probe_name: str
    outcome: Optional[Outcome]
    error: Optional[BaseException]

    @property
    def labels(self) -> Tuple[str, str]:
        return status_labels(self.outcome, self.error)


class MemoryResultSink:
    """In-memory sink that keeps every recorded run."""

    def __init__(self) -> None:
        self.results: List[RecordedResult] = []

    def record(
        self,
        probe_type: str,
        probe_name: str,
        outcome: Optional[Outcome],
        error: Optional[BaseException] = None,
    ) -> None:
        self.results.append(RecordedResult(probe_type, probe_name, outcome, error))

    def for_probe(self, probe_name: str) -> List[RecordedResult]:
        return [r for r in self.results if r.probe_name == probe_name]

    @property
    def last(self) -> Optional[RecordedResult]:
        return self.results[-1] if self.results else None

    def clear(self) -> None:
        self.results.clear()
