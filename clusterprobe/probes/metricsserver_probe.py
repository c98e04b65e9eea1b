"""
Metrics Server Probe

Lists node metrics through the aggregated ``metrics.k8s.io`` API.
"""

import logging
from typing import Any

from ..config import ProbeConfig
from ..health.classifier import StepCodes
from ..health.models import Deadline, Outcome
from ..tools.kubernetes import call_api
from .base import Probe

logger = logging.getLogger(__name__)

PROBE_TYPE = "metricsServer"

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

LIST_CODES = StepCodes("MetricsServerTimeout", "MetricsServerUnavailable")


class MetricsServerProbe(Probe):
    """Metrics API liveness probe."""

    PROBE_TYPE = PROBE_TYPE

    def __init__(self, name: str, kube: Any):
        super().__init__(name)
        self.kube = kube

    async def run(self, deadline: Deadline) -> Outcome:
        try:
            result = await call_api(
                self.kube.custom_objects.list_cluster_custom_object,
                METRICS_GROUP,
                METRICS_VERSION,
                "nodes",
                timeout=deadline.bound(),
            )
        except Exception as e:
            return LIST_CODES.classify(e, "calling the metrics server API")

        items = result.get("items", []) if isinstance(result, dict) else []
        logger.debug(f"Metrics server returned {len(items)} node metrics for probe {self.name}")
        return Outcome.healthy()


def build_metricsserver_probe(config: ProbeConfig, kube: Any) -> MetricsServerProbe:
    probe = MetricsServerProbe(config.name, kube)
    logger.info(f"Built MetricsServerProbe name={config.name} timeout={config.timeout}s")
    return probe
