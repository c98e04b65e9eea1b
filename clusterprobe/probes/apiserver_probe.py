"""
API Server Probe

Creates an empty ConfigMap, reads it back, and deletes it. Healthy when
all three calls succeed in time.
"""

import logging
from dataclasses import dataclass
from typing import Any

from ..config import ParamReader, ProbeConfig
from ..health.classifier import StepCodes
from ..health.lifecycle import ResourceLifecycle
from ..health.models import Deadline, ManagedResource, Outcome
from ..tools.kubernetes import ConfigMapDriver, call_api
from .base import Probe

logger = logging.getLogger(__name__)

PROBE_TYPE = "apiServer"

CREATE_CODES = StepCodes("APIServerCreateTimeout", "APIServerCreateError")
GET_CODES = StepCodes("APIServerGetTimeout", "APIServerGetError")
DELETE_CODES = StepCodes("APIServerDeleteTimeout", "APIServerDeleteError")


@dataclass
class APIServerParams:
    """
    Attributes:
        namespace: Namespace the ConfigMaps are created in
        label_key: Label key tagging ConfigMaps with the probe name
        mutate_timeout: Bound on create and delete calls
        read_timeout: Bound on the get call
        max_objects: Live ConfigMaps allowed before runs are refused
    """
    namespace: str
    label_key: str
    mutate_timeout: float
    read_timeout: float
    max_objects: int

    @classmethod
    def from_config(cls, config: ProbeConfig) -> "APIServerParams":
        reader = ParamReader(config)
        params = cls(
            namespace=reader.namespace("namespace", "kube-system"),
            label_key=reader.label_key("labelKey"),
            mutate_timeout=reader.step_timeout("mutateTimeout", "2s"),
            read_timeout=reader.step_timeout("readTimeout", "2s"),
            max_objects=reader.integer("maxObjects", 10),
        )
        reader.finish()
        return params


class APIServerProbe(Probe):
    """Control-plane CRUD probe."""

    PROBE_TYPE = PROBE_TYPE

    def __init__(self, name: str, params: APIServerParams, timeout: float, kube: Any):
        super().__init__(name)
        self.params = params
        self.driver = ConfigMapDriver(kube, params.namespace, params.label_key)
        self.lifecycle = ResourceLifecycle(
            driver=self.driver,
            owner=name,
            max_resources=params.max_objects,
            stale_after=timeout,
            create_codes=CREATE_CODES,
            create_timeout=params.mutate_timeout,
        )

    @property
    def cleanup_grace(self) -> float:
        return self.lifecycle.cleanup_timeout

    async def run(self, deadline: Deadline) -> Outcome:
        async def observe(configmap: ManagedResource) -> Outcome:
            try:
                await call_api(
                    self.driver.core_v1.read_namespaced_config_map,
                    configmap.name,
                    configmap.namespace,
                    timeout=deadline.bound(self.params.read_timeout),
                )
            except Exception as e:
                return GET_CODES.classify(e, "getting ConfigMap")

            try:
                await self.lifecycle.release(configmap, deadline, self.params.mutate_timeout)
            except Exception as e:
                return DELETE_CODES.classify(e, "deleting ConfigMap")

            return Outcome.healthy()

        return await self.lifecycle.run(deadline, observe)


def build_apiserver_probe(config: ProbeConfig, kube: Any) -> APIServerProbe:
    params = APIServerParams.from_config(config)
    probe = APIServerProbe(config.name, params, config.timeout, kube)
    logger.info(f"Built APIServerProbe name={config.name} namespace={params.namespace}")
    return probe

