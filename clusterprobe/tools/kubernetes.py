"""
clusterprobe - Kubernetes Tools

Client loading, deadline-bounded API calls, and the lifecycle drivers for
the disposable objects probes create.
"""

import asyncio
import logging
import time
from abc import abstractmethod
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..health.lifecycle import ResourceDriver, ResourceGone
from ..health.models import ManagedResource

logger = logging.getLogger(__name__)

SYNTHETIC_POD_IMAGE = "mcr.microsoft.com/azurelinux/base/nginx:1.25.4-4-azl3.0.20250702"
SYNTHETIC_POD_PORT = 80


class KubeClients:
    """
    Lazily-initialized Kubernetes API clients.

    Nothing contacts the cluster until an API property is first used, so
    probes can be built (and configuration validated) offline.
    """

    def __init__(self, kubeconfig_path: Optional[str] = None):
        self.kubeconfig_path = kubeconfig_path
        self._api_client: Optional[client.ApiClient] = None
        self._core_v1: Optional[client.CoreV1Api] = None
        self._discovery_v1: Optional[client.DiscoveryV1Api] = None
        self._custom_objects: Optional[client.CustomObjectsApi] = None

    def _load(self) -> client.ApiClient:
        if self._api_client is None:
            try:
                if self.kubeconfig_path:
                    config.load_kube_config(config_file=self.kubeconfig_path)
                else:
                    # Try in-cluster config first, fall back to kubeconfig
                    try:
                        config.load_incluster_config()
                    except config.ConfigException:
                        config.load_kube_config()
            except Exception as e:
                raise RuntimeError(f"Failed to load Kubernetes config: {e}") from e
            self._api_client = client.ApiClient()
        return self._api_client

    @property
    def core_v1(self) -> client.CoreV1Api:
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api(self._load())
        return self._core_v1

    @property
    def discovery_v1(self) -> client.DiscoveryV1Api:
        if self._discovery_v1 is None:
            self._discovery_v1 = client.DiscoveryV1Api(self._load())
        return self._discovery_v1

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        if self._custom_objects is None:
            self._custom_objects = client.CustomObjectsApi(self._load())
        return self._custom_objects


async def call_api(func: Callable[..., Any], *args, timeout: float, **kwargs) -> Any:
    """
    Run a blocking client call in a worker thread, bounded by ``timeout``.

    The timeout is also passed as ``_request_timeout`` so the worker thread
    gives up on its own instead of lingering after the caller moved on.

    Raises:
        TimeoutError: If the call does not finish in time
        ApiException: On API errors
    """
    if timeout <= 0:
        raise TimeoutError("deadline exceeded before the request was sent")
    async with asyncio.timeout(timeout):
        return await asyncio.to_thread(func, *args, _request_timeout=timeout, **kwargs)


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def is_not_found(e: BaseException) -> bool:
    return isinstance(e, ApiException) and e.status == 404


class LabeledObjectDriver(ResourceDriver):
    """
    Namespaced objects owned through a label and a name prefix.

    The owner label carries the probe name; the name prefix is an extra
    guard so a probe only ever collects objects it created itself.
    """

    kind = "Object"
    name_suffix = "object"

    def __init__(self, kube: Any, namespace: str, label_key: str):
        self.kube = kube
        self.namespace = namespace
        self.label_key = label_key

    @property
    def core_v1(self) -> Any:
        return self.kube.core_v1

    def owner_labels(self, owner: str) -> Dict[str, str]:
        return {self.label_key: owner}

    def name_prefix(self, owner: str) -> str:
        return f"{owner.lower()}-{self.name_suffix}-"

    def new_name(self, owner: str) -> str:
        return f"{self.name_prefix(owner)}{time.time_ns()}"

    @abstractmethod
    def build(self, owner: str, name: str) -> Any:
        """Build the object body."""

    @abstractmethod
    def _list(self, namespace: str, **kwargs) -> Any:
        ...

    @abstractmethod
    def _create(self, namespace: str, body: Any, **kwargs) -> Any:
        ...

    @abstractmethod
    def _delete(self, name: str, namespace: str, **kwargs) -> Any:
        ...

    def _to_resource(self, obj: Any, owner: str) -> ManagedResource:
        meta = obj.metadata
        return ManagedResource(
            kind=self.kind,
            name=meta.name,
            namespace=meta.namespace or self.namespace,
            owner=owner,
            created_at=meta.creation_timestamp or datetime.now(UTC),
        )

    async def list_owned(self, owner: str, timeout: float) -> List[ManagedResource]:
        result = await call_api(
            self._list,
            self.namespace,
            label_selector=label_selector(self.owner_labels(owner)),
            timeout=timeout,
        )
        prefix = self.name_prefix(owner)
        return [
            self._to_resource(obj, owner)
            for obj in result.items
            if obj.metadata.name.startswith(prefix)
        ]

    async def create(self, owner: str, timeout: float) -> ManagedResource:
        body = self.build(owner, self.new_name(owner))
        obj = await call_api(self._create, self.namespace, body, timeout=timeout)
        resource = self._to_resource(obj, owner)
        logger.debug(f"Created {self.kind} {resource.namespace}/{resource.name}")
        return resource

    async def delete(self, resource: ManagedResource, timeout: float) -> None:
        try:
            await call_api(self._delete, resource.name, resource.namespace, timeout=timeout)
        except ApiException as e:
            if is_not_found(e):
                raise ResourceGone(f"{resource.kind} {resource.name} not found") from e
            raise


class ConfigMapDriver(LabeledObjectDriver):
    """Empty ConfigMaps, used to exercise API server writes."""

    kind = "ConfigMap"
    name_suffix = "empty-configmap"

    def build(self, owner: str, name: str) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=self.namespace,
                labels=self.owner_labels(owner),
            ),
        )

    def _list(self, namespace: str, **kwargs) -> Any:
        return self.core_v1.list_namespaced_config_map(namespace, **kwargs)

    def _create(self, namespace: str, body: Any, **kwargs) -> Any:
        return self.core_v1.create_namespaced_config_map(namespace, body, **kwargs)

    def _delete(self, name: str, namespace: str, **kwargs) -> Any:
        return self.core_v1.delete_namespaced_config_map(name, namespace, **kwargs)


class PodDriver(LabeledObjectDriver):
    """Synthetic pods running a small web server."""

    kind = "Pod"
    name_suffix = "synthetic"

    def __init__(
        self,
        kube: Any,
        namespace: str,
        label_key: str,
        image: str = SYNTHETIC_POD_IMAGE,
        port: int = SYNTHETIC_POD_PORT,
    ):
        super().__init__(kube, namespace, label_key)
        self.image = image
        self.port = port

    def build(self, owner: str, name: str) -> client.V1Pod:
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=self.namespace,
                labels=self.owner_labels(owner),
            ),
            spec=client.V1PodSpec(
                restart_policy="Never",
                termination_grace_period_seconds=0,
                containers=[
                    client.V1Container(
                        name="synthetic",
                        image=self.image,
                        ports=[client.V1ContainerPort(container_port=self.port, protocol="TCP")],
                        resources=client.V1ResourceRequirements(
                            requests={"cpu": "10m", "memory": "16Mi"},
                            limits={"memory": "32Mi"},
                        ),
                    )
                ],
                tolerations=[
                    client.V1Toleration(key="CriticalAddonsOnly", operator="Exists"),
                ],
            ),
        )

    def _list(self, namespace: str, **kwargs) -> Any:
        return self.core_v1.list_namespaced_pod(namespace, **kwargs)

    def _create(self, namespace: str, body: Any, **kwargs) -> Any:
        return self.core_v1.create_namespaced_pod(namespace, body, **kwargs)

    def _delete(self, name: str, namespace: str, **kwargs) -> Any:
        return self.core_v1.delete_namespaced_pod(name, namespace, grace_period_seconds=0, **kwargs)
