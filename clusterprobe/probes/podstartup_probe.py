"""
Pod Startup Probe

Creates a synthetic pod, polls until its container is running, checks how
long the pod took to start (image pull excluded), then opens a TCP
connection to the pod.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple

from ..config import ParamReader, ProbeConfig, parse_duration
from ..health.classifier import StepCodes
from ..health.lifecycle import ResourceLifecycle
from ..health.models import Deadline, ManagedResource, Outcome
from ..tools.kubernetes import SYNTHETIC_POD_IMAGE, SYNTHETIC_POD_PORT, PodDriver, call_api
from .base import Probe

logger = logging.getLogger(__name__)

PROBE_TYPE = "podStartup"

CREATE_CODES = StepCodes("PodCreationTimeout", "PodCreationError")
REQUEST_CODES = StepCodes("RequestTimeout", "RequestFailed")
ERR_CODE_STARTUP_TIMEOUT = "PodStartupTimeout"
ERR_CODE_STARTUP_DURATION_EXCEEDED = "PodStartupDurationExceeded"

IMAGE_PULLED_REASON = "Pulled"
_PULLED_MESSAGE = re.compile(r"Successfully pulled image .* in \S+ \((\S+) including waiting\)")
_ALREADY_PRESENT = "already present on machine"

Connector = Callable[[str, int, float], Awaitable[None]]


class PodStartupError(Exception):
    """The synthetic pod could not be inspected."""


@dataclass
class PodStartupParams:
    """
    Attributes:
        namespace: Namespace synthetic pods are created in
        label_key: Label key tagging pods with the probe name
        startup_timeout: Longest acceptable pod startup duration
        max_synthetic_pods: Live synthetic pods allowed before runs are refused
        mutate_timeout: Bound on create, delete and status calls
        request_timeout: Bound on the TCP connection to the pod
        poll_interval: Pause between status polls
        image: Container image of the synthetic pod
        port: Port the synthetic pod's container listens on
    """
    namespace: str
    label_key: str
    startup_timeout: float
    max_synthetic_pods: int
    mutate_timeout: float
    request_timeout: float
    poll_interval: float
    image: str
    port: int

    @classmethod
    def from_config(cls, config: ProbeConfig) -> "PodStartupParams":
        reader = ParamReader(config)
        params = cls(
            namespace=reader.namespace("namespace", "default"),
            label_key=reader.label_key("labelKey"),
            startup_timeout=reader.step_timeout("startupTimeout"),
            max_synthetic_pods=reader.integer("maxSyntheticPods", 5),
            mutate_timeout=reader.step_timeout("mutateTimeout", "5s"),
            request_timeout=reader.step_timeout("requestTimeout", "2s"),
            poll_interval=reader.duration("pollInterval", "1s"),
            image=reader.string("image", SYNTHETIC_POD_IMAGE),
            port=reader.integer("port", SYNTHETIC_POD_PORT),
        )
        reader.finish()
        return params


def container_started_at(pod: Any) -> Optional[datetime]:
    """Start time of the pod's first running container, if any."""
    statuses = (pod.status.container_statuses or []) if pod.status else []
    for status in statuses:
        running = status.state.running if status.state else None
        if running is not None and running.started_at is not None:
            return running.started_at
    return None


def parse_image_pull_duration(message: str) -> float:
    """
    Seconds spent pulling an image, waiting included, from a kubelet
    ``Pulled`` event message.

    Raises:
        ValueError: If the message does not report a pull duration
    """
    match = _PULLED_MESSAGE.search(message or "")
    if not match:
        raise ValueError(f"unrecognized image pull message: {message!r}")
    return parse_duration(match.group(1))


def image_pull_duration(events: Iterable[Any]) -> float:
    """
    Total image pull time reported by a pod's events.

    An image already present on the node counts as zero.

    Raises:
        ValueError: If no ``Pulled`` event is found or one cannot be parsed
    """
    pulled = [e for e in events if e.reason == IMAGE_PULLED_REASON]
    if not pulled:
        raise ValueError("no image pull events found")

    total = 0.0
    for event in pulled:
        if _ALREADY_PRESENT in (event.message or ""):
            continue
        total += parse_image_pull_duration(event.message)
    return total


async def open_tcp_connection(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection within ``timeout`` seconds."""
    if timeout <= 0:
        raise TimeoutError("deadline exceeded before connecting")
    async with asyncio.timeout(timeout):
        _, writer = await asyncio.open_connection(host, port)
    writer.close()
    await writer.wait_closed()


class PodStartupProbe(Probe):
    """Synthetic pod startup probe."""

    PROBE_TYPE = PROBE_TYPE

    def __init__(
        self,
        name: str,
        params: PodStartupParams,
        timeout: float,
        kube: Any,
        connect: Optional[Connector] = None,
    ):
        super().__init__(name)
        self.params = params
        self.connect = connect or open_tcp_connection
        self.driver = PodDriver(kube, params.namespace, params.label_key, image=params.image, port=params.port)
        self.lifecycle = ResourceLifecycle(
            driver=self.driver,
            owner=name,
            max_resources=params.max_synthetic_pods,
            stale_after=timeout,
            create_codes=CREATE_CODES,
            create_timeout=params.mutate_timeout,
        )

    @property
    def cleanup_grace(self) -> float:
        return self.lifecycle.cleanup_timeout

    async def run(self, deadline: Deadline) -> Outcome:
        return await self.lifecycle.run(deadline, lambda pod: self._observe(pod, deadline))

    async def _observe(self, pod: ManagedResource, deadline: Deadline) -> Outcome:
        try:
            async with deadline.timeout(self.params.startup_timeout):
                started_at, current = await self._wait_for_running(pod, deadline)
        except TimeoutError:
            return Outcome.unhealthy(
                ERR_CODE_STARTUP_TIMEOUT,
                f"synthetic pod {pod.name} was not running within {self.params.startup_timeout}s",
            )

        pull = await self._image_pull_duration(pod, deadline)
        duration = (started_at - pod.created_at).total_seconds() - pull
        logger.debug(f"Synthetic pod {pod.name} started in {duration:.2f}s (image pull {pull:.2f}s excluded)")
        if duration > self.params.startup_timeout:
            return Outcome.unhealthy(
                ERR_CODE_STARTUP_DURATION_EXCEEDED,
                f"pod startup took {duration:.2f}s excluding image pull, limit is {self.params.startup_timeout}s",
            )

        pod_ip = current.status.pod_ip if current.status else None
        if not pod_ip:
            raise PodStartupError(f"failed to get synthetic pod IP: pod {pod.name} has no IP assigned")

        try:
            await self.connect(pod_ip, self.params.port, deadline.bound(self.params.request_timeout))
        except Exception as e:
            return REQUEST_CODES.classify(e, f"connecting to synthetic pod {pod_ip}:{self.params.port}")
        return Outcome.healthy()

    async def _wait_for_running(self, pod: ManagedResource, deadline: Deadline) -> Tuple[datetime, Any]:
        """Poll the pod until its container runs."""
        while True:
            try:
                current = await call_api(
                    self.driver.core_v1.read_namespaced_pod,
                    pod.name,
                    pod.namespace,
                    timeout=deadline.bound(self.params.mutate_timeout),
                )
            except Exception as e:
                raise PodStartupError(f"failed to get synthetic pod {pod.name}: {e}") from e

            started_at = container_started_at(current)
            if started_at is not None:
                return started_at, current
            await asyncio.sleep(self.params.poll_interval)

    async def _image_pull_duration(self, pod: ManagedResource, deadline: Deadline) -> float:
        try:
            events = await call_api(
                self.driver.core_v1.list_namespaced_event,
                pod.namespace,
                field_selector=f"involvedObject.name={pod.name}",
                timeout=deadline.bound(self.params.mutate_timeout),
            )
        except Exception as e:
            raise PodStartupError(f"failed to list events for synthetic pod {pod.name}: {e}") from e

        try:
            return image_pull_duration(events.items or [])
        except ValueError as e:
            raise PodStartupError(f"failed to get image pull duration of synthetic pod {pod.name}: {e}") from e


def build_podstartup_probe(config: ProbeConfig, kube: Any) -> PodStartupProbe:
    params = PodStartupParams.from_config(config)
    probe = PodStartupProbe(config.name, params, config.timeout, kube)
    logger.info(
        f"Built PodStartupProbe name={config.name} namespace={params.namespace} "
        f"startup_timeout={params.startup_timeout}s"
    )
    return probe
