"""
DNS Probe

Resolves a domain against the CoreDNS service, every ready CoreDNS endpoint,
and any LocalDNS nameserver listed in the node's resolv.conf.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver
from kubernetes.client.rest import ApiException

from ..config import ParamReader, ProbeConfig
from ..health.classifier import StepCodes
from ..health.models import Deadline, Outcome
from ..tools.kubernetes import call_api, is_not_found
from .base import Probe

logger = logging.getLogger(__name__)

PROBE_TYPE = "dns"

COREDNS_NAMESPACE = "kube-system"
COREDNS_SERVICE_NAME = "kube-dns"
SERVICE_NAME_LABEL = "kubernetes.io/service-name"
RESOLV_CONF_PATH = "/etc/resolv.conf"
LOCAL_DNS_IPS = frozenset({"169.254.10.10", "169.254.10.11"})

ERR_CODE_SERVICE_NOT_READY = "ServiceNotReady"
ERR_CODE_PODS_NOT_READY = "PodsNotReady"
SERVICE_CODES = StepCodes("ServiceTimeout", "ServiceError")
POD_CODES = StepCodes("PodTimeout", "PodError")
LOCAL_DNS_CODES = StepCodes("LocalDNSTimeout", "LocalDnsError")

# (nameserver ip, domain, timeout) -> resolved addresses
LookupHost = Callable[[str, str, float], Awaitable[List[str]]]


class DNSTargetNotReady(Exception):
    """The CoreDNS service or its pods cannot be queried yet."""


async def lookup_host(server: str, domain: str, timeout: float) -> List[str]:
    """
    Resolve ``domain`` to its A (or, failing that, AAAA) records using only
    ``server``.

    Raises:
        TimeoutError: If the server does not answer within ``timeout``
        dns.exception.DNSException: On any other resolution failure
    """
    if timeout <= 0:
        raise TimeoutError("deadline exceeded before the query was sent")

    resolver = dns.asyncresolver.Resolver(configure=False)
    resolver.nameservers = [server]
    resolver.lifetime = timeout
    try:
        async with asyncio.timeout(timeout):
            try:
                answer = await resolver.resolve(domain, "A")
            except dns.resolver.NoAnswer:
                answer = await resolver.resolve(domain, "AAAA")
    except dns.exception.Timeout as e:
        raise TimeoutError(f"query to {server} timed out") from e
    return [rdata.to_text() for rdata in answer]


def read_local_dns_ips(path: str = RESOLV_CONF_PATH) -> List[str]:
    """Nameservers in ``path`` that are LocalDNS addresses."""
    ips = []
    with open(path, "r") as f:
        for line in f:
            fields = line.split()
            if len(fields) >= 2 and fields[0] == "nameserver" and fields[1] in LOCAL_DNS_IPS:
                ips.append(fields[1])
    return ips


@dataclass
class DNSParams:
    """
    Attributes:
        domain: Name every target must resolve
        query_timeout: Bound on each query
    """
    domain: str
    query_timeout: float

    @classmethod
    def from_config(cls, config: ProbeConfig) -> "DNSParams":
        reader = ParamReader(config)
        params = cls(
            domain=reader.string("domain"),
            query_timeout=reader.step_timeout("queryTimeout", "2s"),
        )
        reader.finish()
        return params


class DNSProbe(Probe):
    """Cluster DNS probe."""

    PROBE_TYPE = PROBE_TYPE

    def __init__(
        self,
        name: str,
        params: DNSParams,
        kube: Any,
        resolver: Optional[LookupHost] = None,
        resolv_conf: str = RESOLV_CONF_PATH,
    ):
        super().__init__(name)
        self.params = params
        self.kube = kube
        self.resolver = resolver or lookup_host
        self.resolv_conf = resolv_conf

    async def get_service_ip(self, deadline: Deadline) -> str:
        """ClusterIP of the CoreDNS service."""
        try:
            svc = await call_api(
                self.kube.core_v1.read_namespaced_service,
                COREDNS_SERVICE_NAME,
                COREDNS_NAMESPACE,
                timeout=deadline.bound(),
            )
        except ApiException as e:
            if is_not_found(e):
                raise DNSTargetNotReady("CoreDNS service not found") from e
            raise

        cluster_ip = svc.spec.cluster_ip if svc.spec else None
        if not cluster_ip or cluster_ip == "None":
            raise DNSTargetNotReady("CoreDNS service has no cluster IP")
        return cluster_ip

    async def get_pod_ips(self, deadline: Deadline) -> List[str]:
        """Addresses of the ready CoreDNS endpoints."""
        try:
            slices = await call_api(
                self.kube.discovery_v1.list_namespaced_endpoint_slice,
                COREDNS_NAMESPACE,
                label_selector=f"{SERVICE_NAME_LABEL}={COREDNS_SERVICE_NAME}",
                timeout=deadline.bound(),
            )
        except ApiException as e:
            if is_not_found(e):
                raise DNSTargetNotReady("CoreDNS endpoint slices not found") from e
            raise

        ips = []
        for endpoint_slice in slices.items:
            for endpoint in endpoint_slice.endpoints or []:
                # An unset ready condition means ready.
                conditions = endpoint.conditions
                if conditions is not None and conditions.ready is False:
                    continue
                ips.extend(endpoint.addresses or [])
        if not ips:
            raise DNSTargetNotReady("no ready CoreDNS endpoints")
        return ips

    def get_local_dns_ips(self) -> List[str]:
        try:
            return read_local_dns_ips(self.resolv_conf)
        except OSError as e:
            # LocalDNS is optional; carry on without it.
            logger.error(f"Failed to read LocalDNS IPs from {self.resolv_conf}: {e}")
            return []

    async def _query(self, servers: List[str], codes: StepCodes, target: str, deadline: Deadline) -> Optional[Outcome]:
        for server in servers:
            try:
                await self.resolver(server, self.params.domain, deadline.bound(self.params.query_timeout))
            except Exception as e:
                return codes.classify(e, f"querying {target} {server}")
        return None

    async def run(self, deadline: Deadline) -> Outcome:
        try:
            service_ip = await self.get_service_ip(deadline)
        except DNSTargetNotReady as e:
            return Outcome.unhealthy(ERR_CODE_SERVICE_NOT_READY, str(e))
        failure = await self._query([service_ip], SERVICE_CODES, "CoreDNS service", deadline)
        if failure is not None:
            return failure

        try:
            pod_ips = await self.get_pod_ips(deadline)
        except DNSTargetNotReady as e:
            return Outcome.unhealthy(ERR_CODE_PODS_NOT_READY, str(e))
        failure = await self._query(pod_ips, POD_CODES, "CoreDNS pod", deadline)
        if failure is not None:
            return failure

        local_ips = self.get_local_dns_ips()
        if local_ips:
            logger.debug(f"Found LocalDNS IPs: {local_ips}")
            failure = await self._query(local_ips, LOCAL_DNS_CODES, "LocalDNS", deadline)
            if failure is not None:
                return failure

        return Outcome.healthy()


def build_dns_probe(config: ProbeConfig, kube: Any) -> DNSProbe:
    params = DNSParams.from_config(config)
    probe = DNSProbe(config.name, params, kube)
    logger.info(f"Built DNSProbe name={config.name} domain={params.domain}")
    return probe
