# clusterprobe Probe Types
"""
Probe implementations and the registry that maps probe type ids to them.
"""

from .base import Probe, ProbeBuilder, ProbeRegistry, UnrecognizedProbeType
from .apiserver_probe import APIServerProbe, build_apiserver_probe
from .podstartup_probe import PodStartupProbe, build_podstartup_probe
from .metricsserver_probe import MetricsServerProbe, build_metricsserver_probe
from .policy_probe import PolicyAdmissionProbe, build_policy_probe
from .dns_probe import DNSProbe, build_dns_probe


def default_registry() -> ProbeRegistry:
    """Registry with every built-in probe type."""
    registry = ProbeRegistry()
    registry.register(APIServerProbe.PROBE_TYPE, build_apiserver_probe)
    registry.register(PodStartupProbe.PROBE_TYPE, build_podstartup_probe)
    registry.register(MetricsServerProbe.PROBE_TYPE, build_metricsserver_probe)
    registry.register(PolicyAdmissionProbe.PROBE_TYPE, build_policy_probe)
    registry.register(DNSProbe.PROBE_TYPE, build_dns_probe)
    return registry


__all__ = [
    'Probe',
    'ProbeBuilder',
    'ProbeRegistry',
    'UnrecognizedProbeType',
    'APIServerProbe',
    'PodStartupProbe',
    'MetricsServerProbe',
    'PolicyAdmissionProbe',
    'DNSProbe',
    'default_registry',
]
