"""
Policy Admission Probe

Dry-run creates a pod with no liveness or readiness probes. When the
admission policy is enforced, the API server either denies the request or
answers with a warning header naming the policy. Nothing is persisted, so
this probe does not use the resource lifecycle helper.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, List

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import ParamReader, ProbeConfig
from ..health.classifier import StepCodes
from ..health.models import Deadline, Outcome
from ..tools.kubernetes import SYNTHETIC_POD_IMAGE, call_api
from .base import Probe

logger = logging.getLogger(__name__)

PROBE_TYPE = "policyAdmission"

DRY_RUN_CODES = StepCodes("PolicyDryRunTimeout", "PolicyDryRunError")
ERR_CODE_ENFORCEMENT_MISSING = "PolicyEnforcementMissing"

DEFAULT_POLICY_MARKER = "azurepolicy-k8sazurev2containerenforceprob"
DEFAULT_MATCHERS = ["has no <livenessProbe>", "has no <readinessProbe>"]


@dataclass
class PolicyAdmissionParams:
    """
    Attributes:
        namespace: Namespace of the dry-run pod; must allow pod creation
        policy_marker: Text identifying the policy in admission responses
        matchers: Any one of these, next to the marker, counts as enforcement
        request_timeout: Bound on the dry-run request
    """
    namespace: str
    policy_marker: str
    matchers: List[str]
    request_timeout: float

    @classmethod
    def from_config(cls, config: ProbeConfig) -> "PolicyAdmissionParams":
        reader = ParamReader(config)
        params = cls(
            namespace=reader.namespace("namespace", "default"),
            policy_marker=reader.string("policyMarker", DEFAULT_POLICY_MARKER),
            matchers=reader.string_list("matchers", DEFAULT_MATCHERS),
            request_timeout=reader.step_timeout("requestTimeout", "5s"),
        )
        reader.finish()
        return params


def warning_headers(headers: Any) -> List[str]:
    """All ``Warning`` header values of a response."""
    if not headers:
        return []
    if hasattr(headers, "getlist"):
        return list(headers.getlist("Warning"))
    value = headers.get("Warning")
    return [value] if value else []


class PolicyAdmissionProbe(Probe):
    """Admission policy enforcement probe."""

    PROBE_TYPE = PROBE_TYPE

    def __init__(self, name: str, params: PolicyAdmissionParams, kube: Any):
        super().__init__(name)
        self.params = params
        self.kube = kube

    def build_pod(self) -> client.V1Pod:
        # No probes on purpose: the policy under test requires them.
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=f"{self.name}-test-pod-{int(time.time())}",
                namespace=self.params.namespace,
            ),
            spec=client.V1PodSpec(
                restart_policy="Never",
                containers=[client.V1Container(name="synthetic", image=SYNTHETIC_POD_IMAGE)],
            ),
        )

    def is_violation(self, message: str) -> bool:
        """True when ``message`` reports the policy rejecting the pod."""
        if not message or self.params.policy_marker not in message:
            return False
        return any(matcher in message for matcher in self.params.matchers)

    def _any_violation(self, messages: Iterable[str]) -> bool:
        return any(self.is_violation(m) for m in messages)

    async def run(self, deadline: Deadline) -> Outcome:
        messages: List[str] = []
        try:
            _, _, headers = await call_api(
                self.kube.core_v1.create_namespaced_pod_with_http_info,
                self.params.namespace,
                self.build_pod(),
                dry_run="All",
                timeout=deadline.bound(self.params.request_timeout),
            )
            messages.extend(warning_headers(headers))
        except ApiException as e:
            # Denied requests carry the violation in the body; audited ones in warnings.
            body = e.body.decode("utf-8", "replace") if isinstance(e.body, bytes) else e.body
            messages.append(body or e.reason or "")
            messages.extend(warning_headers(e.headers))
        except Exception as e:
            return DRY_RUN_CODES.classify(e, "dry-run creating pod")

        if self._any_violation(messages):
            return Outcome.healthy()

        logger.debug(f"Probe {self.name}: no policy violation in {len(messages)} admission messages")
        return Outcome.unhealthy(ERR_CODE_ENFORCEMENT_MISSING, "no policy violations detected")


def build_policy_probe(config: ProbeConfig, kube: Any) -> PolicyAdmissionProbe:
    params = PolicyAdmissionParams.from_config(config)
    probe = PolicyAdmissionProbe(config.name, params, kube)
    logger.info(f"Built PolicyAdmissionProbe name={config.name} namespace={params.namespace}")
    return probe
