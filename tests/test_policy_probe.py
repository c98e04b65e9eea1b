"""
Tests for the policy admission probe
"""

import pytest
from unittest.mock import MagicMock

from kubernetes.client.rest import ApiException
from urllib3.exceptions import ReadTimeoutError

from clusterprobe.config import ConfigError, ProbeConfig
from clusterprobe.health import Deadline
from clusterprobe.probes.policy_probe import (
    DEFAULT_MATCHERS,
    DEFAULT_POLICY_MARKER,
    PolicyAdmissionParams,
    PolicyAdmissionProbe,
    build_policy_probe,
    warning_headers,
)

VIOLATION = (
    "[azurepolicy-k8sazurev2containerenforceprob-74321cbd58a88a12c510] Container <synthetic> "
    "in your Pod <policy-test-pod> has no <livenessProbe>. Required probes: "
    '["readinessProbe", "livenessProbe"]'
)


def make_probe():
    kube = MagicMock()
    params = PolicyAdmissionParams(
        namespace="default",
        policy_marker=DEFAULT_POLICY_MARKER,
        matchers=list(DEFAULT_MATCHERS),
        request_timeout=0.5,
    )
    return PolicyAdmissionProbe("policy", params, kube), kube.core_v1


def denied(body):
    error = ApiException(status=403, reason="Forbidden")
    error.body = body
    return error


class TestPolicyAdmissionParams:
    """Tests for policyAdmission parameter parsing."""

    def test_defaults(self):
        probe = build_policy_probe(
            ProbeConfig(name="policy", type="policyAdmission", interval=60, timeout=10), MagicMock()
        )
        assert probe.params.namespace == "default"
        assert probe.params.policy_marker == DEFAULT_POLICY_MARKER
        assert probe.params.matchers == DEFAULT_MATCHERS
        assert probe.params.request_timeout == 5.0

    def test_matchers_must_be_strings(self):
        config = ProbeConfig(
            name="policy", type="policyAdmission", interval=60, timeout=10,
            params={"matchers": [1, 2]},
        )
        with pytest.raises(ConfigError, match="'matchers'"):
            build_policy_probe(config, MagicMock())


class TestViolationMatching:
    """Tests for recognizing policy violations."""

    def test_marker_and_matcher(self):
        probe, _ = make_probe()
        assert probe.is_violation(VIOLATION)

    def test_marker_without_matcher(self):
        probe, _ = make_probe()
        assert not probe.is_violation(f"[{DEFAULT_POLICY_MARKER}-abc] image tag is latest")

    def test_matcher_without_marker(self):
        probe, _ = make_probe()
        assert not probe.is_violation("[other-policy] Container has no <livenessProbe>")

    def test_empty(self):
        probe, _ = make_probe()
        assert not probe.is_violation("")

    def test_warning_headers(self):
        assert warning_headers(None) == []
        assert warning_headers({"Warning": "x"}) == ["x"]
        assert warning_headers({"Content-Type": "application/json"}) == []


class TestPolicyAdmissionProbe:
    """Tests for PolicyAdmissionProbe.run()."""

    @pytest.mark.asyncio
    async def test_warning_header_is_healthy(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.return_value = (None, 201, {"Warning": VIOLATION})

        outcome = await probe.run(Deadline.after(1))

        assert outcome.is_healthy
        args = core.create_namespaced_pod_with_http_info.call_args
        assert args.args[0] == "default"
        assert args.kwargs["dry_run"] == "All"
        assert args.args[1].spec.containers[0].liveness_probe is None

    @pytest.mark.asyncio
    async def test_denial_is_healthy(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.side_effect = denied(
            f'{{"message": "admission webhook denied the request: {VIOLATION}"}}'
        )

        outcome = await probe.run(Deadline.after(1))

        assert outcome.is_healthy

    @pytest.mark.asyncio
    async def test_denial_body_as_bytes(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.side_effect = denied(VIOLATION.encode())

        outcome = await probe.run(Deadline.after(1))

        assert outcome.is_healthy

    @pytest.mark.asyncio
    async def test_admitted_without_warning_is_unhealthy(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.return_value = (None, 201, {})

        outcome = await probe.run(Deadline.after(1))

        assert outcome.code == "PolicyEnforcementMissing"

    @pytest.mark.asyncio
    async def test_unrelated_denial_is_unhealthy(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.side_effect = denied('{"message": "pods is forbidden"}')

        outcome = await probe.run(Deadline.after(1))

        assert outcome.code == "PolicyEnforcementMissing"

    @pytest.mark.asyncio
    async def test_timeout(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.side_effect = ReadTimeoutError(None, "/api", "Read timed out")

        outcome = await probe.run(Deadline.after(1))

        assert outcome.code == "PolicyDryRunTimeout"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        probe, core = make_probe()
        core.create_namespaced_pod_with_http_info.side_effect = ConnectionRefusedError("connection refused")

        outcome = await probe.run(Deadline.after(1))

        assert outcome.code == "PolicyDryRunError"
