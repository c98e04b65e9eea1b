"""
Tests for the Kubernetes client adapter and lifecycle drivers
"""

import pytest
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kubernetes.client.rest import ApiException

from clusterprobe.health import ManagedResource, ResourceGone
from clusterprobe.tools.kubernetes import (
    ConfigMapDriver,
    KubeClients,
    PodDriver,
    call_api,
    is_not_found,
    label_selector,
)


class TestKubeClients:
    """Tests for lazy client loading."""

    def test_nothing_loaded_until_used(self):
        with patch("clusterprobe.tools.kubernetes.config") as mock_config:
            KubeClients()
        mock_config.load_incluster_config.assert_not_called()
        mock_config.load_kube_config.assert_not_called()

    def test_falls_back_to_kubeconfig(self):
        with patch("clusterprobe.tools.kubernetes.config") as mock_config, \
             patch("clusterprobe.tools.kubernetes.client") as mock_client:
            mock_config.ConfigException = Exception
            mock_config.load_incluster_config.side_effect = Exception("not in cluster")

            kube = KubeClients()
            core = kube.core_v1

        mock_config.load_kube_config.assert_called_once_with()
        assert core is mock_client.CoreV1Api.return_value
        assert kube.core_v1 is core

    def test_explicit_kubeconfig(self):
        with patch("clusterprobe.tools.kubernetes.config") as mock_config, \
             patch("clusterprobe.tools.kubernetes.client"):
            KubeClients("/tmp/kubeconfig").discovery_v1

        mock_config.load_kube_config.assert_called_once_with(config_file="/tmp/kubeconfig")
        mock_config.load_incluster_config.assert_not_called()

    def test_load_failure(self):
        with patch("clusterprobe.tools.kubernetes.config") as mock_config:
            mock_config.load_kube_config.side_effect = FileNotFoundError("no kubeconfig")
            with pytest.raises(RuntimeError, match="Failed to load Kubernetes config"):
                KubeClients("/missing").custom_objects


class TestCallApi:
    """Tests for deadline-bounded API calls."""

    @pytest.mark.asyncio
    async def test_passes_request_timeout(self):
        func = MagicMock(return_value="ok")

        result = await call_api(func, "a", timeout=1.5, label_selector="x=y")

        assert result == "ok"
        func.assert_called_once_with("a", _request_timeout=1.5, label_selector="x=y")

    @pytest.mark.asyncio
    async def test_no_time_left(self):
        func = MagicMock()
        with pytest.raises(TimeoutError):
            await call_api(func, timeout=0)
        func.assert_not_called()

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        started = time.monotonic()
        with pytest.raises(TimeoutError):
            await call_api(lambda **kwargs: time.sleep(0.5), timeout=0.05)
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_api_errors_propagate(self):
        func = MagicMock(side_effect=ApiException(status=409, reason="Conflict"))
        with pytest.raises(ApiException):
            await call_api(func, timeout=1)


class TestHelpers:
    def test_label_selector(self):
        assert label_selector({"b": "2", "a": "1"}) == "a=1,b=2"

    def test_is_not_found(self):
        assert is_not_found(ApiException(status=404))
        assert not is_not_found(ApiException(status=500))
        assert not is_not_found(RuntimeError())


class TestDrivers:
    """Tests for the ConfigMap and Pod drivers."""

    def make_kube(self):
        kube = MagicMock()
        return kube, kube.core_v1

    def test_name_prefix_and_labels(self):
        kube, _ = self.make_kube()
        driver = ConfigMapDriver(kube, "kube-system", "clusterprobe.io/owner")

        name = driver.new_name("API-Server")
        body = driver.build("API-Server", name)

        assert name.startswith("api-server-empty-configmap-")
        assert body.metadata.labels == {"clusterprobe.io/owner": "API-Server"}
        assert body.metadata.namespace == "kube-system"

    @pytest.mark.asyncio
    async def test_list_owned_filters_by_prefix(self):
        kube, core = self.make_kube()
        created = datetime.now(timezone.utc)
        core.list_namespaced_pod.return_value = SimpleNamespace(items=[
            SimpleNamespace(metadata=SimpleNamespace(name="pods-synthetic-1", namespace="default", creation_timestamp=created)),
            SimpleNamespace(metadata=SimpleNamespace(name="unrelated", namespace="default", creation_timestamp=created)),
        ])
        driver = PodDriver(kube, "default", "clusterprobe.io/owner")

        resources = await driver.list_owned("pods", timeout=1)

        assert [r.name for r in resources] == ["pods-synthetic-1"]
        assert resources[0].kind == "Pod"
        assert resources[0].owner == "pods"
        assert resources[0].created_at == created

    @pytest.mark.asyncio
    async def test_delete_not_found_raises_gone(self):
        kube, core = self.make_kube()
        core.delete_namespaced_config_map.side_effect = ApiException(status=404)
        driver = ConfigMapDriver(kube, "kube-system", "clusterprobe.io/owner")
        resource = ManagedResource("ConfigMap", "cm", "kube-system", "api", datetime.now(timezone.utc))

        with pytest.raises(ResourceGone):
            await driver.delete(resource, timeout=1)

    @pytest.mark.asyncio
    async def test_pod_delete_has_no_grace_period(self):
        kube, core = self.make_kube()
        driver = PodDriver(kube, "default", "clusterprobe.io/owner")
        resource = ManagedResource("Pod", "p", "default", "pods", datetime.now(timezone.utc))

        await driver.delete(resource, timeout=1)

        kwargs = core.delete_namespaced_pod.call_args.kwargs
        assert kwargs["grace_period_seconds"] == 0

    def test_pod_spec(self):
        kube, _ = self.make_kube()
        driver = PodDriver(kube, "default", "clusterprobe.io/owner", image="example/web:1", port=8080)

        pod = driver.build("pods", "pods-synthetic-1")

        assert pod.spec.restart_policy == "Never"
        assert pod.spec.containers[0].image == "example/web:1"
        assert pod.spec.containers[0].ports[0].container_port == 8080
        assert pod.spec.tolerations[0].key == "CriticalAddonsOnly"
