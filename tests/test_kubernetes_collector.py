import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from collectors import kubernetes_stats
from collectors.kubernetes_stats import (
    ContainerLimits,
    KubernetesCollector,
    build_limit_index,
    samples_from_metrics,
)

TS = datetime(2024, 5, 1, tzinfo=timezone.utc)


def pod(namespace, name, containers):
    """containers: {name: limits-dict-or-None}"""
    return SimpleNamespace(
        metadata=SimpleNamespace(namespace=namespace, name=name),
        spec=SimpleNamespace(containers=[
            SimpleNamespace(name=cname, resources=SimpleNamespace(limits=limits))
            for cname, limits in containers.items()
        ]),
    )


def pod_metrics(namespace, name, containers):
    """containers: {name: (cpu, memory)}"""
    return {
        "metadata": {"namespace": namespace, "name": name},
        "containers": [
            {"name": cname, "usage": {"cpu": cpu, "memory": mem}}
            for cname, (cpu, mem) in containers.items()
        ],
    }


class FakeCoreAPI:
    def __init__(self, pods, error=None):
        self.pods = pods
        self.error = error
        self.calls = []

    def list_namespaced_pod(self, namespace, **kwargs):
        self.calls.append(("namespaced", namespace, kwargs))
        return self._result()

    def list_pod_for_all_namespaces(self, **kwargs):
        self.calls.append(("all", None, kwargs))
        return self._result()

    def _result(self):
        if self.error:
            raise self.error
        return SimpleNamespace(items=self.pods)


class FakeCustomAPI:
    def __init__(self, items, error=None):
        self.items = items
        self.error = error
        self.calls = []

    def list_namespaced_custom_object(self, group, version, namespace, plural, **kwargs):
        self.calls.append(("namespaced", group, version, namespace, plural, kwargs))
        return self._result()

    def list_cluster_custom_object(self, group, version, plural, **kwargs):
        self.calls.append(("all", group, version, None, plural, kwargs))
        return self._result()

    def _result(self):
        if self.error:
            raise self.error
        return {"items": self.items}


def make_collector(pods, metrics, pods_error=None, metrics_error=None, **kwargs):
    core = FakeCoreAPI(pods, pods_error)
    custom = FakeCustomAPI(metrics, metrics_error)
    collector = KubernetesCollector(core_api=core, custom_api=custom, **kwargs)
    return collector, core, custom


# --------------------------------------------------
# Limit index
# --------------------------------------------------
def test_build_limit_index():
    index = build_limit_index([
        pod("ns", "web", {
            "app": {"cpu": "500m", "memory": "256Mi"},
            "sidecar": {"cpu": "1"},
            "nolimits": None,
        }),
    ])

    assert index[("ns", "web", "app")] == ContainerLimits(500, 256 * 1024 * 1024)
    assert index[("ns", "web", "sidecar")] == ContainerLimits(1000, 0)
    assert index[("ns", "web", "nolimits")] == ContainerLimits(0, 0)


def test_build_limit_index_bad_quantity_zeroes_limits():
    index = build_limit_index([pod("ns", "web", {"app": {"cpu": "lots", "memory": "1Gi"}})])
    assert index[("ns", "web", "app")] == ContainerLimits()


# --------------------------------------------------
# Sample conversion
# --------------------------------------------------
def test_samples_example():
    limits = {("ns", "web", "app"): ContainerLimits(cpu_millis=500, mem_bytes=256 * 1024 * 1024)}
    samples = samples_from_metrics(
        [pod_metrics("ns", "web", {"app": ("250m", "128Mi")})], limits, TS
    )

    assert len(samples) == 1
    s = samples[0]
    assert s.entity_name == "ns/web"
    assert s.captured_at == TS
    assert s.cpu_pct == pytest.approx(50.0)
    assert s.mem_usage_mb == pytest.approx(128.0)
    assert s.mem_limit_mb == pytest.approx(256.0)
    assert s.mem_pct == pytest.approx(50.0)


def test_samples_without_limit_have_zero_percent():
    samples = samples_from_metrics(
        [pod_metrics("ns", "web", {"app": ("250m", "128Mi")})], {}, TS
    )

    s = samples[0]
    assert s.cpu_pct == 0.0
    assert s.mem_pct == 0.0
    assert s.mem_limit_mb == 0.0
    assert s.mem_usage_mb == pytest.approx(128.0)


def test_samples_nanocore_usage():
    limits = {("ns", "web", "app"): ContainerLimits(cpu_millis=1000, mem_bytes=0)}
    samples = samples_from_metrics(
        [pod_metrics("ns", "web", {"app": ("125000000n", "1024Ki")})], limits, TS
    )
    assert samples[0].cpu_pct == pytest.approx(12.5)
    assert samples[0].mem_usage_mb == pytest.approx(1.0)


def test_multi_container_pod_shares_entity_name():
    limits = {
        ("ns", "web", "app"): ContainerLimits(500, 256 * 1024 * 1024),
        ("ns", "web", "proxy"): ContainerLimits(100, 64 * 1024 * 1024),
    }
    samples = samples_from_metrics(
        [pod_metrics("ns", "web", {"app": ("250m", "128Mi"), "proxy": ("10m", "16Mi")})],
        limits,
        TS,
    )

    assert [s.entity_name for s in samples] == ["ns/web", "ns/web"]
    assert samples[0].cpu_pct != samples[1].cpu_pct
    assert samples[1].cpu_pct == pytest.approx(10.0)
    assert samples[1].mem_pct == pytest.approx(25.0)


def test_bad_usage_skips_only_that_container():
    samples = samples_from_metrics(
        [pod_metrics("ns", "web", {"app": ("garbage", "128Mi"), "proxy": ("10m", "16Mi")})],
        {},
        TS,
    )
    assert len(samples) == 1
    assert samples[0].mem_usage_mb == pytest.approx(16.0)


# --------------------------------------------------
# Collection cycle
# --------------------------------------------------
def test_collect_joins_limits_and_usage():
    collector, core, custom = make_collector(
        pods=[pod("ns", "web", {"app": {"cpu": "500m", "memory": "256Mi"}})],
        metrics=[pod_metrics("ns", "web", {"app": ("250m", "128Mi")})],
        namespace="ns",
        selector="app=web",
    )

    samples = asyncio.run(collector.collect())

    assert len(samples) == 1
    assert samples[0].cpu_pct == pytest.approx(50.0)
    assert samples[0].mem_pct == pytest.approx(50.0)
    assert core.calls == [("namespaced", "ns", {"label_selector": "app=web"})]
    assert custom.calls == [
        ("namespaced", "metrics.k8s.io", "v1beta1", "ns", "pods", {"label_selector": "app=web"})
    ]


def test_collect_all_namespaces_without_selector():
    collector, core, custom = make_collector(pods=[], metrics=[])

    assert asyncio.run(collector.collect()) == []
    assert core.calls == [("all", None, {})]
    assert custom.calls == [("all", "metrics.k8s.io", "v1beta1", None, "pods", {})]


def test_collect_arguments_override_defaults():
    collector, core, _ = make_collector(pods=[], metrics=[], namespace="ns")

    asyncio.run(collector.collect(namespace="other", selector="tier=db"))

    assert core.calls == [("namespaced", "other", {"label_selector": "tier=db"})]


def test_collect_skips_cycle_when_pod_listing_fails():
    collector, _, custom = make_collector(
        pods=[], metrics=[pod_metrics("ns", "web", {"app": ("250m", "128Mi")})],
        pods_error=ApiException(status=403, reason="Forbidden"),
    )

    assert asyncio.run(collector.collect()) == []
    assert custom.calls == []


def test_collect_skips_cycle_when_metrics_listing_fails():
    collector, _, _ = make_collector(
        pods=[pod("ns", "web", {"app": {"cpu": "500m"}})], metrics=[],
        metrics_error=ApiException(status=404, reason="Not Found"),
    )

    assert asyncio.run(collector.collect()) == []


def test_connect_with_injected_apis_does_not_load_config():
    collector, _, _ = make_collector(pods=[], metrics=[])
    assert collector.connect() is collector


# --------------------------------------------------
# Connect
# --------------------------------------------------
class FakeVersionApi:
    error = None

    def __init__(self, api_client):
        self.api_client = api_client

    def get_code(self):
        if self.error:
            raise self.error
        return SimpleNamespace(git_version="v1.30.0")


@pytest.fixture
def no_kubeconfig(monkeypatch):
    def missing(context=None):
        raise ConfigException("Invalid kube-config file. No configuration found.")

    monkeypatch.setattr(kubernetes_stats.config, "new_client_from_config", missing)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_PORT", raising=False)


def test_connect_without_kubeconfig_or_cluster_is_fatal(no_kubeconfig):
    with pytest.raises(RuntimeError, match="in-cluster config"):
        KubernetesCollector().connect()


def test_connect_with_explicit_context_does_not_fall_back(no_kubeconfig, monkeypatch):
    calls = []
    monkeypatch.setattr(
        kubernetes_stats.config, "load_incluster_config",
        lambda **kwargs: calls.append(kwargs),
    )

    with pytest.raises(RuntimeError, match="kubeconfig"):
        KubernetesCollector(context="kind-dev").connect()
    assert calls == []


def test_connect_falls_back_to_in_cluster_config(no_kubeconfig, monkeypatch):
    def in_cluster(client_configuration=None):
        client_configuration.host = "https://10.96.0.1:443"

    monkeypatch.setattr(kubernetes_stats.config, "load_incluster_config", in_cluster)
    monkeypatch.setattr(kubernetes_stats.client, "VersionApi", FakeVersionApi)

    collector = KubernetesCollector().connect()

    assert collector.core_api.api_client.configuration.host == "https://10.96.0.1:443"
    assert collector.custom_api.api_client is collector.core_api.api_client


@pytest.mark.parametrize("error", [
    ApiException(status=401, reason="Unauthorized"),
    urllib3.exceptions.MaxRetryError(None, "/version/"),
])
def test_connect_fails_when_api_server_does_not_answer(monkeypatch, error):
    class FailingVersionApi(FakeVersionApi):
        pass

    FailingVersionApi.error = error
    monkeypatch.setattr(
        kubernetes_stats.config, "new_client_from_config",
        lambda context=None: client.ApiClient(client.Configuration()),
    )
    monkeypatch.setattr(kubernetes_stats.client, "VersionApi", FailingVersionApi)

    with pytest.raises(RuntimeError, match="Cannot reach Kubernetes API server"):
        KubernetesCollector().connect()
