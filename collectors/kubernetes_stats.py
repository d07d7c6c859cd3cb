# collectors/kubernetes_stats.py
"""
Collects per-container CPU and memory utilization from a Kubernetes cluster.

Declared limits come from the pod specs (core API), measured usage from
the metrics.k8s.io extension. Percentages are usage relative to the
container's limit, or 0 when no limit is declared.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from collectors.quantity import to_bytes, to_millicores
from ingestion.sample import MIB, Sample, utc_now

logger = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

LimitKey = Tuple[str, str, str]


@dataclass(frozen=True)
class ContainerLimits:
    """Declared ceilings; 0 means no limit configured"""
    cpu_millis: int = 0
    mem_bytes: int = 0


def build_limit_index(pods: Iterable[Any]) -> Dict[LimitKey, ContainerLimits]:
    """Index declared container limits by (namespace, pod, container)"""
    index: Dict[LimitKey, ContainerLimits] = {}

    for pod in pods:
        namespace = pod.metadata.namespace
        pod_name = pod.metadata.name

        for container in (pod.spec.containers or []):
            limits = (container.resources.limits if container.resources else None) or {}
            key = (namespace, pod_name, container.name)

            try:
                index[key] = ContainerLimits(
                    cpu_millis=to_millicores(limits.get("cpu")),
                    mem_bytes=to_bytes(limits.get("memory")),
                )
            except ValueError as e:
                logger.warning(f"Ignoring limits of {'/'.join(key)}: {e}")
                index[key] = ContainerLimits()

    return index


def samples_from_metrics(
    pod_metrics: Iterable[Dict[str, Any]],
    limits: Dict[LimitKey, ContainerLimits],
    captured_at: datetime,
) -> List[Sample]:
    """
    One sample per reported container. Every container of a pod is
    reported under the pod's "namespace/name".
    """
    samples = []

    for pm in pod_metrics:
        metadata = pm.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        pod_name = metadata.get("name", "")
        display_name = f"{namespace}/{pod_name}"

        for cm in pm.get("containers") or []:
            usage = cm.get("usage") or {}
            try:
                cpu_used_millis = to_millicores(usage.get("cpu"))
                mem_used_bytes = to_bytes(usage.get("memory"))
            except ValueError as e:
                logger.warning(f"Skipping container {display_name}/{cm.get('name')}: {e}")
                continue

            lim = limits.get((namespace, pod_name, cm.get("name")), ContainerLimits())

            cpu_pct = cpu_used_millis / lim.cpu_millis * 100.0 if lim.cpu_millis > 0 else 0.0
            mem_pct = mem_used_bytes / lim.mem_bytes * 100.0 if lim.mem_bytes > 0 else 0.0

            samples.append(Sample(
                captured_at=captured_at,
                entity_name=display_name,
                cpu_pct=cpu_pct,
                mem_usage_mb=mem_used_bytes / MIB,
                mem_limit_mb=lim.mem_bytes / MIB,
                mem_pct=mem_pct,
            ))

    return samples


class KubernetesCollector:
    """Samples pod containers matching an optional namespace and label selector"""

    def __init__(
        self,
        namespace: str = "",
        selector: str = "",
        context: str = "",
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        debug: bool = False,
    ):
        self.namespace = namespace or ""
        self.selector = selector or ""
        self.context = context or ""
        self.core_api = core_api
        self.custom_api = custom_api
        self.debug = debug

    def connect(self) -> "KubernetesCollector":
        """
        Load credentials (kubeconfig, or the in-cluster service account when
        no kubeconfig exists and no context was requested) and check the API
        server answers. Raises RuntimeError on failure.
        """
        if self.core_api is None or self.custom_api is None:
            api_client = self._load_api_client()
            self.core_api = client.CoreV1Api(api_client)
            self.custom_api = client.CustomObjectsApi(api_client)

            try:
                version = client.VersionApi(api_client).get_code()
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                raise RuntimeError(f"Cannot reach Kubernetes API server: {e}") from e
            logger.info(f"Connected to Kubernetes {version.git_version}")

        logger.info(
            f"KubernetesCollector ready (namespace={self.namespace or '*'}, "
            f"selector={self.selector!r}, context={self.context or 'current'})"
        )
        return self

    def _load_api_client(self) -> client.ApiClient:
        try:
            return config.new_client_from_config(context=self.context or None)
        except ConfigException as e:
            if self.context:
                raise RuntimeError(f"kubeconfig: {e}") from e
            kubeconfig_error = e

        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
        except ConfigException as e:
            raise RuntimeError(
                f"kubeconfig: {kubeconfig_error}; in-cluster config: {e}"
            ) from e
        return client.ApiClient(configuration)

    # --------------------------------------------------
    # Collection cycle
    # --------------------------------------------------
    async def collect(
        self,
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
    ) -> List[Sample]:
        """Collect one sample per container reported by the metrics API"""
        namespace = self.namespace if namespace is None else namespace
        selector = self.selector if selector is None else selector
        captured_at = utc_now()

        try:
            pods = await asyncio.to_thread(self._list_pods, namespace, selector)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Listing pods failed, skipping cycle: {e}")
            return []

        limits = build_limit_index(pods)

        try:
            pod_metrics = await asyncio.to_thread(self._list_pod_metrics, namespace, selector)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Listing pod metrics failed, skipping cycle: {e}")
            return []

        samples = samples_from_metrics(pod_metrics, limits, captured_at)

        if self.debug:
            for sample in samples:
                logger.info(f"  {sample.describe()}")
        logger.debug(f"Kubernetes cycle: {len(samples)} containers sampled")

        return samples

    def _list_pods(self, namespace: str, selector: str) -> List[Any]:
        kwargs = {"label_selector": selector} if selector else {}
        if namespace:
            result = self.core_api.list_namespaced_pod(namespace, **kwargs)
        else:
            result = self.core_api.list_pod_for_all_namespaces(**kwargs)
        return result.items

    def _list_pod_metrics(self, namespace: str, selector: str) -> List[Dict[str, Any]]:
        kwargs = {"label_selector": selector} if selector else {}
        if namespace:
            result = self.custom_api.list_namespaced_custom_object(
                METRICS_GROUP, METRICS_VERSION, namespace, "pods", **kwargs
            )
        else:
            result = self.custom_api.list_cluster_custom_object(
                METRICS_GROUP, METRICS_VERSION, "pods", **kwargs
            )
        return result.get("items") or []
