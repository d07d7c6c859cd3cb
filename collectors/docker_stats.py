# collectors/docker_stats.py
"""
Collects per-container CPU and memory utilization from a Docker engine.

Each cycle lists running containers and fetches one stats snapshot per
container in parallel on a pool of max_workers threads. A snapshot carries both
the current and the previous cumulative CPU counters, so no state is kept
between cycles.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

import docker
import requests
from docker.errors import DockerException

from ingestion.sample import MIB, Sample, utc_now

logger = logging.getLogger(__name__)

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


def docker_cpu_percent(stats: Dict[str, Any]) -> float:
    """
    CPU utilization since the previous sample the engine kept for us.
    100% means one full logical CPU; a container can exceed 100%.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}

    cpu_delta = (
        (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
        - (precpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
    )
    sys_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)

    # Just started, clock skew or counter wraparound
    if sys_delta <= 0 or cpu_delta < 0:
        return 0.0

    online_cpus = cpu_stats.get("online_cpus") or 1
    return (cpu_delta / sys_delta) * online_cpus * 100.0


def docker_memory(stats: Dict[str, Any]) -> Tuple[float, float, float]:
    """
    Working-set memory as (usage_mb, limit_mb, percent).

    Reclaimable page cache is subtracted from raw usage: inactive_file on
    cgroup v2, cache on cgroup v1.
    """
    memory_stats = stats.get("memory_stats") or {}
    counters = memory_stats.get("stats") or {}

    usage = float(memory_stats.get("usage", 0) or 0)

    inactive_file = counters.get("inactive_file", 0) or 0
    cache = counters.get("cache", 0) or 0
    if inactive_file > 0:
        usage -= inactive_file
    elif cache > 0:
        usage -= cache
    usage = max(usage, 0.0)

    limit = float(memory_stats.get("limit", 0) or 0)
    pct = usage / limit * 100.0 if limit > 0 else 0.0

    return usage / MIB, limit / MIB, pct


def container_name(names: Optional[Sequence[str]]) -> str:
    for name in names or ():
        return name.lstrip("/")
    return "unknown"


class DockerCollector:
    """Samples every running container on one Docker engine"""

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        max_workers: int = 16,
        compose_project: Optional[str] = None,
        debug: bool = False,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")

        self.client = client
        self.max_workers = max_workers
        self.compose_project = compose_project
        self.debug = debug
        self._executor: Optional[ThreadPoolExecutor] = None

    def connect(self) -> "DockerCollector":
        """
        Create the engine client from the environment (DOCKER_HOST etc.)
        and verify the engine answers. Raises RuntimeError if it does not.
        """
        try:
            if self.client is None:
                self.client = docker.from_env()
            self.client.ping()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeError(f"Cannot reach Docker daemon: {e}") from e

        logger.info(f"DockerCollector connected (max_workers={self.max_workers})")
        return self

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        if self.client is not None:
            self.client.close()

    def _run_blocking(self, func, *args):
        """Run a blocking engine call on the collector's own pool of max_workers threads"""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="docker-stats"
            )
        return asyncio.get_running_loop().run_in_executor(self._executor, func, *args)

    # --------------------------------------------------
    # Collection cycle
    # --------------------------------------------------
    async def collect(self) -> List[Sample]:
        """Collect one sample per running container; failed containers are left out"""
        captured_at = utc_now()

        try:
            containers = await self._run_blocking(self._list_containers)
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.error(f"Listing containers failed, skipping cycle: {e}")
            return []

        # The pool size caps how many stats requests are in flight
        results = await asyncio.gather(
            *(self._sample_container(c, captured_at) for c in containers)
        )
        samples = [s for s in results if s is not None]

        if self.debug:
            for sample in samples:
                logger.info(f"  {sample.describe()}")
        logger.debug(f"Docker cycle: {len(samples)}/{len(containers)} containers sampled")

        return samples

    def _list_containers(self) -> List[Dict[str, Any]]:
        filters = {}
        if self.compose_project:
            filters["label"] = f"{COMPOSE_PROJECT_LABEL}={self.compose_project}"
        return self.client.api.containers(filters=filters or None)

    def _fetch_stats(self, container_id: str) -> Dict[str, Any]:
        stats = self.client.api.stats(container_id, stream=False)
        if not isinstance(stats, dict):
            raise ValueError(f"unexpected stats payload of type {type(stats).__name__}")
        return stats

    async def _sample_container(self, container: Dict[str, Any], captured_at) -> Optional[Sample]:
        name = container_name(container.get("Names"))

        try:
            stats = await self._run_blocking(self._fetch_stats, container["Id"])
            mem_usage_mb, mem_limit_mb, mem_pct = docker_memory(stats)
            cpu_pct = docker_cpu_percent(stats)
        except Exception as e:
            logger.warning(f"Stats for container {name} failed: {e}")
            return None

        return Sample(
            captured_at=captured_at,
            entity_name=name,
            cpu_pct=cpu_pct,
            mem_usage_mb=mem_usage_mb,
            mem_limit_mb=mem_limit_mb,
            mem_pct=mem_pct,
        )
