"""Container runtime collector talking to the Docker Engine API over its unix socket."""

from __future__ import annotations

import json
import os
import socket
import time
from collections.abc import Callable
from http.client import HTTPConnection, HTTPException
from typing import Any

from sentinel.errors import SourceTimeout, SourceUnavailable
from sentinel.log import get_logger
from sentinel.models import ContainerStats
from sentinel.sources import Fresh, SourceFamily, SourceResult

logger = get_logger(__name__)

DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"
# one-shot skips the engine's one-second precpu sample
STATS_PATH = "/containers/{id}/stats?stream=false&one-shot=true"


class _UnixSocketHTTPConnection(HTTPConnection):
    def __init__(self, socket_path: str, timeout: float):
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        sock.connect(self._socket_path)
        self.sock = sock


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def container_cpu_percent(stats: dict[str, Any]) -> float:
    """
    CPU usage from a ``/containers/{id}/stats`` payload.

    Same formula as ``docker stats``: the container's share of the host
    CPU time delta between ``precpu_stats`` and ``cpu_stats``, scaled by the
    number of online CPUs.
    """
    cpu_stats = _as_dict(stats.get("cpu_stats"))
    precpu_stats = _as_dict(stats.get("precpu_stats"))
    cpu_usage = _as_dict(cpu_stats.get("cpu_usage"))
    precpu_usage = _as_dict(precpu_stats.get("cpu_usage"))

    cpu_delta = _as_int(cpu_usage.get("total_usage")) - _as_int(precpu_usage.get("total_usage"))
    system_delta = _as_int(cpu_stats.get("system_cpu_usage")) - _as_int(precpu_stats.get("system_cpu_usage"))
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0

    online_cpus = _as_int(cpu_stats.get("online_cpus"))
    if online_cpus <= 0:
        online_cpus = len(cpu_usage.get("percpu_usage") or []) or 1
    return cpu_delta / system_delta * online_cpus * 100.0


def container_memory_usage(stats: dict[str, Any]) -> tuple[int, int]:
    """Return ``(usage, limit)`` in bytes, with page cache subtracted from usage."""
    memory = _as_dict(stats.get("memory_stats"))
    usage = _as_int(memory.get("usage"))
    details = _as_dict(memory.get("stats"))
    # cgroup v2 reports inactive_file, v1 reports cache
    cache = _as_int(details.get("inactive_file", details.get("cache", 0)))
    return max(0, usage - cache), _as_int(memory.get("limit"))


def _container_name(container: dict[str, Any]) -> str:
    names = container.get("Names") or []
    if names:
        return str(names[0]).lstrip("/")
    return str(container.get("Id", ""))[:12]


class ContainerCollector:
    """Running containers with their CPU, memory and pid counts."""

    family = SourceFamily.CONTAINERS

    def __init__(
        self,
        socket_path: str = DEFAULT_DOCKER_SOCKET,
        timeout: float = 3.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._socket_path = socket_path
        self._timeout = timeout
        self._clock = clock
        self._previous_cpu: dict[str, dict[str, Any]] = {}

    def is_available(self) -> bool:
        if not os.path.exists(self._socket_path):
            logger.info("Docker socket %s not found, container metrics disabled", self._socket_path)
            return False
        return True

    def poll(self) -> SourceResult:
        now = self._clock()
        listing = self._get_json("/containers/json")
        if not isinstance(listing, list):
            raise SourceUnavailable("unexpected /containers/json payload")

        containers: list[ContainerStats] = []
        seen: dict[str, dict[str, Any]] = {}
        for container in listing:
            container = _as_dict(container)
            container_id = str(container.get("Id", ""))
            if not container_id:
                continue
            try:
                stats = _as_dict(self._get_json(STATS_PATH.format(id=container_id)))
            except SourceUnavailable as e:
                # Container stopped between the listing and the stats call
                logger.debug("No stats for container %s: %s", container_id[:12], e)
                stats = {}
            stats = self._with_previous_cpu(container_id, stats)
            if stats.get("cpu_stats"):
                seen[container_id] = stats["cpu_stats"]
            usage, limit = container_memory_usage(stats)
            containers.append(
                ContainerStats(
                    id=container_id[:12],
                    name=_container_name(container),
                    image=str(container.get("Image", "")),
                    state=str(container.get("State", "")),
                    cpu_percent=container_cpu_percent(stats),
                    memory_usage=usage,
                    memory_limit=limit,
                    pids=_as_int(_as_dict(stats.get("pids_stats")).get("current")),
                )
            )
        self._previous_cpu = seen
        return Fresh(tuple(containers), now)

    def _with_previous_cpu(self, container_id: str, stats: dict[str, Any]) -> dict[str, Any]:
        """
        Fill an empty ``precpu_stats`` from this collector's previous poll.

        One-shot stats skip the engine's second sample, so the CPU delta is
        taken across polls instead. A container seen for the first time
        reports no CPU until the next poll.
        """
        if _as_dict(stats.get("precpu_stats")).get("system_cpu_usage"):
            return stats
        previous = self._previous_cpu.get(container_id, stats.get("cpu_stats"))
        return {**stats, "precpu_stats": previous}

    def _get_json(self, path: str) -> Any:
        connection = _UnixSocketHTTPConnection(self._socket_path, timeout=self._timeout)
        try:
            connection.request(
                "GET",
                path,
                headers={"Accept": "application/json", "Host": "docker", "Connection": "close"},
            )
            response = connection.getresponse()
            body = response.read()
            if response.status >= 400:
                raise SourceUnavailable(f"docker API {path} returned HTTP {response.status}")
            return json.loads(body.decode("utf-8", errors="replace"))
        except socket.timeout as e:
            raise SourceTimeout(f"docker API {path} timed out") from e
        except json.JSONDecodeError as e:
            raise SourceUnavailable(f"docker API {path} returned invalid JSON") from e
        except (OSError, HTTPException) as e:
            raise SourceUnavailable(f"docker API {path} failed: {e}") from e
        finally:
            connection.close()
