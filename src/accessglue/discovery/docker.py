"""Docker workload discovery."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

import docker
import structlog
from docker.errors import DockerException

from .base import WorkloadEvent, WorkloadEventType, WorkloadInfo, email_from_metadata, iterate_in_thread

LOGGER = structlog.get_logger("accessglue.discovery.docker")

_EVENT_TYPES = {"start": WorkloadEventType.START, "die": WorkloadEventType.STOP}


def workload_info_from_attrs(attrs: dict[str, Any], label_prefix: str) -> WorkloadInfo:
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    first_network = next(iter(networks.values()), None) or {}
    labels = (attrs.get("Config") or {}).get("Labels") or {}
    return WorkloadInfo(
        ip=first_network.get("IPAddress") or "",
        labels=dict(labels),
        email=email_from_metadata(label_prefix, labels),
    )


def event_from_docker(raw: dict[str, Any]) -> Optional[WorkloadEvent]:
    action = raw.get("Action") or raw.get("status")
    event_type = _EVENT_TYPES.get(action)
    workload_id = raw.get("id") or (raw.get("Actor") or {}).get("ID")
    if event_type is None or not workload_id:
        return None
    return WorkloadEvent(type=event_type, workload_id=workload_id)


class DockerDiscovery:
    """Inspect local containers through the Docker daemon."""

    def __init__(self, *, label_prefix: str = "border0.io", client: Optional[docker.DockerClient] = None) -> None:
        self._label_prefix = label_prefix
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def get_workload_info(self, workload_id: str, namespace: Optional[str] = None) -> Optional[WorkloadInfo]:
        try:
            container = await asyncio.to_thread(self.client.containers.get, workload_id)
        except DockerException as exc:
            LOGGER.warning("Container lookup failed", workload_id=workload_id, error=str(exc))
            return None
        return workload_info_from_attrs(container.attrs, self._label_prefix)

    async def watch(self) -> AsyncIterator[WorkloadEvent]:
        stream = await asyncio.to_thread(
            self.client.events,
            decode=True,
            filters={"type": "container", "event": list(_EVENT_TYPES)},
        )
        LOGGER.info("Watching Docker container events")
        try:
            async for raw in iterate_in_thread(iter(stream)):
                event = event_from_docker(raw)
                if event is not None:
                    yield event
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
