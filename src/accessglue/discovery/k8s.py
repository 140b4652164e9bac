"""Kubernetes pod discovery."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

import structlog
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from .base import WorkloadEvent, WorkloadEventType, WorkloadInfo, email_from_metadata, iterate_in_thread

LOGGER = structlog.get_logger("accessglue.discovery.k8s")

DEFAULT_NAMESPACE = "default"


def load_core_api() -> k8s_client.CoreV1Api:
    try:
        k8s_config.load_incluster_config()
    except ConfigException:
        k8s_config.load_kube_config()
    return k8s_client.CoreV1Api()


def workload_info_from_pod(pod: Any, label_prefix: str) -> WorkloadInfo:
    metadata = pod.metadata
    labels = dict((metadata.labels if metadata else None) or {})
    annotations = dict((metadata.annotations if metadata else None) or {})
    return WorkloadInfo(
        ip=(pod.status.pod_ip if pod.status else None) or "",
        labels=labels,
        email=email_from_metadata(label_prefix, labels, annotations),
    )


def event_from_watch(raw: dict[str, Any]) -> Optional[WorkloadEvent]:
    pod = raw.get("object")
    metadata = getattr(pod, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    namespace = getattr(metadata, "namespace", None)
    kind = raw.get("type")
    if kind in ("ADDED", "MODIFIED"):
        status = getattr(pod, "status", None)
        if getattr(status, "pod_ip", None) and getattr(status, "phase", None) == "Running":
            return WorkloadEvent(WorkloadEventType.START, name, namespace)
        return None
    if kind == "DELETED":
        return WorkloadEvent(WorkloadEventType.STOP, name, namespace)
    return None


class KubernetesDiscovery:
    """Read pod address and metadata from the cluster API."""

    def __init__(self, *, label_prefix: str = "border0.io", core_api: Optional[k8s_client.CoreV1Api] = None) -> None:
        self._label_prefix = label_prefix
        self._core_api = core_api

    @property
    def core_api(self) -> k8s_client.CoreV1Api:
        if self._core_api is None:
            self._core_api = load_core_api()
        return self._core_api

    async def get_workload_info(self, workload_id: str, namespace: Optional[str] = None) -> Optional[WorkloadInfo]:
        namespace = namespace or DEFAULT_NAMESPACE
        try:
            pod = await asyncio.to_thread(self.core_api.read_namespaced_pod, workload_id, namespace)
        except ApiException as exc:
            LOGGER.warning("Pod lookup failed", workload_id=workload_id, namespace=namespace, status=exc.status)
            return None
        return workload_info_from_pod(pod, self._label_prefix)

    async def watch(self) -> AsyncIterator[WorkloadEvent]:
        watcher = k8s_watch.Watch()
        stream = watcher.stream(
            self.core_api.list_pod_for_all_namespaces,
            label_selector=f"{self._label_prefix}/enable=true",
        )
        LOGGER.info("Watching pods", label_selector=f"{self._label_prefix}/enable=true")
        try:
            async for raw in iterate_in_thread(stream):
                event = event_from_watch(raw)
                if event is not None:
                    yield event
        finally:
            watcher.stop()
