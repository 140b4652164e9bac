"""Workload discovery adapters."""

from __future__ import annotations

from typing import Optional

from .base import WorkloadDiscovery, WorkloadEvent, WorkloadEventType, WorkloadInfo


def create_discovery(mode: str, label_prefix: str, client: Optional[object] = None) -> WorkloadDiscovery:
    """Build the adapter for ``mode`` (``docker`` or ``k8s``)."""

    if mode == "k8s":
        from .k8s import KubernetesDiscovery

        return KubernetesDiscovery(label_prefix=label_prefix, core_api=client)
    if mode == "docker":
        from .docker import DockerDiscovery

        return DockerDiscovery(label_prefix=label_prefix, client=client)
    raise ValueError(f"unsupported deployment mode: {mode}")


__all__ = [
    "WorkloadDiscovery",
    "WorkloadEvent",
    "WorkloadEventType",
    "WorkloadInfo",
    "create_discovery",
]
