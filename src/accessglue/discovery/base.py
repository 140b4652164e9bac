"""Workload discovery interface shared by the Docker and Kubernetes adapters."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Iterator, Mapping, Optional, Protocol, Sequence, TypeVar

T = TypeVar("T")

EMAIL_LABELS = ("com.coder.user_email", "owner_email")


@dataclass(frozen=True)
class WorkloadInfo:
    """Network address and metadata of a running workload."""

    ip: str
    labels: dict[str, str] = field(default_factory=dict)
    email: Optional[str] = None


class WorkloadEventType(str, Enum):
    START = "start"
    STOP = "stop"


@dataclass(frozen=True)
class WorkloadEvent:
    type: WorkloadEventType
    workload_id: str
    namespace: Optional[str] = None


class WorkloadDiscovery(Protocol):
    """Translate a workload identifier into an address and a label set."""

    @abc.abstractmethod
    async def get_workload_info(self, workload_id: str, namespace: Optional[str] = None) -> Optional[WorkloadInfo]:
        """Return the workload's details, or ``None`` when it cannot be found."""
        ...

    @abc.abstractmethod
    def watch(self) -> AsyncIterator[WorkloadEvent]:
        """Yield start/stop events for workloads as they happen."""
        ...


def email_from_metadata(prefix: str, *sources: Optional[Mapping[str, str]]) -> Optional[str]:
    """First owner email found, checking every key across ``sources`` in order."""

    keys: Sequence[str] = (f"{prefix}/email", *EMAIL_LABELS)
    for key in keys:
        for source in sources:
            if source and source.get(key):
                return source[key]
    return None


async def iterate_in_thread(iterator: Iterator[T]) -> AsyncIterator[T]:
    """Drain a blocking SDK stream without stalling the event loop."""

    sentinel = object()
    while True:
        item = await asyncio.to_thread(next, iterator, sentinel)
        if item is sentinel:
            return
        yield item
