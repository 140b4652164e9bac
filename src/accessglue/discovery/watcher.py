"""Event-driven provisioning from discovery start/stop events."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from ..access.client import RemoteTransportError
from ..access.provisioner import Provisioner, WorkloadNotFoundError
from .base import WorkloadEvent, WorkloadEventType

LOGGER = structlog.get_logger("accessglue.discovery.watcher")


class AutoProvisioner:
    """Provision labelled workloads on start and tear them down on stop."""

    def __init__(
        self,
        provisioner: Provisioner,
        *,
        retry_delay: float = 5.0,
        max_restarts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provisioner = provisioner
        self._retry_delay = retry_delay
        self._max_restarts = max_restarts
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def enable_label(self) -> str:
        return f"{self._provisioner.label_prefix}/enable"

    async def handle(self, event: WorkloadEvent) -> None:
        log = LOGGER.bind(workload_id=event.workload_id, event=event.type.value)
        try:
            if event.type is WorkloadEventType.START:
                info = await self._provisioner.discovery.get_workload_info(event.workload_id, event.namespace)
                if info is None or info.labels.get(self.enable_label) != "true":
                    log.debug("Ignoring workload without enable label")
                    return
                result = await self._provisioner.reconcile_all(event.workload_id, namespace=event.namespace)
                log.info("Auto-provisioned workload", urls=result.urls, errors=len(result.errors))
            elif event.type is WorkloadEventType.STOP:
                result = await self._provisioner.teardown(event.workload_id)
                if result.deleted_endpoint_count:
                    log.info("Auto-deprovisioned workload", deleted=result.deleted_endpoint_count)
        except (RemoteTransportError, WorkloadNotFoundError) as exc:
            log.error("Auto-provisioning failed", error=str(exc))
        except Exception:  # noqa: BLE001
            log.exception("Unexpected auto-provisioning failure")

    async def run(self) -> None:
        """Consume discovery events, re-opening the stream after it fails.

        A stream that ends cleanly stops the loop. ``max_restarts`` bounds the
        number of re-opens after failures; ``None`` retries forever.
        """

        LOGGER.info("Auto-provisioning enabled")
        restarts = 0
        while True:
            try:
                async for event in self._provisioner.discovery.watch():
                    await self.handle(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Discovery event stream failed", retry_in=self._retry_delay, restarts=restarts)
            else:
                LOGGER.info("Discovery event stream ended")
                return
            if self._max_restarts is not None and restarts >= self._max_restarts:
                LOGGER.error("Giving up on discovery event stream", restarts=restarts)
                return
            restarts += 1
            await self._sleep(self._retry_delay)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001
            LOGGER.exception("Auto-provisioning task failed")
