"""Garbage collection of personal policies no endpoint references any more."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import structlog
from opentelemetry import trace

from ..common.schemas import Endpoint, Policy
from .client import RemoteAccessClient, RemoteTransportError, count_attachments

LOGGER = structlog.get_logger("accessglue.access.gc")
TRACER = trace.get_tracer("accessglue.access.gc")


@dataclass
class SweepResult:
    scanned: int = 0
    deleted: int = 0
    failed: int = 0


class GarbageCollector:
    """Deletes personal policies with zero endpoint attachments.

    Reachability is the only criterion: a personal policy attached to at
    least one live endpoint survives, one attached to none is deleted on the
    next pass. Predefined policies are never considered.
    """

    def __init__(self, client: RemoteAccessClient) -> None:
        self._client = client

    async def sweep(self) -> SweepResult:
        result = SweepResult()
        endpoints: Optional[list[Endpoint]] = None

        with TRACER.start_as_current_span("gc.sweep") as span:
            policies = await self._client.list_policies()
            for policy in policies:
                if not policy.is_personal:
                    continue
                result.scanned += 1
                count = policy.attachment_count
                if count is None:
                    if endpoints is None:
                        endpoints = await self._client.list_endpoints()
                    count = count_attachments(endpoints, policy.id)
                if count != 0:
                    continue
                try:
                    await self._client.delete_policy(policy.id)
                except RemoteTransportError as exc:
                    result.failed += 1
                    LOGGER.warning(
                        "Failed to delete orphaned policy",
                        policy=policy.name,
                        policy_id=policy.id,
                        status=exc.status_code,
                    )
                    continue
                result.deleted += 1
                LOGGER.info("Deleted orphaned policy", policy=policy.name, policy_id=policy.id)

            span.set_attribute("gc.scanned", result.scanned)
            span.set_attribute("gc.deleted", result.deleted)
            span.set_attribute("gc.failed", result.failed)

        LOGGER.info(
            "Policy sweep finished",
            scanned=result.scanned,
            deleted=result.deleted,
            failed=result.failed,
        )
        return result

    async def collect_orphans(self, policies: Iterable[Policy]) -> int:
        """Eagerly delete the given personal policies that have no attachments left."""

        deleted = 0
        seen: set[str] = set()
        for policy in policies:
            if not policy.is_personal or policy.id in seen:
                continue
            seen.add(policy.id)
            try:
                count = await self._client.count_endpoint_attachments(policy.id)
                if count != 0:
                    continue
                await self._client.delete_policy(policy.id)
            except RemoteTransportError as exc:
                LOGGER.warning(
                    "Orphan cleanup failed",
                    policy=policy.name,
                    policy_id=policy.id,
                    status=exc.status_code,
                )
                continue
            deleted += 1
            LOGGER.info("Deleted orphaned policy after teardown", policy=policy.name, policy_id=policy.id)
        return deleted
