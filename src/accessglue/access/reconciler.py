"""Idempotent create-or-update of one workload endpoint per service type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from opentelemetry import trace

from ..common.schemas import Endpoint, ServiceType
from .client import SSH_AUTHENTICATION_TYPE, RemoteAccessClient
from .policies import AttachOutcome, PolicyManager

LOGGER = structlog.get_logger("accessglue.access.reconciler")
TRACER = trace.get_tracer("accessglue.access.reconciler")

SHORT_ID_LENGTH = 8


def endpoint_name(service_type: ServiceType, workload_id: str) -> str:
    return f"{ServiceType(service_type).value}-{workload_id[:SHORT_ID_LENGTH]}"


def workload_endpoint_names(workload_id: str) -> dict[str, ServiceType]:
    return {endpoint_name(service_type, workload_id): service_type for service_type in ServiceType}


@dataclass(frozen=True)
class Upstream:
    host: str
    port: int


@dataclass
class ReconcileResult:
    endpoint: Endpoint
    created: bool
    attach: AttachOutcome

    @property
    def public_address(self) -> Optional[str]:
        return self.endpoint.public_address


class EndpointReconciler:
    def __init__(
        self,
        client: RemoteAccessClient,
        policies: PolicyManager,
        *,
        ssh_username: Optional[str] = None,
    ) -> None:
        self._client = client
        self._policies = policies
        self._ssh_username = ssh_username

    async def reconcile(
        self,
        workload_id: str,
        service_type: ServiceType,
        desired_upstream: Upstream,
        connector_ids: Sequence[str],
        principal_email: Optional[str] = None,
        predefined_policy_ids: Sequence[str] = (),
    ) -> ReconcileResult:
        """Converge the remote endpoint for ``(workload_id, service_type)``.

        An existing endpoint only receives the fields that can change across
        workload restarts; the service type and connectors are set once at
        creation. Policies are re-attached on both paths.
        """

        service_type = ServiceType(service_type)
        name = endpoint_name(service_type, workload_id)
        log = LOGGER.bind(workload_id=workload_id, endpoint=name)

        with TRACER.start_as_current_span("reconciler.reconcile") as span:
            span.set_attribute("access.endpoint_name", name)
            span.set_attribute("access.service_type", service_type.value)

            existing = await self._client.find_endpoint_by_name(name)
            if existing is not None:
                changes: dict = {
                    "upstream_host": desired_upstream.host,
                    "upstream_port": desired_upstream.port,
                }
                if service_type is ServiceType.SHELL and self._ssh_username:
                    changes["ssh_authentication_type"] = SSH_AUTHENTICATION_TYPE
                    changes["ssh_username"] = self._ssh_username
                endpoint = await self._client.update_endpoint(existing.id, changes)
                if endpoint.public_address is None and existing.public_address:
                    endpoint = endpoint.model_copy(update={"public_address": existing.public_address})
                created = False
                log.info("Updated endpoint", endpoint_id=endpoint.id, upstream_port=desired_upstream.port)
            else:
                endpoint = await self._client.create_endpoint(
                    name,
                    service_type,
                    connector_ids,
                    desired_upstream.host,
                    desired_upstream.port,
                    ssh_username=self._ssh_username,
                )
                created = True
                log.info("Created endpoint", endpoint_id=endpoint.id, upstream_port=desired_upstream.port)
            span.set_attribute("access.endpoint_created", created)

            outcome = await self._policies.attach(endpoint.id, principal_email, predefined_policy_ids)
            return ReconcileResult(endpoint=endpoint, created=created, attach=outcome)
