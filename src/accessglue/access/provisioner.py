"""Workload-level provisioning, teardown and maintenance entry points."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Mapping, Optional, Sequence

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import PROVISION_COUNTER
from ..common.schemas import DEFAULT_ENABLED, DEFAULT_PORTS, MaintenanceRun, Policy, ServiceConfig, ServiceType
from ..common.settings import GlueSettings
from ..discovery import create_discovery
from ..discovery.base import WorkloadDiscovery
from .client import RemoteAccessClient, RemoteTransportError
from .gc import GarbageCollector
from .policies import PolicyManager
from .reconciler import EndpointReconciler, ReconcileResult, Upstream, workload_endpoint_names

LOGGER = structlog.get_logger("accessglue.access.provisioner")
TRACER = trace.get_tracer("accessglue.access.provisioner")

RequestedServices = Mapping[ServiceType, tuple[Optional[bool], Optional[int]]]


class WorkloadNotFoundError(LookupError):
    """Discovery has no running workload (or no address) for the given id."""

    def __init__(self, workload_id: str) -> None:
        super().__init__(f"workload {workload_id} not found")
        self.workload_id = workload_id


@dataclass
class ProvisionResult:
    workload_id: str
    results: dict[ServiceType, ReconcileResult] = field(default_factory=dict)
    errors: dict[ServiceType, str] = field(default_factory=dict)

    @property
    def urls(self) -> dict[str, Optional[str]]:
        return {service_type.value: result.public_address for service_type, result in self.results.items()}

    @property
    def endpoint_ids(self) -> list[str]:
        return [result.endpoint.id for result in self.results.values()]

    @property
    def partial(self) -> bool:
        return bool(self.results) and bool(self.errors)

    @property
    def failed(self) -> bool:
        return not self.results and bool(self.errors)

    @property
    def outcome(self) -> str:
        if self.failed:
            return "failure"
        return "partial" if self.partial else "success"


@dataclass
class TeardownResult:
    deleted_endpoint_count: int = 0
    deleted_policy_count: int = 0


def _label_enabled(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() == "true"


def _label_port(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        port = int(value.strip())
    except ValueError:
        return None
    return port if 0 < port < 65536 else None


def resolve_service_configs(
    requested: Optional[RequestedServices],
    labels: Mapping[str, str],
    label_prefix: str,
) -> list[ServiceConfig]:
    """Decide enable/port per service type: explicit request, then labels, then defaults."""

    configs = []
    for service_type in ServiceType:
        flag, port = (requested or {}).get(service_type, (None, None))
        wire = service_type.socket_type
        enabled = flag
        if enabled is None:
            enabled = _label_enabled(labels.get(f"{label_prefix}/{wire}"))
        if enabled is None:
            enabled = service_type in DEFAULT_ENABLED
        resolved_port = port or _label_port(labels.get(f"{label_prefix}/{wire}_port")) or DEFAULT_PORTS[service_type]
        configs.append(ServiceConfig(service_type=service_type, enabled=enabled, port=resolved_port))
    return configs


def requested_from_types(service_types: Sequence[ServiceType]) -> RequestedServices:
    """Explicitly enable exactly ``service_types`` and disable the rest."""

    wanted = {ServiceType(service_type) for service_type in service_types}
    return {service_type: (service_type in wanted, None) for service_type in ServiceType}


class Provisioner:
    """Facade the HTTP layer, the watcher and the CLI call into."""

    def __init__(
        self,
        client: RemoteAccessClient,
        discovery: WorkloadDiscovery,
        *,
        connector_ids: Sequence[str] = (),
        global_policy_ids: Sequence[str] = (),
        ssh_username: Optional[str] = None,
        label_prefix: str = "border0.io",
    ) -> None:
        self.client = client
        self.discovery = discovery
        self.policies = PolicyManager(client)
        self.reconciler = EndpointReconciler(client, self.policies, ssh_username=ssh_username)
        self.collector = GarbageCollector(client)
        self._connector_ids = list(connector_ids)
        self._global_policy_ids = list(global_policy_ids)
        self.label_prefix = label_prefix

    async def reconcile_all(
        self,
        workload_id: str,
        requested: Optional[RequestedServices] = None,
        principal_email: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> ProvisionResult:
        log = LOGGER.bind(workload_id=workload_id)
        with TRACER.start_as_current_span("provisioner.reconcile_all") as span:
            span.set_attribute("workload.id", workload_id)
            info = await self.discovery.get_workload_info(workload_id, namespace)
            if info is None or not info.ip:
                log.warning("Workload not found", namespace=namespace)
                PROVISION_COUNTER.inc(outcome="not_found")
                raise WorkloadNotFoundError(workload_id)

            email = principal_email or info.email or info.labels.get(f"{self.label_prefix}/email")
            configs = [
                config
                for config in resolve_service_configs(requested, info.labels, self.label_prefix)
                if config.enabled
            ]
            result = ProvisionResult(workload_id=workload_id)
            # Sequential: every service type attaches the same personal policy.
            for config in configs:
                try:
                    result.results[config.service_type] = await self.reconciler.reconcile(
                        workload_id,
                        config.service_type,
                        Upstream(host=info.ip, port=config.port),
                        self._connector_ids,
                        email,
                        self._global_policy_ids,
                    )
                except RemoteTransportError as exc:
                    result.errors[config.service_type] = str(exc)
                    log.error(
                        "Service reconciliation failed",
                        service_type=config.service_type.value,
                        status=exc.status_code,
                        error=str(exc),
                    )
            span.set_attribute("provision.succeeded", len(result.results))
            span.set_attribute("provision.failed", len(result.errors))
            PROVISION_COUNTER.inc(outcome=result.outcome)
            log.info(
                "Workload provisioned",
                services=[service_type.value for service_type in result.results],
                failed=[service_type.value for service_type in result.errors],
            )
            return result

    async def teardown(self, workload_id: str) -> TeardownResult:
        names = workload_endpoint_names(workload_id)
        with TRACER.start_as_current_span("provisioner.teardown") as span:
            span.set_attribute("workload.id", workload_id)
            endpoints = [endpoint for endpoint in await self.client.list_endpoints() if endpoint.name in names]
            personal: list[Policy] = []
            result = TeardownResult()
            for endpoint in endpoints:
                personal.extend(endpoint.personal_policies)
                await self.client.delete_endpoint(endpoint.id)
                result.deleted_endpoint_count += 1
            if personal:
                result.deleted_policy_count = await self.collector.collect_orphans(personal)
            span.set_attribute("teardown.deleted_endpoints", result.deleted_endpoint_count)
        LOGGER.info(
            "Workload torn down",
            workload_id=workload_id,
            deleted_endpoints=result.deleted_endpoint_count,
            deleted_policies=result.deleted_policy_count,
        )
        return result

    async def run_maintenance_once(self) -> MaintenanceRun:
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        try:
            sweep = await self.collector.sweep()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Policy sweep failed")
            return MaintenanceRun(
                started_at=started_at,
                duration_ms=(time.perf_counter() - start) * 1000,
                success=False,
            )
        return MaintenanceRun(
            started_at=started_at,
            duration_ms=(time.perf_counter() - start) * 1000,
            success=sweep.failed == 0,
            deleted=sweep.deleted,
        )


def provisioner_from_settings(
    settings: GlueSettings,
    http_client: httpx.AsyncClient,
    discovery: Optional[WorkloadDiscovery] = None,
) -> Provisioner:
    client = RemoteAccessClient(
        http_client,
        settings.api_token.get_secret_value(),
        base_url=settings.api_base_url,
    )
    return Provisioner(
        client,
        discovery or create_discovery(settings.deployment_mode, settings.label_prefix),
        connector_ids=settings.connector_ids,
        global_policy_ids=settings.global_policy_ids,
        ssh_username=settings.ssh_username,
        label_prefix=settings.label_prefix,
    )
