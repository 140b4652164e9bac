"""Provisioning HTTP API."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from ..access.client import RemoteTransportError
from ..access.provisioner import Provisioner, WorkloadNotFoundError, provisioner_from_settings
from ..access.scheduler import MaintenanceScheduler
from ..common.metrics import GLOBAL_REGISTRY, REQUEST_LATENCY_HISTOGRAM
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import (
    DeprovisionRequest,
    DeprovisionResponse,
    MaintenanceResponse,
    ProvisionRequest,
    ProvisionResponse,
)
from ..common.settings import GlueSettings
from ..discovery.watcher import AutoProvisioner

LOGGER = structlog.get_logger("accessglue.api")
SERVICE_NAME = "accessglue.api"


def build_http_client(settings: GlueSettings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_seconds)


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: GlueSettings,
        http_client: httpx.AsyncClient,
        provisioner: Provisioner,
        scheduler: Optional[MaintenanceScheduler] = None,
        auto_provisioner: Optional[AutoProvisioner] = None,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.provisioner = provisioner
        self.scheduler = scheduler
        self.auto_provisioner = auto_provisioner


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_provisioner(state: AppState = Depends(_get_state)) -> Provisioner:
    return state.provisioner


def _route_template(request: Request) -> str:
    # Requests that match no route share one label.
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


async def lifespan(app: FastAPI):
    settings = GlueSettings()
    configure_logging(SERVICE_NAME, settings.log_level, deployment_mode=settings.deployment_mode)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
        deployment_mode=settings.deployment_mode,
    )
    http_client = build_http_client(settings)
    provisioner = provisioner_from_settings(settings, http_client)

    scheduler = MaintenanceScheduler(provisioner.run_maintenance_once) if settings.maintenance_enabled else None
    auto_provisioner = AutoProvisioner(provisioner) if settings.auto_provision else None
    app.state.container = AppState(
        settings=settings,
        http_client=http_client,
        provisioner=provisioner,
        scheduler=scheduler,
        auto_provisioner=auto_provisioner,
    )
    if scheduler is not None:
        scheduler.start()
    if auto_provisioner is not None:
        auto_provisioner.start()
    LOGGER.info(
        "Access glue started",
        mode=settings.deployment_mode,
        maintenance=settings.maintenance_enabled,
        auto_provision=settings.auto_provision,
    )

    try:
        yield
    finally:
        if auto_provisioner is not None:
            await auto_provisioner.stop()
        if scheduler is not None:
            await scheduler.stop()
        await http_client.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="accessglue", lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration, method=request.method, path=_route_template(request))
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration, method=request.method, path=_route_template(request))

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get("/", status_code=status.HTTP_200_OK)
    async def root(state: AppState = Depends(_get_state)) -> dict:
        return {"status": "healthy", "mode": state.settings.deployment_mode}

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check() -> dict:
        """Liveness check; does not call the remote service."""
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.post("/provision", response_model=ProvisionResponse)
    async def provision(
        body: ProvisionRequest,
        response: Response,
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> ProvisionResponse:
        try:
            result = await provisioner.reconcile_all(
                body.container_id,
                requested=body.requested_services(),
                principal_email=body.user_email,
                namespace=body.namespace,
            )
        except WorkloadNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

        if result.failed:
            response.status_code = status.HTTP_502_BAD_GATEWAY
        elif result.partial:
            response.status_code = status.HTTP_207_MULTI_STATUS
        return ProvisionResponse(
            urls=result.urls,
            socket_ids=result.endpoint_ids,
            errors={service_type.value: message for service_type, message in result.errors.items()},
        )

    @app.post("/deprovision", response_model=DeprovisionResponse)
    async def deprovision(
        body: DeprovisionRequest,
        provisioner: Provisioner = Depends(get_provisioner),
    ) -> DeprovisionResponse:
        try:
            result = await provisioner.teardown(body.container_id)
        except RemoteTransportError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return DeprovisionResponse(
            deleted_count=result.deleted_endpoint_count,
            deleted_policy_count=result.deleted_policy_count,
        )

    @app.post("/maintenance", response_model=MaintenanceResponse)
    async def maintenance(provisioner: Provisioner = Depends(get_provisioner)) -> MaintenanceResponse:
        run = await provisioner.run_maintenance_once()
        return MaintenanceResponse(
            success=run.success,
            duration_ms=run.duration_ms,
            deleted=run.deleted,
            started_at=run.started_at,
        )

    return app


app = create_app()
