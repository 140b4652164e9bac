"""Shared data models for endpoints, policies and the provisioning API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

PERSONAL_POLICY_PREFIX = "user-policy-"


class ServiceType(str, Enum):
    """Kinds of endpoint a workload can expose."""

    SHELL = "shell"
    DESKTOP = "desktop"
    WEB = "web"
    TCP = "tcp"
    RDP = "rdp"
    DATABASE = "database"

    @property
    def socket_type(self) -> str:
        return SOCKET_TYPES[self]

    @classmethod
    def from_socket_type(cls, value: str | None) -> Optional["ServiceType"]:
        for service_type, socket_type in SOCKET_TYPES.items():
            if socket_type == value or service_type.value == value:
                return service_type
        return None


# Wire names used by the remote service and by workload labels.
SOCKET_TYPES: dict[ServiceType, str] = {
    ServiceType.SHELL: "ssh",
    ServiceType.DESKTOP: "vnc",
    ServiceType.WEB: "http",
    ServiceType.TCP: "tcp",
    ServiceType.RDP: "rdp",
    ServiceType.DATABASE: "database",
}

DEFAULT_PORTS: dict[ServiceType, int] = {
    ServiceType.SHELL: 22,
    ServiceType.DESKTOP: 5901,
    ServiceType.WEB: 80,
    ServiceType.TCP: 8080,
    ServiceType.RDP: 3389,
    ServiceType.DATABASE: 5432,
}

DEFAULT_ENABLED: frozenset[ServiceType] = frozenset({ServiceType.SHELL, ServiceType.DESKTOP})


def is_personal_policy_name(name: str | None) -> bool:
    return bool(name) and name.startswith(PERSONAL_POLICY_PREFIX)


def _drop_nulls(data: dict[str, Any], **defaults: Any) -> dict[str, Any]:
    """Copy ``data`` with explicit nulls in ``defaults``' keys replaced by the defaults."""

    result = dict(data)
    for key, default in defaults.items():
        if result.get(key) is None:
            result[key] = default
    return result


class Policy(BaseModel):
    """Access policy as returned by the remote service."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    name: str = ""
    condition: dict[str, Any] = Field(default_factory=dict)
    attachment_count: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("attachment_count", "socket_count"),
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_embedded_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = _drop_nulls(data, name="", condition={})
        policy_data = data.get("policy_data")
        if not data["condition"] and isinstance(policy_data, dict):
            data["condition"] = policy_data.get("condition") or {}
        sockets = data.get("sockets")
        if (
            data.get("attachment_count") is None
            and data.get("socket_count") is None
            and isinstance(sockets, list)
        ):
            data["attachment_count"] = len(sockets)
        return data

    @property
    def kind(self) -> str:
        return "personal" if is_personal_policy_name(self.name) else "predefined"

    @property
    def is_personal(self) -> bool:
        return self.kind == "personal"


class Endpoint(BaseModel):
    """Remote network-access endpoint ("socket")."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    name: str = ""
    socket_type: Optional[str] = None
    connector_ids: list[str] = Field(default_factory=list)
    upstream_host: Optional[str] = None
    upstream_port: Optional[int] = None
    public_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("public_address", "dnsname"),
    )
    attached_policies: list[Policy] = Field(
        default_factory=list,
        validation_alias=AliasChoices("attached_policies", "policies"),
    )

    @model_validator(mode="before")
    @classmethod
    def _collect_connectors(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = _drop_nulls(data, name="", connector_ids=[], policies=[])
        if not data["connector_ids"] and data.get("connector_id"):
            data["connector_ids"] = [data["connector_id"]]
        return data

    @property
    def service_type(self) -> Optional[ServiceType]:
        return ServiceType.from_socket_type(self.socket_type)

    @property
    def personal_policies(self) -> list[Policy]:
        return [policy for policy in self.attached_policies if policy.is_personal]


@dataclass(frozen=True)
class ServiceConfig:
    """Resolved enable/port decision for one service type."""

    service_type: ServiceType
    enabled: bool
    port: int


@dataclass(frozen=True)
class MaintenanceRun:
    """Outcome of one garbage-collection run, kept only to schedule the next one."""

    started_at: datetime
    duration_ms: float
    success: bool
    deleted: int = 0


class ProvisionRequest(BaseModel):
    """Body of ``POST /provision``; unset flags fall back to workload labels."""

    container_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    namespace: Optional[str] = None
    shell: Optional[bool] = None
    shell_port: Optional[int] = Field(default=None, ge=1, le=65535)
    desktop: Optional[bool] = None
    desktop_port: Optional[int] = Field(default=None, ge=1, le=65535)
    web: Optional[bool] = None
    web_port: Optional[int] = Field(default=None, ge=1, le=65535)
    tcp: Optional[bool] = None
    tcp_port: Optional[int] = Field(default=None, ge=1, le=65535)
    rdp: Optional[bool] = None
    rdp_port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[bool] = None
    database_port: Optional[int] = Field(default=None, ge=1, le=65535)

    def requested_services(self) -> dict[ServiceType, tuple[Optional[bool], Optional[int]]]:
        return {
            service_type: (getattr(self, service_type.value), getattr(self, f"{service_type.value}_port"))
            for service_type in ServiceType
        }


class ProvisionResponse(BaseModel):
    urls: dict[str, Optional[str]] = Field(default_factory=dict)
    socket_ids: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class DeprovisionRequest(BaseModel):
    container_id: str = Field(..., min_length=1)


class DeprovisionResponse(BaseModel):
    status: str = "success"
    deleted_count: int
    deleted_policy_count: int = 0


class MaintenanceResponse(BaseModel):
    success: bool
    duration_ms: float
    deleted: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
