"""Async client for the remote access-control API (endpoints, policies, attachments)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, TypeVar

import httpx
import structlog
from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from ..common.schemas import Endpoint, Policy, ServiceType

LOGGER = structlog.get_logger("accessglue.access.client")
TRACER = trace.get_tracer("accessglue.access.client")

SSH_AUTHENTICATION_TYPE = "border0_certificate"

ENDPOINT_KEYS = ("list", "sockets", "data", "items")
POLICY_KEYS = ("list", "policies", "data", "items")

ModelT = TypeVar("ModelT", bound=BaseModel)


class RemoteTransportError(Exception):
    """A call to the access-control API failed (timeout, connection error, 4xx or 5xx)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class ApiRoutes:
    """Resource paths; collection and item paths are configured independently."""

    endpoints: str = "/sockets"
    endpoint: str = "/sockets/{id}"
    endpoint_policies: str = "/sockets/{id}/policies"
    policies: str = "/policies"
    policy: str = "/policies/{id}"


def extract_list(payload: Any, container_keys: Sequence[str]) -> list[dict[str, Any]]:
    """Return the list carried by a list response, whatever its envelope."""

    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, Mapping):
        items = []
        for key in container_keys:
            value = payload.get(key)
            if isinstance(value, list):
                items = value
                break
    else:
        items = []
    return [item for item in items if isinstance(item, Mapping)]


def canonicalize_id(item: Mapping[str, Any], id_key: str) -> dict[str, Any]:
    result = dict(item)
    if result.get("id") is None and result.get(id_key) is not None:
        result["id"] = result[id_key]
    return result


def normalize_endpoint(item: Mapping[str, Any]) -> dict[str, Any]:
    result = canonicalize_id(item, "socket_id")
    policies = result.get("policies")
    if isinstance(policies, list):
        result["policies"] = [
            canonicalize_id(policy, "policy_id")
            for policy in policies
            if isinstance(policy, Mapping)
        ]
        result["policies"] = [policy for policy in result["policies"] if policy.get("id") is not None]
    return result


def normalize_policy(item: Mapping[str, Any]) -> dict[str, Any]:
    return canonicalize_id(item, "policy_id")


def unwrap_item(payload: Any, envelope_key: str) -> dict[str, Any]:
    if isinstance(payload, Mapping):
        inner = payload.get(envelope_key)
        if isinstance(inner, Mapping):
            return dict(inner)
        return dict(payload)
    return {}


def parse_item(model: type[ModelT], item: Mapping[str, Any]) -> ModelT:
    """Validate one normalized item, reporting malformed remote data as a transport failure."""

    try:
        return model.model_validate(item)
    except ValidationError as exc:
        LOGGER.warning("Malformed access API item", model=model.__name__, errors=exc.error_count())
        raise RemoteTransportError(
            f"Access API returned a malformed {model.__name__.lower()}",
            detail=dict(item),
        ) from exc


def count_attachments(endpoints: Iterable[Endpoint], policy_id: str) -> int:
    return sum(1 for endpoint in endpoints if any(p.id == policy_id for p in endpoint.attached_policies))


class RemoteAccessClient:
    """Thin, retry-free wrapper over the access-control REST API.

    Every response is passed through one normalization step so callers only
    ever see ``Endpoint`` and ``Policy`` models with a canonical ``id``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        *,
        base_url: str = "",
        routes: ApiRoutes = ApiRoutes(),
    ) -> None:
        self._http = http_client
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._routes = routes

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        url = f"{self._base_url}{path}"
        with TRACER.start_as_current_span("access_api.request") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("access_api.path", path)
            try:
                response = await self._http.request(method, url, headers=self._headers(), json=json)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                try:
                    detail = exc.response.json()
                except ValueError:
                    detail = exc.response.text
                LOGGER.warning("Access API request rejected", method=method, path=path, status=status)
                raise RemoteTransportError(
                    f"{method} {path} failed with HTTP {status}",
                    status_code=status,
                    detail=detail,
                ) from exc
            except httpx.HTTPError as exc:
                LOGGER.warning("Access API transport error", method=method, path=path, error=str(exc))
                raise RemoteTransportError(f"{method} {path} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # Endpoints

    async def list_endpoints(self) -> list[Endpoint]:
        payload = await self._request("GET", self._routes.endpoints)
        return [parse_item(Endpoint, normalize_endpoint(item)) for item in extract_list(payload, ENDPOINT_KEYS)]

    async def find_endpoint_by_name(self, name: str) -> Optional[Endpoint]:
        for endpoint in await self.list_endpoints():
            if endpoint.name == name:
                return endpoint
        return None

    async def list_endpoints_by_name_prefix(self, prefix: str) -> list[Endpoint]:
        return [endpoint for endpoint in await self.list_endpoints() if endpoint.name.startswith(prefix)]

    async def get_endpoint(self, endpoint_id: str) -> Endpoint:
        payload = await self._request("GET", self._routes.endpoint.format(id=endpoint_id))
        return self._endpoint_from(payload, fallback_id=endpoint_id)

    async def create_endpoint(
        self,
        name: str,
        service_type: ServiceType,
        connector_ids: Sequence[str],
        upstream_host: str,
        upstream_port: int,
        *,
        ssh_username: Optional[str] = None,
    ) -> Endpoint:
        body: dict[str, Any] = {
            "name": name,
            "socket_type": service_type.socket_type,
            "connector_ids": list(connector_ids),
            "upstream_type": "proxy",
            "upstream_host": upstream_host,
            "upstream_port": upstream_port,
        }
        if service_type is ServiceType.SHELL and ssh_username:
            body["ssh_authentication_type"] = SSH_AUTHENTICATION_TYPE
            body["ssh_username"] = ssh_username
        payload = await self._request("POST", self._routes.endpoints, json=body)
        LOGGER.info("Created endpoint", name=name, socket_type=service_type.socket_type)
        return self._endpoint_from(payload, defaults=body)

    async def update_endpoint(self, endpoint_id: str, changes: Mapping[str, Any]) -> Endpoint:
        payload = await self._request("PUT", self._routes.endpoint.format(id=endpoint_id), json=dict(changes))
        return self._endpoint_from(payload, fallback_id=endpoint_id)

    async def delete_endpoint(self, endpoint_id: str) -> None:
        await self._request("DELETE", self._routes.endpoint.format(id=endpoint_id))
        LOGGER.info("Deleted endpoint", endpoint_id=endpoint_id)

    # Policies

    async def list_policies(self) -> list[Policy]:
        payload = await self._request("GET", self._routes.policies)
        return [parse_item(Policy, normalize_policy(item)) for item in extract_list(payload, POLICY_KEYS)]

    async def find_policy_by_name(self, name: str) -> Optional[Policy]:
        for policy in await self.list_policies():
            if policy.name == name:
                return policy
        return None

    async def create_policy(
        self,
        name: str,
        condition: Mapping[str, Any],
        *,
        actions: Sequence[str] = (),
        description: Optional[str] = None,
    ) -> Policy:
        body: dict[str, Any] = {
            "name": name,
            "policy_data": {
                "version": "v1",
                "action": list(actions) or ["allow"],
                "condition": dict(condition),
            },
        }
        if description:
            body["description"] = description
        payload = await self._request("POST", self._routes.policies, json=body)
        item = normalize_policy(unwrap_item(payload, "policy"))
        item.setdefault("name", name)
        LOGGER.info("Created policy", name=name, policy_id=item.get("id"))
        return parse_item(Policy, item)

    async def delete_policy(self, policy_id: str) -> None:
        await self._request("DELETE", self._routes.policy.format(id=policy_id))
        LOGGER.info("Deleted policy", policy_id=policy_id)

    # Attachments

    async def count_endpoint_attachments(self, policy_id: str) -> int:
        return count_attachments(await self.list_endpoints(), policy_id)

    async def attach_policies(self, endpoint_id: str, policy_ids: Sequence[str]) -> None:
        await self._request(
            "PUT",
            self._routes.endpoint_policies.format(id=endpoint_id),
            json={"policy_ids": list(policy_ids)},
        )
        LOGGER.info("Attached policies", endpoint_id=endpoint_id, policy_ids=list(policy_ids))

    def _endpoint_from(
        self,
        payload: Any,
        *,
        fallback_id: Optional[str] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> Endpoint:
        item = normalize_endpoint(unwrap_item(payload, "socket"))
        for key, value in (defaults or {}).items():
            item.setdefault(key, value)
        if item.get("id") is None and fallback_id is not None:
            item["id"] = fallback_id
        if item.get("id") is None:
            raise RemoteTransportError("Access API response did not carry an endpoint id", detail=payload)
        return parse_item(Endpoint, item)
