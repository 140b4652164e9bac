from __future__ import annotations

import itertools
import json
from typing import Any, AsyncIterator, Callable, Optional

import httpx
import pytest

from accessglue.access.client import RemoteAccessClient
from accessglue.discovery.base import WorkloadEvent, WorkloadInfo

BASE_URL = "https://access.test/api/v1"


class FakeAccessService:
    """In-memory stand-in for the remote access-control API."""

    def __init__(self) -> None:
        self.sockets: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, dict[str, Any]] = {}
        self.attachments: dict[str, list[str]] = {}
        self.requests: list[tuple[str, str, Any]] = []
        self.list_shape = "sockets"
        self.embed_policy_counts = False
        self._failures: list[tuple[str, str, int, Optional[Callable[[Any], bool]]]] = []
        self._ids = itertools.count(1)

    # Setup helpers

    def add_socket(self, name: str, socket_type: str = "ssh", policy_ids: tuple[str, ...] = ()) -> str:
        socket_id = f"sock-{next(self._ids)}"
        self.sockets[socket_id] = {
            "socket_id": socket_id,
            "name": name,
            "socket_type": socket_type,
            "connector_ids": ["conn-1"],
            "upstream_host": "10.0.0.2",
            "upstream_port": 22,
            "dnsname": f"{name}.access.test",
        }
        self.attachments[socket_id] = list(policy_ids)
        return socket_id

    def add_policy(self, name: str, policy_id: Optional[str] = None) -> str:
        policy_id = policy_id or f"pol-{next(self._ids)}"
        self.policies[policy_id] = {"id": policy_id, "name": name, "policy_data": {"condition": {}}}
        return policy_id

    def fail(self, method: str, path: str, status: int, match: Optional[Callable[[Any], bool]] = None) -> None:
        self._failures.append((method, path, status, match))

    def calls(self, method: str, path: Optional[str] = None) -> list[tuple[str, str, Any]]:
        return [
            call
            for call in self.requests
            if call[0] == method and (path is None or call[1] == path)
        ]

    def policy_names(self) -> list[str]:
        return sorted(policy["name"] for policy in self.policies.values())

    # Transport

    def _socket_view(self, socket_id: str) -> dict[str, Any]:
        view = dict(self.sockets[socket_id])
        view["policies"] = [
            {"id": policy_id, "name": self.policies.get(policy_id, {}).get("name", "")}
            for policy_id in self.attachments.get(socket_id, [])
        ]
        return view

    def _policy_view(self, policy_id: str) -> dict[str, Any]:
        view = dict(self.policies[policy_id])
        if self.embed_policy_counts:
            view["socket_count"] = sum(policy_id in ids for ids in self.attachments.values())
        return view

    def _wrap(self, items: list[dict[str, Any]], key: str) -> Any:
        if self.list_shape == "array":
            return items
        if self.list_shape == "list":
            return {"list": items}
        return {key: items}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v1")
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        for method, prefix, status, match in self._failures:
            if request.method == method and path.startswith(prefix) and (match is None or match(body)):
                return httpx.Response(status, json={"error": "injected failure"})

        parts = [part for part in path.split("/") if part]
        if parts[:1] == ["sockets"]:
            return self._handle_sockets(request.method, parts[1:], body)
        if parts[:1] == ["policies"]:
            return self._handle_policies(request.method, parts[1:], body)
        return httpx.Response(404, json={"error": "not found"})

    def _handle_sockets(self, method: str, rest: list[str], body: Any) -> httpx.Response:
        if not rest:
            if method == "GET":
                return httpx.Response(200, json=self._wrap([self._socket_view(i) for i in self.sockets], "sockets"))
            if method == "POST":
                socket_id = f"sock-{next(self._ids)}"
                record = {key: value for key, value in body.items()}
                record["socket_id"] = socket_id
                record["dnsname"] = f"{body['name']}.access.test"
                self.sockets[socket_id] = record
                self.attachments[socket_id] = []
                return httpx.Response(201, json=self._socket_view(socket_id))
        socket_id = rest[0]
        if socket_id not in self.sockets:
            return httpx.Response(404, json={"error": "socket not found"})
        if len(rest) == 2 and rest[1] == "policies" and method == "PUT":
            ids = self.attachments.setdefault(socket_id, [])
            for policy_id in body["policy_ids"]:
                if policy_id not in ids:
                    ids.append(policy_id)
            return httpx.Response(200, json={"status": "ok"})
        if method == "GET":
            return httpx.Response(200, json={"socket": self._socket_view(socket_id)})
        if method == "PUT":
            self.sockets[socket_id].update(body)
            return httpx.Response(200, json=self._socket_view(socket_id))
        if method == "DELETE":
            del self.sockets[socket_id]
            self.attachments.pop(socket_id, None)
            return httpx.Response(204)
        return httpx.Response(405)

    def _handle_policies(self, method: str, rest: list[str], body: Any) -> httpx.Response:
        if not rest:
            if method == "GET":
                return httpx.Response(200, json=self._wrap([self._policy_view(i) for i in self.policies], "policies"))
            if method == "POST":
                policy_id = f"pol-{next(self._ids)}"
                self.policies[policy_id] = {"policy_id": policy_id, **body}
                self.policies[policy_id]["id"] = policy_id
                return httpx.Response(201, json={"policy_id": policy_id, "name": body["name"]})
        policy_id = rest[0]
        if policy_id not in self.policies:
            return httpx.Response(404, json={"error": "policy not found"})
        if method == "DELETE":
            del self.policies[policy_id]
            for ids in self.attachments.values():
                if policy_id in ids:
                    ids.remove(policy_id)
            return httpx.Response(204)
        return httpx.Response(405)


class FakeDiscovery:
    def __init__(self) -> None:
        self.workloads: dict[str, WorkloadInfo] = {}
        self.events: list[WorkloadEvent] = []
        self.lookups: list[tuple[str, Optional[str]]] = []

    def add(self, workload_id: str, ip: str = "10.1.0.5", labels: Optional[dict[str, str]] = None, email=None) -> None:
        self.workloads[workload_id] = WorkloadInfo(ip=ip, labels=labels or {}, email=email)

    async def get_workload_info(self, workload_id: str, namespace: Optional[str] = None) -> Optional[WorkloadInfo]:
        self.lookups.append((workload_id, namespace))
        return self.workloads.get(workload_id)

    async def watch(self) -> AsyncIterator[WorkloadEvent]:
        for event in list(self.events):
            yield event


@pytest.fixture
def fake_service() -> FakeAccessService:
    return FakeAccessService()


@pytest.fixture
def fake_discovery() -> FakeDiscovery:
    return FakeDiscovery()


@pytest.fixture
def access_client(fake_service: FakeAccessService) -> RemoteAccessClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_service.handler))
    return RemoteAccessClient(http_client, "test-token", base_url=BASE_URL)
