from __future__ import annotations

from types import SimpleNamespace

import pytest
from docker.errors import NotFound
from kubernetes.client.exceptions import ApiException

from accessglue.discovery import create_discovery
from accessglue.discovery.base import WorkloadEvent, WorkloadEventType, email_from_metadata, iterate_in_thread
from accessglue.discovery.docker import DockerDiscovery, event_from_docker, workload_info_from_attrs
from accessglue.discovery.k8s import KubernetesDiscovery, event_from_watch, workload_info_from_pod

CONTAINER_ATTRS = {
    "NetworkSettings": {"Networks": {"coder": {"IPAddress": "172.18.0.4"}, "bridge": {"IPAddress": "172.17.0.2"}}},
    "Config": {"Labels": {"border0.io/enable": "true", "com.coder.user_email": "dev@example.com"}},
}


class FakeContainers:
    def __init__(self, attrs):
        self._attrs = attrs

    def get(self, container_id):
        if container_id not in self._attrs:
            raise NotFound(f"No such container: {container_id}")
        return SimpleNamespace(attrs=self._attrs[container_id])


class FakeDockerClient:
    def __init__(self, attrs=None, events=None):
        self.containers = FakeContainers(attrs or {})
        self._events = events or []
        self.event_filters = None

    def events(self, decode=False, filters=None):
        self.event_filters = filters
        return iter(self._events)


def _pod(name="ws-1", namespace="dev", ip="10.2.0.8", phase="Running", labels=None, annotations=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels, annotations=annotations),
        status=SimpleNamespace(pod_ip=ip, phase=phase),
    )


class FakeCoreApi:
    def __init__(self, pods):
        self._pods = pods

    def read_namespaced_pod(self, name, namespace):
        try:
            return self._pods[(name, namespace)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None


def test_email_lookup_order():
    assert email_from_metadata("border0.io", {"owner_email": "c@x", "border0.io/email": "a@x"}) == "a@x"
    assert email_from_metadata("border0.io", {"owner_email": "c@x"}) == "c@x"
    assert email_from_metadata("border0.io", {}, {"com.coder.user_email": "b@x"}) == "b@x"
    assert email_from_metadata("border0.io", None) is None


def test_docker_attrs_use_first_network_and_labels():
    info = workload_info_from_attrs(CONTAINER_ATTRS, "border0.io")
    assert info.ip == "172.18.0.4"
    assert info.labels["border0.io/enable"] == "true"
    assert info.email == "dev@example.com"

    empty = workload_info_from_attrs({}, "border0.io")
    assert empty.ip == ""
    assert empty.labels == {}


@pytest.mark.asyncio
async def test_docker_lookup_returns_none_for_missing_container():
    discovery = DockerDiscovery(client=FakeDockerClient({"abc": CONTAINER_ATTRS}))
    assert (await discovery.get_workload_info("abc")).ip == "172.18.0.4"
    assert await discovery.get_workload_info("missing") is None


def test_docker_events_map_start_and_die():
    assert event_from_docker({"status": "start", "id": "abc"}) == WorkloadEvent(WorkloadEventType.START, "abc")
    assert event_from_docker({"Action": "die", "Actor": {"ID": "abc"}}) == WorkloadEvent(WorkloadEventType.STOP, "abc")
    assert event_from_docker({"Action": "pause", "id": "abc"}) is None


@pytest.mark.asyncio
async def test_docker_watch_yields_lifecycle_events():
    client = FakeDockerClient(
        events=[{"Action": "start", "id": "a"}, {"Action": "exec_start", "id": "a"}, {"Action": "die", "id": "a"}]
    )
    events = [event async for event in DockerDiscovery(client=client).watch()]
    assert [event.type for event in events] == [WorkloadEventType.START, WorkloadEventType.STOP]
    assert client.event_filters == {"type": "container", "event": ["start", "die"]}


def test_pod_email_falls_back_to_annotations():
    pod = _pod(labels={"app": "ws"}, annotations={"border0.io/email": "ann@example.com"})
    info = workload_info_from_pod(pod, "border0.io")
    assert info.ip == "10.2.0.8"
    assert info.labels == {"app": "ws"}
    assert info.email == "ann@example.com"


@pytest.mark.asyncio
async def test_k8s_lookup_uses_default_namespace_and_handles_errors():
    pods = {("ws-1", "default"): _pod(namespace="default"), ("ws-2", "team"): _pod(name="ws-2", ip=None)}
    discovery = KubernetesDiscovery(core_api=FakeCoreApi(pods))

    assert (await discovery.get_workload_info("ws-1")).ip == "10.2.0.8"
    assert (await discovery.get_workload_info("ws-2", "team")).ip == ""
    assert await discovery.get_workload_info("ws-3", "team") is None


def test_k8s_watch_events():
    running = event_from_watch({"type": "ADDED", "object": _pod()})
    assert running == WorkloadEvent(WorkloadEventType.START, "ws-1", "dev")
    assert event_from_watch({"type": "MODIFIED", "object": _pod(phase="Pending")}) is None
    assert event_from_watch({"type": "MODIFIED", "object": _pod(ip=None)}) is None
    assert event_from_watch({"type": "DELETED", "object": _pod()}) == WorkloadEvent(
        WorkloadEventType.STOP, "ws-1", "dev"
    )
    assert event_from_watch({"type": "ADDED", "object": _pod(name=None)}) is None


@pytest.mark.asyncio
async def test_iterate_in_thread_drains_blocking_iterator():
    assert [item async for item in iterate_in_thread(iter([1, 2, 3]))] == [1, 2, 3]


def test_create_discovery_selects_adapter():
    assert isinstance(create_discovery("docker", "border0.io", FakeDockerClient()), DockerDiscovery)
    assert isinstance(create_discovery("k8s", "border0.io", FakeCoreApi({})), KubernetesDiscovery)
    with pytest.raises(ValueError):
        create_discovery("nomad", "border0.io")
