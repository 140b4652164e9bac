from __future__ import annotations

import json

import httpx
import pytest

from accessglue.access.provisioner import Provisioner
from accessglue.cli import admin
from accessglue.common.observability import configure_logging


@pytest.fixture(autouse=True)
def _json_logging():
    # Route log events through stdlib logging, away from stdout.
    configure_logging("accessglue.cli", "INFO")


@pytest.fixture
def provisioner(access_client, fake_discovery) -> Provisioner:
    return Provisioner(access_client, fake_discovery, connector_ids=["conn-1"])


def test_parse_args_provision_services():
    args = admin.parse_args(["provision", "c1234567", "--service", "web", "--service", "shell", "--email", "a@b.c"])
    assert args.command == "provision"
    assert args.service == ["web", "shell"]
    assert args.email == "a@b.c"
    assert args.json is False


def test_parse_args_rejects_unknown_service():
    with pytest.raises(SystemExit):
        admin.parse_args(["provision", "c1", "--service", "ftp"])


@pytest.mark.asyncio
async def test_endpoints_table_and_json(capsys, fake_service, provisioner):
    fake_service.add_socket("shell-c1234567")
    fake_service.add_socket("desktop-c1234567", "vnc")
    fake_service.add_socket("shell-99999999")

    assert await admin.execute(admin.parse_args(["endpoints", "--prefix", "shell-"]), provisioner) == 0
    output = capsys.readouterr().out
    assert "public_address" in output
    assert "shell-c1234567" in output
    assert "desktop-c1234567" not in output

    await admin.execute(admin.parse_args(["endpoints", "--json"]), provisioner)
    rows = json.loads(capsys.readouterr().out)
    assert [row["name"] for row in rows] == ["shell-c1234567", "desktop-c1234567", "shell-99999999"]


@pytest.mark.asyncio
async def test_teardown_json(capsys, fake_service, provisioner):
    fake_service.add_socket("shell-c1234567")

    code = await admin.execute(admin.parse_args(["teardown", "c1234567", "--json"]), provisioner)

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"deleted_count": 1, "deleted_policy_count": 0}


@pytest.mark.asyncio
async def test_provision_selected_services(capsys, fake_service, fake_discovery, provisioner):
    fake_discovery.add("c1234567")

    code = await admin.execute(admin.parse_args(["provision", "c1234567", "--service", "web"]), provisioner)

    assert code == 0
    assert "web: web-c1234567.access.test" in capsys.readouterr().out
    assert [socket["name"] for socket in fake_service.sockets.values()] == ["web-c1234567"]


@pytest.mark.asyncio
async def test_provision_missing_workload_exit_code(capsys, provisioner):
    code = await admin.execute(admin.parse_args(["provision", "ghost"]), provisioner)
    assert code == 2
    assert "not found" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_maintenance_plain_output(capsys, fake_service, provisioner):
    fake_service.add_policy("user-policy-gone-example-com")

    code = await admin.execute(admin.parse_args(["maintenance"]), provisioner)

    assert code == 0
    output = capsys.readouterr().out
    assert "Sweep succeeded" in output
    assert "Deleted policies: 1" in output


@pytest.mark.asyncio
async def test_run_builds_provisioner_from_settings(monkeypatch, capsys, tmp_path, fake_service):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ACCESSGLUE_API_TOKEN", "token")
    monkeypatch.setenv("ACCESSGLUE_API_BASE_URL", "https://access.test/api/v1")
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        admin.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(fake_service.handler), **kwargs),
    )
    fake_service.add_socket("shell-c1234567")

    code = await admin.run(["endpoints", "--json"])

    assert code == 0
    assert json.loads(capsys.readouterr().out)[0]["name"] == "shell-c1234567"
    assert fake_service.requests[0][0] == "GET"


@pytest.mark.asyncio
@pytest.mark.parametrize("argv", [["teardown", "c1234567"], ["endpoints", "--json"]], ids=["teardown", "endpoints"])
async def test_remote_failures_print_error_and_exit_nonzero(capsys, fake_service, provisioner, argv):
    fake_service.fail("GET", "/sockets", 503)

    code = await admin.execute(admin.parse_args(argv), provisioner)

    assert code == 1
    assert capsys.readouterr().out == "Error: GET /sockets failed with HTTP 503\n"


@pytest.mark.asyncio
async def test_provision_remote_failures_are_reported_per_service(capsys, fake_service, fake_discovery, provisioner):
    fake_discovery.add("c1234567")
    fake_service.fail("GET", "/sockets", 503)

    code = await admin.execute(admin.parse_args(["provision", "c1234567", "--service", "shell"]), provisioner)

    assert code == 1
    assert capsys.readouterr().out == "shell: FAILED (GET /sockets failed with HTTP 503)\n"
