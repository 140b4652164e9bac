"""Operational commands for the access glue service."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Optional, Sequence

import httpx

from ..access.client import RemoteTransportError
from ..access.provisioner import Provisioner, WorkloadNotFoundError, provisioner_from_settings, requested_from_types
from ..common.observability import configure_logging
from ..common.schemas import ServiceType
from ..common.settings import GlueSettings


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage remote access endpoints and policies")
    subparsers = parser.add_subparsers(dest="command", required=True)

    maintenance_parser = subparsers.add_parser("maintenance", help="Run one orphaned-policy sweep")
    maintenance_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    teardown_parser = subparsers.add_parser("teardown", help="Delete every endpoint of a workload")
    teardown_parser.add_argument("workload_id")
    teardown_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    provision_parser = subparsers.add_parser("provision", help="Create or update a workload's endpoints")
    provision_parser.add_argument("workload_id")
    provision_parser.add_argument("--email", help="Owner email for the personal policy")
    provision_parser.add_argument("--namespace", help="Kubernetes namespace of the workload")
    provision_parser.add_argument(
        "--service",
        action="append",
        choices=[service_type.value for service_type in ServiceType],
        help="Service type to enable (repeatable); defaults to labels and built-in defaults",
    )
    provision_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    endpoints_parser = subparsers.add_parser("endpoints", help="List endpoints by name prefix")
    endpoints_parser.add_argument("--prefix", default="", help="Endpoint name prefix")
    endpoints_parser.add_argument("--json", action="store_true", help="Output raw JSON")

    return parser.parse_args(argv)


def print_endpoints(rows: list[dict[str, Any]]) -> None:
    headers = ["id", "name", "socket_type", "public_address"]
    widths = {header: len(header) for header in headers}
    normalized = [{key: str(row.get(key) or "-") for key in headers} for row in rows]
    for row in normalized:
        for key, value in row.items():
            widths[key] = max(widths[key], len(value))
    print("  ".join(key.ljust(widths[key]) for key in headers))
    print("  ".join("-" * widths[key] for key in headers))
    for row in normalized:
        print("  ".join(row[key].ljust(widths[key]) for key in headers))


async def execute(args: argparse.Namespace, provisioner: Provisioner) -> int:
    try:
        return await dispatch(args, provisioner)
    except RemoteTransportError as exc:
        print(f"Error: {exc}")
        return 1


async def dispatch(args: argparse.Namespace, provisioner: Provisioner) -> int:
    if args.command == "maintenance":
        run = await provisioner.run_maintenance_once()
        payload = {"success": run.success, "duration_ms": round(run.duration_ms, 2), "deleted": run.deleted}
        if args.json:
            print(json.dumps(payload, indent=2))
        else:
            print(f"Sweep {'succeeded' if run.success else 'failed'} in {payload['duration_ms']} ms")
            print(f"Deleted policies: {run.deleted}")
        return 0 if run.success else 1

    if args.command == "teardown":
        result = await provisioner.teardown(args.workload_id)
        payload = {
            "deleted_count": result.deleted_endpoint_count,
            "deleted_policy_count": result.deleted_policy_count,
        }
        if args.json:
            print(json.dumps(payload, indent=2))
        else:
            print(f"Deleted endpoints: {result.deleted_endpoint_count}")
            print(f"Deleted policies: {result.deleted_policy_count}")
        return 0

    if args.command == "provision":
        requested = requested_from_types(args.service) if args.service else None
        try:
            result = await provisioner.reconcile_all(
                args.workload_id,
                requested=requested,
                principal_email=args.email,
                namespace=args.namespace,
            )
        except WorkloadNotFoundError as exc:
            print(f"Error: {exc}")
            return 2
        errors = {service_type.value: message for service_type, message in result.errors.items()}
        if args.json:
            print(json.dumps({"urls": result.urls, "socket_ids": result.endpoint_ids, "errors": errors}, indent=2))
        else:
            for service, url in sorted(result.urls.items()):
                print(f"{service}: {url or '-'}")
            for service, message in sorted(errors.items()):
                print(f"{service}: FAILED ({message})")
        return 1 if errors else 0

    if args.command == "endpoints":
        endpoints = await provisioner.client.list_endpoints_by_name_prefix(args.prefix)
        rows = [endpoint.model_dump(include={"id", "name", "socket_type", "public_address"}) for endpoint in endpoints]
        if args.json:
            print(json.dumps(rows, indent=2))
        else:
            print_endpoints(rows)
        return 0

    raise ValueError(f"unknown command: {args.command}")


async def run(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = GlueSettings()
    configure_logging("accessglue.cli", settings.log_level, deployment_mode=settings.deployment_mode)
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
        provisioner = provisioner_from_settings(settings, http_client)
        return await execute(args, provisioner)


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
