"""Personal policy resolution and attachment."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import structlog
from opentelemetry import trace

from ..common.schemas import PERSONAL_POLICY_PREFIX, SOCKET_TYPES
from .client import RemoteAccessClient, RemoteTransportError

LOGGER = structlog.get_logger("accessglue.access.policies")
TRACER = trace.get_tracer("accessglue.access.policies")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9]")


def personal_policy_name(email: str) -> str:
    return PERSONAL_POLICY_PREFIX + _UNSAFE_CHARS.sub("-", email)


def personal_policy_condition(email: str) -> dict:
    return {
        "who": {"email": [email]},
        "what": {"socket_types": sorted(SOCKET_TYPES.values())},
    }


class AttachStatus(str, Enum):
    ATTACHED = "attached"
    ATTACHED_GLOBAL_ONLY = "attached_global_only"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class AttachOutcome:
    """What an ``attach`` call actually attached to the endpoint."""

    status: AttachStatus
    policy_ids: list[str] = field(default_factory=list)
    personal_policy_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status in (AttachStatus.ATTACHED_GLOBAL_ONLY, AttachStatus.FAILED)


class PolicyManager:
    def __init__(self, client: RemoteAccessClient) -> None:
        self._client = client

    async def create_personal_policy(self, email: str) -> str:
        """Create the principal's personal policy and return its id."""

        name = personal_policy_name(email)
        created = await self._client.create_policy(
            name,
            personal_policy_condition(email),
            actions=["allow"],
            description=f"Personal access for {email}",
        )
        LOGGER.info("Created personal policy", policy=name, policy_id=created.id)
        return created.id

    async def attach(
        self,
        endpoint_id: str,
        principal_email: Optional[str] = None,
        predefined_policy_ids: Sequence[str] = (),
    ) -> AttachOutcome:
        policy_ids = list(predefined_policy_ids)
        personal_id: Optional[str] = None
        error: Optional[str] = None

        with TRACER.start_as_current_span("policies.attach") as span:
            span.set_attribute("access.endpoint_id", endpoint_id)
            if principal_email:
                # Lookup failures propagate; only a failed creation degrades to global access.
                existing = await self._client.find_policy_by_name(personal_policy_name(principal_email))
                if existing is not None:
                    personal_id = existing.id
                else:
                    try:
                        personal_id = await self.create_personal_policy(principal_email)
                    except RemoteTransportError as exc:
                        error = str(exc)
                        LOGGER.warning(
                            "Personal policy unavailable; attaching global policies only",
                            endpoint_id=endpoint_id,
                            email=principal_email,
                            status=exc.status_code,
                            error=error,
                        )
                if personal_id is not None and personal_id not in policy_ids:
                    policy_ids.append(personal_id)

            if not policy_ids:
                status = AttachStatus.FAILED if error else AttachStatus.SKIPPED
                span.set_attribute("access.attach_status", status.value)
                return AttachOutcome(status=status, error=error)

            await self._client.attach_policies(endpoint_id, policy_ids)
            status = AttachStatus.ATTACHED_GLOBAL_ONLY if error else AttachStatus.ATTACHED
            span.set_attribute("access.attach_status", status.value)
            return AttachOutcome(
                status=status,
                policy_ids=policy_ids,
                personal_policy_id=personal_id,
                error=error,
            )
