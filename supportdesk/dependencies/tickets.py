from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request

from supportdesk.tickets.models import CreatorKind
from supportdesk.tickets.service import TicketService


@dataclass(frozen=True, slots=True)
class Caller:
    """Identity of the account making a request, as asserted by the gateway."""

    id: UUID
    kind: CreatorKind
    tenant_id: UUID | None = None


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_caller(
    actor_id: Annotated[UUID | None, Header(alias="X-Actor-Id")] = None,
    actor_kind: Annotated[CreatorKind, Header(alias="X-Actor-Kind")] = CreatorKind.PLATFORM_AGENT,
    tenant_id: Annotated[UUID | None, Header(alias="X-Tenant-Id")] = None,
) -> Caller:
    """Read the caller identity that the upstream gateway has already authenticated."""

    if actor_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return Caller(id=actor_id, kind=actor_kind, tenant_id=tenant_id)


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
CurrentCaller = Annotated[Caller, Depends(get_caller)]
