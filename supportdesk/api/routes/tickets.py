from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from supportdesk.dependencies.tickets import CurrentCaller, TicketServiceDep
from supportdesk.tickets.errors import (
    InvalidRating,
    InvalidStatusTransition,
    SequenceAllocationFailure,
    TicketNotFoundError,
)
from supportdesk.tickets.models import CreatorKind, StatusHistoryEntry, Ticket, TicketCategory, TicketMessage
from supportdesk.tickets.repository import TicketFilters
from supportdesk.tickets.service import TicketService
from supportdesk.tickets.sla import TicketPriority
from supportdesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM
    tenant_id: UUID | None = None
    assigned_to_id: UUID | None = None


class TicketUpdateRequest(BaseModel):
    subject: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, min_length=1)
    category: TicketCategory | None = None

    def ensure_payload(self) -> None:
        if self.subject is None and self.description is None and self.category is None:
            raise HTTPException(status_code=400, detail="No fields provided for update")


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus
    reason: str | None = Field(default=None, max_length=1000)


class TicketEscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class TicketAssignRequest(BaseModel):
    assigned_to_id: UUID


class TicketPriorityRequest(BaseModel):
    priority: TicketPriority


class TicketRateRequest(BaseModel):
    # Range is enforced by the domain so the error shape stays consistent.
    score: int


class TicketMessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1)
    is_internal_note: bool = False


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_number: str
    tenant_id: UUID
    created_by_id: UUID
    created_by_kind: CreatorKind
    subject: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus
    assigned_to_id: UUID | None
    resolved_at: datetime | None
    closed_at: datetime | None
    satisfaction_rating: int | None
    message_count: int
    last_message_at: datetime | None
    sla_response_deadline: datetime
    sla_resolution_deadline: datetime
    sla_paused_at: datetime | None
    sla_paused_duration: timedelta
    is_sla_paused: bool
    sla_breached: bool = False
    response_overdue: bool = False
    created_at: datetime
    updated_at: datetime


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_id: UUID
    from_status: TicketStatus | None
    to_status: TicketStatus
    actor_id: UUID
    reason: str | None
    created_at: datetime


class TicketMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_id: UUID
    sender_id: UUID
    sender_kind: CreatorKind
    content: str
    is_internal_note: bool
    created_at: datetime


def _to_response(ticket: Ticket, service: TicketService) -> TicketResponse:
    response = TicketResponse.model_validate(ticket)
    response.sla_breached = service.is_sla_breached(ticket)
    response.response_overdue = service.is_response_overdue(ticket)
    return response


def _history_response(entry: StatusHistoryEntry) -> StatusHistoryResponse:
    return StatusHistoryResponse.model_validate(entry)


def _message_response(message: TicketMessage) -> TicketMessageResponse:
    return TicketMessageResponse.model_validate(message)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> TicketResponse:
    tenant_id = payload.tenant_id or caller.tenant_id
    if tenant_id is None:
        raise HTTPException(status_code=400, detail="A tenant is required to open a ticket")
    try:
        ticket = await service.create_ticket(
            tenant_id=tenant_id,
            created_by_id=caller.id,
            created_by_kind=caller.kind,
            subject=payload.subject,
            description=payload.description,
            category=payload.category,
            priority=payload.priority,
            assigned_to_id=payload.assigned_to_id,
        )
    except SequenceAllocationFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "1"}) from exc
    return _to_response(ticket, service)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    _: CurrentCaller,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    category: TicketCategory | None = Query(default=None),
    assigned_to: UUID | None = Query(default=None),
    tenant_id: UUID | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    sla_breached: bool | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[TicketResponse]:
    tickets = await service.list_tickets(
        TicketFilters(
            tenant_id=tenant_id,
            status=status_filter,
            priority=priority,
            category=category,
            assigned_to_id=assigned_to,
            created_from=date_from,
            created_to=date_to,
            search=search,
            sla_breached=sla_breached,
            limit=limit,
            offset=offset,
        )
    )
    return [_to_response(ticket, service) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: UUID, service: TicketServiceDep, _: CurrentCaller) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.put("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: UUID,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    _: CurrentCaller,
) -> TicketResponse:
    payload.ensure_payload()
    try:
        ticket = await service.update_ticket(
            ticket_id,
            subject=payload.subject,
            description=payload.description,
            category=payload.category,
        )
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.put("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: UUID,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
    _: CurrentCaller,
) -> TicketResponse:
    try:
        ticket = await service.assign(ticket_id, payload.assigned_to_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.delete("/{ticket_id}/assign", response_model=TicketResponse)
async def unassign_ticket(ticket_id: UUID, service: TicketServiceDep, _: CurrentCaller) -> TicketResponse:
    try:
        ticket = await service.unassign(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.put("/{ticket_id}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_id: UUID,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> TicketResponse:
    try:
        ticket = await service.change_status(
            ticket_id,
            new_status=payload.status,
            actor_id=caller.id,
            reason=payload.reason,
        )
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.put("/{ticket_id}/escalate", response_model=TicketResponse)
async def escalate_ticket(
    ticket_id: UUID,
    payload: TicketEscalateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> TicketResponse:
    try:
        ticket = await service.escalate(ticket_id, actor_id=caller.id, reason=payload.reason)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.put("/{ticket_id}/priority", response_model=TicketResponse)
async def change_ticket_priority(
    ticket_id: UUID,
    payload: TicketPriorityRequest,
    service: TicketServiceDep,
    _: CurrentCaller,
) -> TicketResponse:
    try:
        ticket = await service.change_priority(ticket_id, payload.priority)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.post("/{ticket_id}/rate", response_model=TicketResponse)
async def rate_ticket(
    ticket_id: UUID,
    payload: TicketRateRequest,
    service: TicketServiceDep,
    _: CurrentCaller,
) -> TicketResponse:
    try:
        ticket = await service.rate(ticket_id, payload.score)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRating as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _to_response(ticket, service)


@router.post(
    "/{ticket_id}/messages",
    response_model=TicketMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_ticket_message(
    ticket_id: UUID,
    payload: TicketMessageCreateRequest,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> TicketMessageResponse:
    try:
        message = await service.add_message(
            ticket_id,
            sender_id=caller.id,
            sender_kind=caller.kind,
            content=payload.content,
            is_internal_note=payload.is_internal_note,
        )
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _message_response(message)


@router.get("/{ticket_id}/messages", response_model=list[TicketMessageResponse])
async def list_ticket_messages(
    ticket_id: UUID,
    service: TicketServiceDep,
    caller: CurrentCaller,
) -> list[TicketMessageResponse]:
    try:
        messages = await service.get_messages(
            ticket_id, include_internal=caller.kind == CreatorKind.PLATFORM_AGENT
        )
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [_message_response(message) for message in messages]


@router.get("/{ticket_id}/history", response_model=list[StatusHistoryResponse])
async def get_ticket_history(
    ticket_id: UUID,
    service: TicketServiceDep,
    _: CurrentCaller,
) -> list[StatusHistoryResponse]:
    try:
        entries = await service.get_history(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [_history_response(entry) for entry in entries]
