from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from conftest import T0
from supportdesk.tickets import (
    CreatorKind,
    InvalidRating,
    InvalidStatusTransition,
    SequenceAllocationFailure,
    TicketCategory,
    TicketFilters,
    TicketNotFoundError,
    TicketPriority,
    TicketService,
    TicketStatus,
)

AGENT = uuid4()


@pytest.fixture
def service(store, clock):
    return TicketService(store, clock=clock)


async def _create(service, *, tenant_id=None, priority=TicketPriority.MEDIUM):
    return await service.create_ticket(
        tenant_id=tenant_id or uuid4(),
        created_by_id=uuid4(),
        created_by_kind=CreatorKind.END_CUSTOMER,
        subject="Invoice missing",
        description="January invoice was never sent",
        category=TicketCategory.BILLING,
        priority=priority,
    )


@pytest.mark.asyncio
async def test_create_ticket_numbers_and_records_history(service, store):
    tenant = uuid4()
    first = await _create(service, tenant_id=tenant, priority=TicketPriority.HIGH)
    second = await _create(service, tenant_id=tenant)

    assert first.ticket_number == "TKT-202500001"
    assert second.ticket_number == "TKT-202500002"
    assert first.status == TicketStatus.OPEN
    assert first.sla_resolution_deadline == T0 + timedelta(hours=24)

    history = await service.get_history(first.id)
    assert [(entry.from_status, entry.to_status) for entry in history] == [(None, TicketStatus.OPEN)]
    assert store.tickets[first.id].ticket_number == "TKT-202500001"


@pytest.mark.asyncio
async def test_concurrent_creation_yields_unique_numbers(service):
    tenant = uuid4()
    tickets = await asyncio.gather(*(_create(service, tenant_id=tenant) for _ in range(10)))

    numbers = sorted(ticket.ticket_number for ticket in tickets)
    assert numbers == [f"TKT-2025{index:05d}" for index in range(1, 11)]


@pytest.mark.asyncio
async def test_allocation_failure_creates_nothing(service, store):
    store.counter_failure = SequenceAllocationFailure("lock timeout")

    with pytest.raises(SequenceAllocationFailure):
        await _create(service)

    assert store.tickets == {}
    assert store.history == []
    assert service.metrics.sequence_failures.value() == 1


@pytest.mark.asyncio
async def test_status_changes_are_persisted_with_history(service, clock):
    ticket = await _create(service)

    clock.advance(minutes=10)
    await service.start_progress(ticket.id, actor_id=AGENT)
    clock.advance(minutes=10)
    resolved = await service.resolve(ticket.id, actor_id=AGENT, reason="Invoice resent")

    assert resolved.status == TicketStatus.RESOLVED
    assert resolved.resolved_at == T0 + timedelta(minutes=20)
    history = await service.get_history(ticket.id)
    assert [entry.to_status for entry in history] == [
        TicketStatus.OPEN,
        TicketStatus.IN_PROGRESS,
        TicketStatus.RESOLVED,
    ]
    assert history[-1].reason == "Invoice resent"
    assert history[-1].actor_id == AGENT
    assert service.metrics.transitions.value(labels={"from_status": "OPEN", "to_status": "IN_PROGRESS"}) == 1


@pytest.mark.asyncio
async def test_rejected_transition_leaves_ticket_and_history_unchanged(service, store):
    ticket = await _create(service)
    await service.close(ticket.id, actor_id=AGENT)
    before = await service.get_ticket(ticket.id)
    history_before = await service.get_history(ticket.id)

    with pytest.raises(InvalidStatusTransition):
        await service.start_progress(ticket.id, actor_id=AGENT)

    assert await service.get_ticket(ticket.id) == before
    assert await service.get_history(ticket.id) == history_before
    assert service.metrics.rejections.value(labels={"from_status": "CLOSED", "to_status": "IN_PROGRESS"}) == 1


@pytest.mark.asyncio
async def test_concurrent_transitions_from_same_state_serialize(service):
    ticket = await _create(service)
    await service.start_progress(ticket.id, actor_id=AGENT)

    results = await asyncio.gather(
        service.wait_on_third_party(ticket.id, actor_id=AGENT),
        service.wait_on_third_party(ticket.id, actor_id=AGENT),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStatusTransition)
    history = await service.get_history(ticket.id)
    assert [entry.to_status for entry in history].count(TicketStatus.WAITING_ON_THIRD_PARTY) == 1


@pytest.mark.asyncio
async def test_waiting_on_customer_extends_deadlines(service, clock):
    ticket = await _create(service, priority=TicketPriority.HIGH)
    clock.advance(hours=2)
    await service.wait_on_customer(ticket.id, actor_id=AGENT)
    clock.advance(hours=3)
    resumed = await service.start_progress(ticket.id, actor_id=AGENT)

    assert resumed.sla_response_deadline == T0 + timedelta(hours=11)
    assert resumed.sla_resolution_deadline == T0 + timedelta(hours=27)
    assert service.metrics.sla_pause_seconds.snapshot()[()]["count"] == 1.0


@pytest.mark.asyncio
async def test_sla_breach_is_computed_against_clock(service, clock):
    ticket = await _create(service, priority=TicketPriority.CRITICAL)
    assert service.is_sla_breached(ticket) is False

    clock.advance(hours=9)
    assert service.is_sla_breached(ticket) is True
    breached = await service.list_tickets(TicketFilters(sla_breached=True))
    assert [item.id for item in breached] == [ticket.id]


@pytest.mark.asyncio
async def test_rate_after_resolution(service):
    ticket = await _create(service)
    with pytest.raises(InvalidRating):
        await service.rate(ticket.id, 5)

    await service.resolve(ticket.id, actor_id=AGENT)
    rated = await service.rate(ticket.id, 4)
    assert rated.satisfaction_rating == 4
    assert (await service.get_ticket(ticket.id)).satisfaction_rating == 4


@pytest.mark.asyncio
async def test_assign_and_change_priority(service, clock):
    ticket = await _create(service, priority=TicketPriority.LOW)
    user = uuid4()

    assigned = await service.assign(ticket.id, user)
    assert assigned.assigned_to_id == user
    assert assigned.status == TicketStatus.OPEN

    clock.advance(hours=1)
    changed = await service.change_priority(ticket.id, TicketPriority.CRITICAL)
    assert changed.sla_resolution_deadline == T0 + timedelta(hours=9)

    unassigned = await service.unassign(ticket.id)
    assert unassigned.assigned_to_id is None
    assert [entry.to_status for entry in await service.get_history(ticket.id)] == [TicketStatus.OPEN]


@pytest.mark.asyncio
async def test_update_ticket_changes_only_given_fields(service):
    ticket = await _create(service)
    updated = await service.update_ticket(ticket.id, subject="Invoice missing for January")

    assert updated.subject == "Invoice missing for January"
    assert updated.description == ticket.description
    assert updated.category == TicketCategory.BILLING


@pytest.mark.asyncio
async def test_add_message_tracks_count_and_hides_internal_notes(service, clock):
    ticket = await _create(service)
    clock.advance(minutes=3)
    await service.add_message(ticket.id, sender_id=AGENT, sender_kind=CreatorKind.PLATFORM_AGENT, content="On it")
    clock.advance(minutes=3)
    await service.add_message(
        ticket.id,
        sender_id=AGENT,
        sender_kind=CreatorKind.PLATFORM_AGENT,
        content="Customer is on legacy plan",
        is_internal_note=True,
    )

    stored = await service.get_ticket(ticket.id)
    assert stored.message_count == 2
    assert stored.last_message_at == T0 + timedelta(minutes=6)
    assert len(await service.get_messages(ticket.id)) == 2
    public = await service.get_messages(ticket.id, include_internal=False)
    assert [message.content for message in public] == ["On it"]


@pytest.mark.asyncio
async def test_missing_ticket_raises_not_found(service):
    missing = uuid4()
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(missing)
    with pytest.raises(TicketNotFoundError):
        await service.resolve(missing, actor_id=AGENT)
    with pytest.raises(TicketNotFoundError):
        await service.get_history(missing)


@pytest.mark.asyncio
async def test_publisher_failure_does_not_undo_change(store, clock):
    publisher = AsyncMock()
    publisher.publish.side_effect = RuntimeError("broker down")
    service = TicketService(store, clock=clock, publisher=publisher)

    ticket = await _create(service)
    escalated = await service.escalate(ticket.id, actor_id=AGENT)

    assert escalated.status == TicketStatus.ESCALATED
    assert store.tickets[ticket.id].status == TicketStatus.ESCALATED
    assert publisher.publish.await_count == 2


@pytest.mark.asyncio
async def test_history_ids_come_from_id_factory(store, clock):
    counter = itertools.count(1)
    issued: list[UUID] = []

    def id_factory() -> UUID:
        value = UUID(int=next(counter))
        issued.append(value)
        return value

    service = TicketService(store, clock=clock, id_factory=id_factory)
    ticket = await _create(service)
    await service.start_progress(ticket.id, actor_id=AGENT)

    history = await service.get_history(ticket.id)
    assert ticket.id in issued
    assert len(history) == 2
    assert all(entry.id in issued for entry in history)
    assert len({ticket.id, *(entry.id for entry in history)}) == 3


@pytest.mark.asyncio
async def test_response_overdue_until_first_message(service, clock):
    ticket = await _create(service, priority=TicketPriority.CRITICAL)
    clock.advance(hours=5)
    assert service.is_response_overdue(ticket) is True

    await service.add_message(ticket.id, sender_id=AGENT, sender_kind=CreatorKind.PLATFORM_AGENT, content="Looking")
    assert service.is_response_overdue(await service.get_ticket(ticket.id)) is False
