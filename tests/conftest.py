from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID, uuid4

import pytest

from supportdesk.tickets.models import CreatorKind, StatusHistoryEntry, Ticket, TicketCategory, TicketMessage
from supportdesk.tickets.repository import TicketFilters
from supportdesk.tickets.sequence import SequenceCounter
from supportdesk.tickets.sla import TicketPriority

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeUnitOfWork:
    """Buffered writes plus asyncio locks standing in for row locks."""

    def __init__(self, store: InMemoryTicketStore) -> None:
        self._store = store
        self._held: list[asyncio.Lock] = []
        self.tickets: dict[UUID, Ticket] = {}
        self.history: list[StatusHistoryEntry] = []
        self.messages: list[TicketMessage] = []
        self.counters: dict[UUID, SequenceCounter] = {}

    async def _acquire(self, lock: asyncio.Lock) -> None:
        if lock not in self._held:
            await lock.acquire()
            self._held.append(lock)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()

    async def lock_counter(self, tenant_id: UUID, year: int) -> SequenceCounter:
        if self._store.counter_failure is not None:
            raise self._store.counter_failure
        await self._acquire(self._store.counter_locks[tenant_id])
        stored = self._store.counters.get(tenant_id) or SequenceCounter(tenant_id=tenant_id, current_year=year)
        # Yield so competing tasks get a chance to interleave with the read.
        await asyncio.sleep(0)
        return copy.copy(stored)

    async def save_counter(self, counter: SequenceCounter) -> None:
        await asyncio.sleep(0)
        self.counters[counter.tenant_id] = copy.copy(counter)

    async def insert_ticket(self, ticket: Ticket) -> None:
        self.tickets[ticket.id] = ticket

    async def lock_ticket(self, ticket_id: UUID) -> Ticket | None:
        await self._acquire(self._store.ticket_locks[ticket_id])
        ticket = self._store.tickets.get(ticket_id)
        await asyncio.sleep(0)
        return copy.deepcopy(ticket) if ticket is not None else None

    async def update_ticket(self, ticket: Ticket) -> None:
        self.tickets[ticket.id] = ticket

    async def insert_history(self, entries: Iterable[StatusHistoryEntry]) -> None:
        self.history.extend(entries)

    async def insert_message(self, message: TicketMessage) -> None:
        self.messages.append(message)


class InMemoryTicketStore:
    """Transactional test double for ``TicketRepository``."""

    def __init__(self) -> None:
        self.tickets: dict[UUID, Ticket] = {}
        self.history: list[StatusHistoryEntry] = []
        self.messages: list[TicketMessage] = []
        self.counters: dict[UUID, SequenceCounter] = {}
        self.counter_locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.ticket_locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.counter_failure: Exception | None = None

    @asynccontextmanager
    async def transaction(self):
        uow = FakeUnitOfWork(self)
        try:
            yield uow
            for ticket_id, ticket in uow.tickets.items():
                self.tickets[ticket_id] = copy.deepcopy(ticket)
            self.history.extend(uow.history)
            self.messages.extend(uow.messages)
            self.counters.update(uow.counters)
        finally:
            uow.release()

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        ticket = self.tickets.get(ticket_id)
        return copy.deepcopy(ticket) if ticket is not None else None

    async def list_tickets(self, filters: TicketFilters, *, now: datetime) -> list[Ticket]:
        tickets = [
            ticket
            for ticket in self.tickets.values()
            if (filters.tenant_id is None or ticket.tenant_id == filters.tenant_id)
            and (filters.status is None or ticket.status == filters.status)
            and (filters.sla_breached is None or ticket.is_sla_breached(now) == filters.sla_breached)
        ]
        tickets.sort(key=lambda ticket: ticket.created_at, reverse=True)
        return tickets[filters.offset : filters.offset + filters.limit]

    async def get_history(self, ticket_id: UUID) -> list[StatusHistoryEntry]:
        return [entry for entry in self.history if entry.ticket_id == ticket_id]

    async def get_messages(self, ticket_id: UUID) -> list[TicketMessage]:
        return [message for message in self.messages if message.ticket_id == ticket_id]


def make_ticket(
    *,
    priority: TicketPriority = TicketPriority.MEDIUM,
    created_at: datetime = T0,
    ticket_number: str = "TKT-202500001",
) -> Ticket:
    return Ticket.create(
        ticket_id=uuid4(),
        ticket_number=ticket_number,
        tenant_id=uuid4(),
        created_by_id=uuid4(),
        created_by_kind=CreatorKind.TENANT_ADMIN,
        subject="Cannot access account",
        description="Locked out after password reset",
        category=TicketCategory.ACCOUNT,
        priority=priority,
        created_at=created_at,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryTicketStore:
    return InMemoryTicketStore()
