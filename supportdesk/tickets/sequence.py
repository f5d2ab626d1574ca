from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

TICKET_NUMBER_PREFIX = "TKT-"


@dataclass(slots=True)
class SequenceCounter:
    """Per-tenant counter row backing ticket number allocation."""

    tenant_id: UUID
    current_year: int
    current_sequence: int = 0


@dataclass(frozen=True, slots=True)
class AllocatedNumber:
    """Outcome of a single allocation."""

    sequence: int
    ticket_number: str


class SequenceStore(Protocol):
    """Storage transaction able to lock and persist the counter row.

    ``lock_counter`` must hold an exclusive lock on the row until the
    surrounding transaction ends and raise ``SequenceAllocationFailure`` if the
    lock cannot be obtained in time.
    """

    async def lock_counter(self, tenant_id: UUID, year: int) -> SequenceCounter:
        ...

    async def save_counter(self, counter: SequenceCounter) -> None:
        ...


def format_ticket_number(year: int, sequence: int) -> str:
    """Render ``TKT-<year><sequence>``; the sequence is padded, never truncated."""

    return f"{TICKET_NUMBER_PREFIX}{year}{sequence:05d}"


class SequenceAllocator:
    """Hand out gapless, per-tenant, per-year ticket numbers.

    The allocator does not retry. A lock timeout surfaces to the caller, which
    must retry the whole ticket creation because the transaction that would
    have received the number is rolled back.
    """

    def __init__(self, store: SequenceStore) -> None:
        self._store = store

    async def next_number(self, tenant_id: UUID, year: int) -> AllocatedNumber:
        counter = await self._store.lock_counter(tenant_id, year)
        if counter.current_year != year:
            counter.current_year = year
            counter.current_sequence = 0
        counter.current_sequence += 1
        await self._store.save_counter(counter)
        return AllocatedNumber(
            sequence=counter.current_sequence,
            ticket_number=format_ticket_number(year, counter.current_sequence),
        )
