from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable
from uuid import UUID

import asyncpg

from .errors import SequenceAllocationFailure
from .models import CreatorKind, StatusHistoryEntry, Ticket, TicketCategory, TicketMessage
from .sequence import SequenceCounter
from .sla import TicketPriority
from .state import TERMINAL_STATUSES, TicketStatus

_TICKET_COLUMNS = """
    id, ticket_number, tenant_id, created_by_id, created_by_kind, subject, description, category,
    priority, status, assigned_to_id, resolved_at, closed_at, satisfaction_rating, message_count,
    last_message_at, sla_response_deadline, sla_resolution_deadline, sla_paused_at, sla_paused_duration,
    created_at, updated_at
"""


@dataclass(slots=True)
class TicketFilters:
    """Optional criteria for listing tickets; ``None`` means unfiltered."""

    tenant_id: UUID | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    category: TicketCategory | None = None
    assigned_to_id: UUID | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    search: str | None = None
    sla_breached: bool | None = None
    limit: int = 20
    offset: int = 0


class TicketTransaction:
    """Operations bound to one open connection and transaction.

    Row locks taken here are held until the enclosing transaction commits or
    rolls back.
    """

    _SET_LOCK_TIMEOUT_SQL = "SET LOCAL lock_timeout = '{timeout}ms'"

    _ENSURE_COUNTER_SQL = """
    INSERT INTO ticket_sequences (tenant_id, current_year, current_sequence)
    VALUES ($1, $2, 0)
    ON CONFLICT (tenant_id) DO NOTHING
    """

    _LOCK_COUNTER_SQL = """
    SELECT tenant_id, current_year, current_sequence
    FROM ticket_sequences
    WHERE tenant_id = $1
    FOR UPDATE
    """

    _SAVE_COUNTER_SQL = """
    UPDATE ticket_sequences
    SET current_year = $2,
        current_sequence = $3
    WHERE tenant_id = $1
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20, $21, $22)
    """

    _LOCK_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    FOR UPDATE
    """

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET subject = $2,
        description = $3,
        category = $4,
        priority = $5,
        status = $6,
        assigned_to_id = $7,
        resolved_at = $8,
        closed_at = $9,
        satisfaction_rating = $10,
        message_count = $11,
        last_message_at = $12,
        sla_response_deadline = $13,
        sla_resolution_deadline = $14,
        sla_paused_at = $15,
        sla_paused_duration = $16,
        updated_at = $17
    WHERE id = $1
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO ticket_status_history (id, ticket_id, from_status, to_status, actor_id, reason, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    _INSERT_MESSAGE_SQL = """
    INSERT INTO ticket_messages (id, ticket_id, sender_id, sender_kind, content, is_internal_note, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    def __init__(self, connection: Any, *, lock_timeout_ms: int) -> None:
        self._connection = connection
        self._lock_timeout_ms = lock_timeout_ms

    async def lock_counter(self, tenant_id: UUID, year: int) -> SequenceCounter:
        try:
            await self._connection.execute(self._SET_LOCK_TIMEOUT_SQL.format(timeout=int(self._lock_timeout_ms)))
            await self._connection.execute(self._ENSURE_COUNTER_SQL, tenant_id, year)
            row = await self._connection.fetchrow(self._LOCK_COUNTER_SQL, tenant_id)
        except asyncpg.exceptions.LockNotAvailableError as exc:
            raise SequenceAllocationFailure(
                f"Could not lock ticket sequence for tenant {tenant_id} within {self._lock_timeout_ms}ms"
            ) from exc
        if row is None:
            raise SequenceAllocationFailure(f"Ticket sequence row for tenant {tenant_id} is missing")
        return SequenceCounter(
            tenant_id=_to_uuid(row["tenant_id"]),
            current_year=int(row["current_year"]),
            current_sequence=int(row["current_sequence"]),
        )

    async def save_counter(self, counter: SequenceCounter) -> None:
        await self._connection.execute(
            self._SAVE_COUNTER_SQL,
            counter.tenant_id,
            counter.current_year,
            counter.current_sequence,
        )

    async def insert_ticket(self, ticket: Ticket) -> None:
        await self._connection.execute(
            self._INSERT_TICKET_SQL,
            ticket.id,
            ticket.ticket_number,
            ticket.tenant_id,
            ticket.created_by_id,
            ticket.created_by_kind.value,
            ticket.subject,
            ticket.description,
            ticket.category.value,
            ticket.priority.value,
            ticket.status.value,
            ticket.assigned_to_id,
            ticket.resolved_at,
            ticket.closed_at,
            ticket.satisfaction_rating,
            ticket.message_count,
            ticket.last_message_at,
            ticket.sla_response_deadline,
            ticket.sla_resolution_deadline,
            ticket.sla_paused_at,
            ticket.sla_paused_duration,
            ticket.created_at,
            ticket.updated_at,
        )

    async def lock_ticket(self, ticket_id: UUID) -> Ticket | None:
        row = await self._connection.fetchrow(self._LOCK_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return row_to_ticket(row)

    async def update_ticket(self, ticket: Ticket) -> None:
        await self._connection.execute(
            self._UPDATE_TICKET_SQL,
            ticket.id,
            ticket.subject,
            ticket.description,
            ticket.category.value,
            ticket.priority.value,
            ticket.status.value,
            ticket.assigned_to_id,
            ticket.resolved_at,
            ticket.closed_at,
            ticket.satisfaction_rating,
            ticket.message_count,
            ticket.last_message_at,
            ticket.sla_response_deadline,
            ticket.sla_resolution_deadline,
            ticket.sla_paused_at,
            ticket.sla_paused_duration,
            ticket.updated_at,
        )

    async def insert_history(self, entries: Iterable[StatusHistoryEntry]) -> None:
        records = [
            (
                entry.id,
                entry.ticket_id,
                None if entry.from_status is None else entry.from_status.value,
                entry.to_status.value,
                entry.actor_id,
                entry.reason,
                entry.created_at,
            )
            for entry in entries
        ]
        if records:
            await self._connection.executemany(self._INSERT_HISTORY_SQL, records)

    async def insert_message(self, message: TicketMessage) -> None:
        await self._connection.execute(
            self._INSERT_MESSAGE_SQL,
            message.id,
            message.ticket_id,
            message.sender_id,
            message.sender_kind.value,
            message.content,
            message.is_internal_note,
            message.created_at,
        )


class TicketRepository:
    """Data access layer for tickets, their history, messages and the number counter."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id UUID PRIMARY KEY,
        ticket_number TEXT NOT NULL,
        tenant_id UUID NOT NULL,
        created_by_id UUID NOT NULL,
        created_by_kind TEXT NOT NULL,
        subject TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL,
        priority TEXT NOT NULL,
        status TEXT NOT NULL,
        assigned_to_id UUID NULL,
        resolved_at TIMESTAMPTZ NULL,
        closed_at TIMESTAMPTZ NULL,
        satisfaction_rating SMALLINT NULL CHECK (satisfaction_rating BETWEEN 1 AND 5),
        message_count INTEGER NOT NULL DEFAULT 0,
        last_message_at TIMESTAMPTZ NULL,
        sla_response_deadline TIMESTAMPTZ NOT NULL,
        sla_resolution_deadline TIMESTAMPTZ NOT NULL,
        sla_paused_at TIMESTAMPTZ NULL,
        sla_paused_duration INTERVAL NOT NULL DEFAULT INTERVAL '0',
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (tenant_id, ticket_number)
    )
    """

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_status_history (
        id UUID PRIMARY KEY,
        seq BIGSERIAL NOT NULL,
        ticket_id UUID NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        from_status TEXT NULL,
        to_status TEXT NOT NULL,
        actor_id UUID NOT NULL,
        reason TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_MESSAGES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_messages (
        id UUID PRIMARY KEY,
        ticket_id UUID NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        sender_id UUID NOT NULL,
        sender_kind TEXT NOT NULL,
        content TEXT NOT NULL,
        is_internal_note BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_SEQUENCES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_sequences (
        tenant_id UUID PRIMARY KEY,
        current_year INTEGER NOT NULL,
        current_sequence INTEGER NOT NULL DEFAULT 0
    )
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_HISTORY_SQL = """
    SELECT id, ticket_id, from_status, to_status, actor_id, reason, created_at
    FROM ticket_status_history
    WHERE ticket_id = $1
    ORDER BY created_at ASC, seq ASC
    """

    _SELECT_MESSAGES_SQL = """
    SELECT id, ticket_id, sender_id, sender_kind, content, is_internal_note, created_at
    FROM ticket_messages
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool, *, lock_timeout_ms: int = 5000) -> None:
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_HISTORY_SQL)
            await connection.execute(self._CREATE_MESSAGES_SQL)
            await connection.execute(self._CREATE_SEQUENCES_SQL)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[TicketTransaction]:
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                yield TicketTransaction(connection, lock_timeout_ms=self._lock_timeout_ms)

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
            if row is None:
                return None
            return row_to_ticket(row)

    async def list_tickets(self, filters: TicketFilters, *, now: datetime) -> list[Ticket]:
        query, args = self._build_list_query(filters, now=now)
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(query, *args)
            return [row_to_ticket(row) for row in rows]

    async def get_history(self, ticket_id: UUID) -> list[StatusHistoryEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_HISTORY_SQL, ticket_id)
            return [self._row_to_history(row) for row in rows]

    async def get_messages(self, ticket_id: UUID) -> list[TicketMessage]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_MESSAGES_SQL, ticket_id)
            return [self._row_to_message(row) for row in rows]

    @staticmethod
    def _build_list_query(filters: TicketFilters, *, now: datetime) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        args: list[Any] = []

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if filters.tenant_id is not None:
            clauses.append(f"tenant_id = {bind(filters.tenant_id)}")
        if filters.status is not None:
            clauses.append(f"status = {bind(filters.status.value)}")
        if filters.priority is not None:
            clauses.append(f"priority = {bind(filters.priority.value)}")
        if filters.category is not None:
            clauses.append(f"category = {bind(filters.category.value)}")
        if filters.assigned_to_id is not None:
            clauses.append(f"assigned_to_id = {bind(filters.assigned_to_id)}")
        if filters.created_from is not None:
            clauses.append(f"created_at >= {bind(filters.created_from)}")
        if filters.created_to is not None:
            clauses.append(f"created_at <= {bind(filters.created_to)}")
        if filters.search:
            pattern = bind(f"%{filters.search}%")
            clauses.append(f"(subject ILIKE {pattern} OR description ILIKE {pattern} OR ticket_number ILIKE {pattern})")
        if filters.sla_breached is not None:
            terminal = bind([status.value for status in TERMINAL_STATUSES])
            breached = f"(status <> ALL({terminal}) AND sla_resolution_deadline < {bind(now)})"
            clauses.append(breached if filters.sla_breached else f"NOT {breached}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"""
        SELECT {_TICKET_COLUMNS}
        FROM tickets
        {where}
        ORDER BY created_at DESC
        LIMIT {bind(filters.limit)} OFFSET {bind(filters.offset)}
        """
        return query, args

    @staticmethod
    def _row_to_history(row: Any) -> StatusHistoryEntry:
        from_status = row["from_status"]
        return StatusHistoryEntry(
            id=_to_uuid(row["id"]),
            ticket_id=_to_uuid(row["ticket_id"]),
            from_status=TicketStatus(str(from_status)) if from_status else None,
            to_status=TicketStatus(str(row["to_status"])),
            actor_id=_to_uuid(row["actor_id"]),
            reason=row["reason"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_message(row: Any) -> TicketMessage:
        return TicketMessage(
            id=_to_uuid(row["id"]),
            ticket_id=_to_uuid(row["ticket_id"]),
            sender_id=_to_uuid(row["sender_id"]),
            sender_kind=CreatorKind(str(row["sender_kind"])),
            content=str(row["content"]),
            is_internal_note=bool(row["is_internal_note"]),
            created_at=row["created_at"],
        )


def row_to_ticket(row: Any) -> Ticket:
    assigned_to = row["assigned_to_id"]
    rating = row["satisfaction_rating"]
    paused_duration = row["sla_paused_duration"]
    return Ticket(
        id=_to_uuid(row["id"]),
        ticket_number=str(row["ticket_number"]),
        tenant_id=_to_uuid(row["tenant_id"]),
        created_by_id=_to_uuid(row["created_by_id"]),
        created_by_kind=CreatorKind(str(row["created_by_kind"])),
        subject=str(row["subject"]),
        description=str(row["description"]),
        category=TicketCategory(str(row["category"])),
        priority=TicketPriority(str(row["priority"])),
        status=TicketStatus(str(row["status"])),
        assigned_to_id=_to_uuid(assigned_to) if assigned_to is not None else None,
        resolved_at=row["resolved_at"],
        closed_at=row["closed_at"],
        satisfaction_rating=int(rating) if rating is not None else None,
        message_count=int(row["message_count"]),
        last_message_at=row["last_message_at"],
        sla_response_deadline=row["sla_response_deadline"],
        sla_resolution_deadline=row["sla_resolution_deadline"],
        sla_paused_at=row["sla_paused_at"],
        sla_paused_duration=paused_duration if paused_duration is not None else timedelta(0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))
