from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Iterable, Mapping, Protocol
from uuid import UUID, uuid4

from opentelemetry import trace

from supportdesk.metrics import TicketMetrics

from .errors import InvalidStatusTransition, SequenceAllocationFailure, TicketNotFoundError
from .events import LoggingEventPublisher, TicketEvent, TicketEventPublisher
from .models import CreatorKind, StatusHistoryEntry, Ticket, TicketCategory, TicketMessage
from .repository import TicketFilters
from .sequence import SequenceAllocator, SequenceCounter
from .sla import DEFAULT_SLA_POLICY, SlaPolicy, TicketPriority
from .state import TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketUnitOfWork(Protocol):
    async def lock_counter(self, tenant_id: UUID, year: int) -> SequenceCounter:
        ...

    async def save_counter(self, counter: SequenceCounter) -> None:
        ...

    async def insert_ticket(self, ticket: Ticket) -> None:
        ...

    async def lock_ticket(self, ticket_id: UUID) -> Ticket | None:
        ...

    async def update_ticket(self, ticket: Ticket) -> None:
        ...

    async def insert_history(self, entries: Iterable[StatusHistoryEntry]) -> None:
        ...

    async def insert_message(self, message: TicketMessage) -> None:
        ...


class TicketStore(Protocol):
    def transaction(self) -> AsyncContextManager[TicketUnitOfWork]:
        ...

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        ...

    async def list_tickets(self, filters: TicketFilters, *, now: datetime) -> list[Ticket]:
        ...

    async def get_history(self, ticket_id: UUID) -> list[StatusHistoryEntry]:
        ...

    async def get_messages(self, ticket_id: UUID) -> list[TicketMessage]:
        ...


class TicketService:
    """High level orchestration for the ticket lifecycle.

    Every mutating call runs in a single storage transaction: the ticket row
    is locked, the aggregate operation is applied, and the ticket plus any
    history entries it produced are written before commit. Errors propagate
    unchanged and roll the transaction back.
    """

    def __init__(
        self,
        repository: TicketStore,
        *,
        policy: SlaPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], UUID] = uuid4,
        publisher: TicketEventPublisher | None = None,
        metrics: TicketMetrics | None = None,
    ) -> None:
        self._repository = repository
        self._policy = policy or DEFAULT_SLA_POLICY
        self._clock = clock
        self._id_factory = id_factory
        self._publisher = publisher or LoggingEventPublisher()
        self.metrics = metrics or TicketMetrics()

    async def create_ticket(
        self,
        *,
        tenant_id: UUID,
        created_by_id: UUID,
        created_by_kind: CreatorKind,
        subject: str,
        description: str,
        category: TicketCategory,
        priority: TicketPriority,
        assigned_to_id: UUID | None = None,
    ) -> Ticket:
        with tracer.start_as_current_span("tickets.create") as span:
            span.set_attribute("ticket.tenant_id", str(tenant_id))
            span.set_attribute("ticket.priority", priority.value)
            now = self._clock()
            try:
                async with self._repository.transaction() as uow:
                    allocated = await SequenceAllocator(uow).next_number(tenant_id, now.year)
                    ticket = Ticket.create(
                        ticket_id=self._id_factory(),
                        ticket_number=allocated.ticket_number,
                        tenant_id=tenant_id,
                        created_by_id=created_by_id,
                        created_by_kind=created_by_kind,
                        subject=subject,
                        description=description,
                        category=category,
                        priority=priority,
                        created_at=now,
                        assigned_to_id=assigned_to_id,
                        policy=self._policy,
                        history_id=self._id_factory,
                    )
                    await uow.insert_ticket(ticket)
                    await uow.insert_history(ticket.collect_history())
            except SequenceAllocationFailure:
                self.metrics.sequence_failures.inc()
                logger.error("Ticket number allocation failed for tenant %s", tenant_id)
                raise
            span.set_attribute("ticket.number", ticket.ticket_number)

        logger.info(
            "Created ticket %s (%s) for tenant %s with priority %s",
            ticket.ticket_number,
            ticket.id,
            tenant_id,
            priority.value,
        )
        await self._publish("ticket.created", ticket, {"priority": priority.value, "category": category.value})
        return ticket

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def list_tickets(self, filters: TicketFilters | None = None) -> list[Ticket]:
        return await self._repository.list_tickets(filters or TicketFilters(), now=self._clock())

    async def get_history(self, ticket_id: UUID) -> list[StatusHistoryEntry]:
        await self.get_ticket(ticket_id)
        return await self._repository.get_history(ticket_id)

    async def get_messages(self, ticket_id: UUID, *, include_internal: bool = True) -> list[TicketMessage]:
        await self.get_ticket(ticket_id)
        messages = await self._repository.get_messages(ticket_id)
        if include_internal:
            return messages
        return [message for message in messages if not message.is_internal_note]

    def is_sla_breached(self, ticket: Ticket) -> bool:
        return ticket.is_sla_breached(self._clock())

    def is_response_overdue(self, ticket: Ticket) -> bool:
        return ticket.is_response_overdue(self._clock())

    # -- status transitions ------------------------------------------------

    async def start_progress(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(ticket_id, new_status=TicketStatus.IN_PROGRESS, actor_id=actor_id, reason=reason)

    async def wait_on_customer(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(
            ticket_id, new_status=TicketStatus.WAITING_ON_CUSTOMER, actor_id=actor_id, reason=reason
        )

    async def wait_on_third_party(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(
            ticket_id, new_status=TicketStatus.WAITING_ON_THIRD_PARTY, actor_id=actor_id, reason=reason
        )

    async def escalate(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(ticket_id, new_status=TicketStatus.ESCALATED, actor_id=actor_id, reason=reason)

    async def resolve(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(ticket_id, new_status=TicketStatus.RESOLVED, actor_id=actor_id, reason=reason)

    async def close(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(ticket_id, new_status=TicketStatus.CLOSED, actor_id=actor_id, reason=reason)

    async def reopen(self, ticket_id: UUID, *, actor_id: UUID, reason: str | None = None) -> Ticket:
        return await self.change_status(ticket_id, new_status=TicketStatus.REOPENED, actor_id=actor_id, reason=reason)

    async def change_status(
        self,
        ticket_id: UUID,
        *,
        new_status: TicketStatus,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Ticket:
        with tracer.start_as_current_span("tickets.change_status") as span:
            span.set_attribute("ticket.id", str(ticket_id))
            span.set_attribute("ticket.target_status", new_status.value)
            async with self._repository.transaction() as uow:
                ticket = await self._lock(uow, ticket_id)
                current = ticket.status
                paused_before = ticket.sla_paused_duration
                try:
                    ticket.transition_to(
                        new_status,
                        actor_id=actor_id,
                        at=self._clock(),
                        reason=reason,
                        history_id=self._id_factory,
                    )
                except InvalidStatusTransition:
                    self.metrics.rejections.inc(
                        labels={"from_status": current.value, "to_status": new_status.value}
                    )
                    logger.warning(
                        "Rejected transition %s -> %s for ticket %s", current.value, new_status.value, ticket.ticket_number
                    )
                    raise
                await uow.update_ticket(ticket)
                await uow.insert_history(ticket.collect_history())

        self.metrics.transitions.inc(labels={"from_status": current.value, "to_status": new_status.value})
        paused_for = ticket.sla_paused_duration - paused_before
        if paused_for.total_seconds() > 0:
            self.metrics.sla_pause_seconds.observe(paused_for.total_seconds())
        logger.info(
            "Ticket %s moved %s -> %s by %s", ticket.ticket_number, current.value, new_status.value, actor_id
        )
        await self._publish(
            "ticket.status_changed",
            ticket,
            {"from_status": current.value, "to_status": new_status.value, "actor_id": str(actor_id), "reason": reason},
        )
        return ticket

    # -- side-channel mutations --------------------------------------------

    async def rate(self, ticket_id: UUID, score: int) -> Ticket:
        ticket = await self._mutate(ticket_id, lambda item, now: item.rate(score, at=now))
        await self._publish("ticket.rated", ticket, {"score": score})
        return ticket

    async def assign(self, ticket_id: UUID, user_id: UUID) -> Ticket:
        ticket = await self._mutate(ticket_id, lambda item, now: item.assign_to(user_id, at=now))
        logger.info("Ticket %s assigned to %s", ticket.ticket_number, user_id)
        await self._publish("ticket.assigned", ticket, {"assigned_to_id": str(user_id)})
        return ticket

    async def unassign(self, ticket_id: UUID) -> Ticket:
        ticket = await self._mutate(ticket_id, lambda item, now: item.unassign(at=now))
        await self._publish("ticket.unassigned", ticket, {})
        return ticket

    async def change_priority(self, ticket_id: UUID, priority: TicketPriority) -> Ticket:
        ticket = await self._mutate(
            ticket_id, lambda item, now: item.change_priority(priority, as_of=now, policy=self._policy)
        )
        logger.info("Ticket %s priority changed to %s", ticket.ticket_number, priority.value)
        await self._publish("ticket.priority_changed", ticket, {"priority": priority.value})
        return ticket

    async def update_ticket(
        self,
        ticket_id: UUID,
        *,
        subject: str | None = None,
        description: str | None = None,
        category: TicketCategory | None = None,
    ) -> Ticket:
        return await self._mutate(
            ticket_id,
            lambda item, now: item.update_details(at=now, subject=subject, description=description, category=category),
        )

    async def add_message(
        self,
        ticket_id: UUID,
        *,
        sender_id: UUID,
        sender_kind: CreatorKind,
        content: str,
        is_internal_note: bool = False,
    ) -> TicketMessage:
        async with self._repository.transaction() as uow:
            ticket = await self._lock(uow, ticket_id)
            now = self._clock()
            message = TicketMessage(
                id=self._id_factory(),
                ticket_id=ticket.id,
                sender_id=sender_id,
                sender_kind=sender_kind,
                content=content,
                is_internal_note=is_internal_note,
                created_at=now,
            )
            ticket.record_message(now)
            await uow.insert_message(message)
            await uow.update_ticket(ticket)

        await self._publish(
            "ticket.message_added",
            ticket,
            {"message_id": str(message.id), "is_internal_note": is_internal_note},
        )
        return message

    # -- helpers -------------------------------------------------------------

    async def _mutate(self, ticket_id: UUID, mutation: Callable[[Ticket, datetime], None]) -> Ticket:
        async with self._repository.transaction() as uow:
            ticket = await self._lock(uow, ticket_id)
            mutation(ticket, self._clock())
            await uow.update_ticket(ticket)
        return ticket

    @staticmethod
    async def _lock(uow: TicketUnitOfWork, ticket_id: UUID) -> Ticket:
        ticket = await uow.lock_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _publish(self, name: str, ticket: Ticket, payload: Mapping[str, Any]) -> None:
        event = TicketEvent(
            name=name,
            ticket_id=ticket.id,
            tenant_id=ticket.tenant_id,
            ticket_number=ticket.ticket_number,
            occurred_at=ticket.updated_at,
            payload=dict(payload),
        )
        try:
            await self._publisher.publish(event)
        except Exception:  # the ticket change is already committed
            logger.exception("Failed to publish %s for ticket %s", name, ticket.ticket_number)
