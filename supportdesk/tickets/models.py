from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
from uuid import UUID, uuid4

from . import sla
from .errors import InvalidRating, InvalidStatusTransition
from .sla import DEFAULT_SLA_POLICY, SlaPolicy, TicketPriority
from .state import SLA_PAUSING_STATUSES, TERMINAL_STATUSES, TicketStateMachine, TicketStatus

MIN_RATING = 1
MAX_RATING = 5


class CreatorKind(str, Enum):
    """Kind of account that opened a ticket or posted a message."""

    TENANT_ADMIN = "TENANT_ADMIN"
    END_CUSTOMER = "END_CUSTOMER"
    PLATFORM_AGENT = "PLATFORM_AGENT"


class TicketCategory(str, Enum):
    BILLING = "BILLING"
    TECHNICAL = "TECHNICAL"
    ACCOUNT = "ACCOUNT"
    FEATURE_REQUEST = "FEATURE_REQUEST"
    BUG_REPORT = "BUG_REPORT"
    GENERAL = "GENERAL"


@dataclass(frozen=True, slots=True)
class StatusHistoryEntry:
    """Immutable record of one status change."""

    id: UUID
    ticket_id: UUID
    from_status: TicketStatus | None
    to_status: TicketStatus
    actor_id: UUID
    created_at: datetime
    reason: str | None = None


@dataclass(slots=True)
class TicketMessage:
    """Individual message belonging to a ticket thread."""

    id: UUID
    ticket_id: UUID
    sender_id: UUID
    sender_kind: CreatorKind
    content: str
    is_internal_note: bool
    created_at: datetime


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket and its SLA clock.

    All status changes go through :meth:`_apply_transition`, which validates
    the edge, mutates the status and queues the matching history entry in one
    step. Queued entries are drained by the service with
    :meth:`collect_history` and written in the same storage transaction as
    the ticket row.
    """

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
    sla_response_deadline: datetime
    sla_resolution_deadline: datetime
    created_at: datetime
    updated_at: datetime
    assigned_to_id: UUID | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    satisfaction_rating: int | None = None
    message_count: int = 0
    last_message_at: datetime | None = None
    sla_paused_at: datetime | None = None
    sla_paused_duration: timedelta = field(default_factory=timedelta)
    _pending_history: list[StatusHistoryEntry] = field(default_factory=list, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        *,
        ticket_id: UUID,
        ticket_number: str,
        tenant_id: UUID,
        created_by_id: UUID,
        created_by_kind: CreatorKind,
        subject: str,
        description: str,
        category: TicketCategory,
        priority: TicketPriority,
        created_at: datetime,
        assigned_to_id: UUID | None = None,
        policy: SlaPolicy = DEFAULT_SLA_POLICY,
        history_id: Callable[[], UUID] = uuid4,
    ) -> Ticket:
        status = TicketStateMachine.initial_state()
        ticket = cls(
            id=ticket_id,
            ticket_number=ticket_number,
            tenant_id=tenant_id,
            created_by_id=created_by_id,
            created_by_kind=created_by_kind,
            subject=subject,
            description=description,
            category=category,
            priority=priority,
            status=status,
            sla_response_deadline=policy.response_deadline(priority, created_at),
            sla_resolution_deadline=policy.resolution_deadline(priority, created_at),
            created_at=created_at,
            updated_at=created_at,
            assigned_to_id=assigned_to_id,
        )
        ticket._pending_history.append(
            StatusHistoryEntry(
                id=history_id(),
                ticket_id=ticket_id,
                from_status=None,
                to_status=status,
                actor_id=created_by_id,
                created_at=created_at,
                reason="Ticket created",
            )
        )
        return ticket

    @property
    def is_sla_paused(self) -> bool:
        return self.sla_paused_at is not None

    def is_sla_breached(self, now: datetime) -> bool:
        if self.status in TERMINAL_STATUSES:
            return False
        return now > self.sla_resolution_deadline

    def is_response_overdue(self, now: datetime) -> bool:
        if self.status in TERMINAL_STATUSES or self.message_count > 0:
            return False
        return now > self.sla_response_deadline

    # -- status operations -------------------------------------------------

    def start_progress(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.IN_PROGRESS, actor_id=actor_id, at=at, reason=reason)

    def wait_on_customer(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.WAITING_ON_CUSTOMER, actor_id=actor_id, at=at, reason=reason)

    def wait_on_third_party(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.WAITING_ON_THIRD_PARTY, actor_id=actor_id, at=at, reason=reason)

    def escalate(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.ESCALATED, actor_id=actor_id, at=at, reason=reason)

    def resolve(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.RESOLVED, actor_id=actor_id, at=at, reason=reason)

    def close(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.CLOSED, actor_id=actor_id, at=at, reason=reason)

    def reopen(self, *, actor_id: UUID, at: datetime, reason: str | None = None) -> StatusHistoryEntry:
        return self._apply_transition(TicketStatus.REOPENED, actor_id=actor_id, at=at, reason=reason)

    def transition_to(
        self,
        target: TicketStatus,
        *,
        actor_id: UUID,
        at: datetime,
        reason: str | None = None,
        history_id: Callable[[], UUID] = uuid4,
    ) -> StatusHistoryEntry:
        """Generic entry point used by change-status requests.

        ``history_id`` supplies the primary key of the queued history entry.
        """

        if target == TicketStatus.OPEN:
            raise InvalidStatusTransition(self.status, target)
        return self._apply_transition(target, actor_id=actor_id, at=at, reason=reason, history_id=history_id)

    # -- side-channel mutations --------------------------------------------

    def rate(self, score: int, *, at: datetime) -> None:
        if self.status not in TERMINAL_STATUSES:
            raise InvalidRating(f"Ticket {self.ticket_number} can only be rated once resolved or closed")
        if isinstance(score, bool) or not isinstance(score, int) or not MIN_RATING <= score <= MAX_RATING:
            raise InvalidRating(f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {score!r}")
        self.satisfaction_rating = score
        self.updated_at = at

    def assign_to(self, user_id: UUID, *, at: datetime) -> None:
        self.assigned_to_id = user_id
        self.updated_at = at

    def unassign(self, *, at: datetime) -> None:
        self.assigned_to_id = None
        self.updated_at = at

    def change_priority(
        self, new_priority: TicketPriority, *, as_of: datetime, policy: SlaPolicy = DEFAULT_SLA_POLICY
    ) -> None:
        """Switch priority and rebase both deadlines on ``as_of``.

        Deadline shifts from earlier pauses are not carried over.
        """

        self.priority = new_priority
        self.sla_response_deadline = policy.response_deadline(new_priority, as_of)
        self.sla_resolution_deadline = policy.resolution_deadline(new_priority, as_of)
        self.updated_at = as_of

    def update_details(
        self,
        *,
        at: datetime,
        subject: str | None = None,
        description: str | None = None,
        category: TicketCategory | None = None,
    ) -> None:
        if subject is not None:
            self.subject = subject
        if description is not None:
            self.description = description
        if category is not None:
            self.category = category
        self.updated_at = at

    def record_message(self, at: datetime) -> None:
        self.message_count += 1
        self.last_message_at = at
        self.updated_at = at

    def collect_history(self) -> list[StatusHistoryEntry]:
        """Return and clear history entries queued since the last call."""

        entries = list(self._pending_history)
        self._pending_history.clear()
        return entries

    def _apply_transition(
        self,
        target: TicketStatus,
        *,
        actor_id: UUID,
        at: datetime,
        reason: str | None,
        history_id: Callable[[], UUID] = uuid4,
    ) -> StatusHistoryEntry:
        current = self.status
        TicketStateMachine.assert_transition(current, target)

        if target in SLA_PAUSING_STATUSES:
            sla.pause(self, at)
        elif target in (TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED):
            sla.resume(self, at)

        if target == TicketStatus.RESOLVED:
            self.resolved_at = at
        elif target == TicketStatus.CLOSED:
            self.closed_at = at
        elif target == TicketStatus.REOPENED:
            self.resolved_at = None
            self.closed_at = None

        self.status = target
        self.updated_at = at
        entry = StatusHistoryEntry(
            id=history_id(),
            ticket_id=self.id,
            from_status=current,
            to_status=target,
            actor_id=actor_id,
            created_at=at,
            reason=reason,
        )
        self._pending_history.append(entry)
        return entry
