from __future__ import annotations

from enum import Enum
from typing import Mapping

from .errors import InvalidStatusTransition


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_ON_CUSTOMER = "WAITING_ON_CUSTOMER"
    WAITING_ON_THIRD_PARTY = "WAITING_ON_THIRD_PARTY"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"


TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})

# Statuses that hold the SLA clock. WAITING_ON_THIRD_PARTY keeps it running.
SLA_PAUSING_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.WAITING_ON_CUSTOMER})


class TicketStateMachine:
    """Validate ticket lifecycle transitions against a single adjacency table."""

    TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.OPEN: frozenset(
            {
                TicketStatus.IN_PROGRESS,
                TicketStatus.WAITING_ON_CUSTOMER,
                TicketStatus.ESCALATED,
                TicketStatus.RESOLVED,
                TicketStatus.CLOSED,
            }
        ),
        TicketStatus.IN_PROGRESS: frozenset(
            {
                TicketStatus.WAITING_ON_CUSTOMER,
                TicketStatus.WAITING_ON_THIRD_PARTY,
                TicketStatus.ESCALATED,
                TicketStatus.RESOLVED,
                TicketStatus.CLOSED,
            }
        ),
        TicketStatus.WAITING_ON_CUSTOMER: frozenset(
            {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.WAITING_ON_THIRD_PARTY: frozenset(
            {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.ESCALATED: frozenset(
            {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED}
        ),
        TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.REOPENED}),
        TicketStatus.CLOSED: frozenset({TicketStatus.REOPENED}),
        TicketStatus.REOPENED: frozenset(
            {
                TicketStatus.IN_PROGRESS,
                TicketStatus.WAITING_ON_CUSTOMER,
                TicketStatus.ESCALATED,
                TicketStatus.RESOLVED,
                TicketStatus.CLOSED,
            }
        ),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def allowed_targets(cls, current: TicketStatus) -> frozenset[TicketStatus]:
        return cls.TRANSITIONS.get(current, frozenset())

    @classmethod
    def can_transition(cls, current: TicketStatus, target: TicketStatus) -> bool:
        return target in cls.allowed_targets(current)

    @classmethod
    def assert_transition(cls, current: TicketStatus, target: TicketStatus) -> None:
        if not cls.can_transition(current, target):
            raise InvalidStatusTransition(current, target)
