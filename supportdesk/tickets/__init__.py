"""Ticket domain models and services."""

from .errors import (
    InvalidRating,
    InvalidStatusTransition,
    SequenceAllocationFailure,
    TicketError,
    TicketNotFoundError,
)
from .models import CreatorKind, StatusHistoryEntry, Ticket, TicketCategory, TicketMessage
from .repository import TicketFilters, TicketRepository
from .sequence import AllocatedNumber, SequenceAllocator, SequenceCounter, format_ticket_number
from .service import TicketService
from .sla import DEFAULT_SLA_POLICY, SlaPolicy, SlaThresholds, TicketPriority
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "AllocatedNumber",
    "CreatorKind",
    "DEFAULT_SLA_POLICY",
    "InvalidRating",
    "InvalidStatusTransition",
    "SequenceAllocationFailure",
    "SequenceAllocator",
    "SequenceCounter",
    "SlaPolicy",
    "SlaThresholds",
    "StatusHistoryEntry",
    "Ticket",
    "TicketCategory",
    "TicketError",
    "TicketFilters",
    "TicketMessage",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "format_ticket_number",
]
