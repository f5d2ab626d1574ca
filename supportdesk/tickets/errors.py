from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import TicketStatus


class TicketError(RuntimeError):
    """Base error for ticket lifecycle issues."""


class TicketNotFoundError(TicketError):
    """Raised when a ticket could not be located."""


class InvalidStatusTransition(TicketError, ValueError):
    """Raised when the transition table has no edge for the requested change."""

    def __init__(self, current: TicketStatus, target: TicketStatus) -> None:
        super().__init__(f"Invalid ticket status transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class InvalidRating(TicketError):
    """Raised when a satisfaction rating is out of range or not yet allowed."""


class SequenceAllocationFailure(TicketError):
    """Raised when the ticket number counter could not be locked.

    The caller is expected to retry the whole ticket creation, never just the
    allocation step.
    """
