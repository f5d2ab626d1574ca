"""Service level deadline calculation and pause/resume bookkeeping.

Everything in here is a pure computation over timestamps. The ticket
aggregate decides *when* the clock pauses or resumes; this module only knows
*how* deadlines move.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Protocol


class TicketPriority(str, Enum):
    """Priority levels, each carrying its own SLA budget."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True, slots=True)
class SlaThresholds:
    """Response and resolution budgets for a single priority, in hours."""

    response_hours: float
    resolution_hours: float

    @property
    def response_window(self) -> timedelta:
        return timedelta(hours=self.response_hours)

    @property
    def resolution_window(self) -> timedelta:
        return timedelta(hours=self.resolution_hours)


DEFAULT_SLA_THRESHOLDS: Mapping[TicketPriority, SlaThresholds] = {
    TicketPriority.CRITICAL: SlaThresholds(response_hours=4, resolution_hours=8),
    TicketPriority.HIGH: SlaThresholds(response_hours=8, resolution_hours=24),
    TicketPriority.MEDIUM: SlaThresholds(response_hours=24, resolution_hours=72),
    TicketPriority.LOW: SlaThresholds(response_hours=48, resolution_hours=168),
}


class SlaTracked(Protocol):
    sla_response_deadline: datetime
    sla_resolution_deadline: datetime
    sla_paused_at: datetime | None
    sla_paused_duration: timedelta


class SlaPolicy:
    """Lookup of per-priority thresholds with deadline helpers."""

    def __init__(self, thresholds: Mapping[TicketPriority, SlaThresholds] | None = None) -> None:
        self._thresholds = dict(thresholds or DEFAULT_SLA_THRESHOLDS)
        if TicketPriority.MEDIUM not in self._thresholds:
            self._thresholds[TicketPriority.MEDIUM] = DEFAULT_SLA_THRESHOLDS[TicketPriority.MEDIUM]

    def thresholds_for(self, priority: TicketPriority | str) -> SlaThresholds:
        # Unknown priorities get MEDIUM's budget instead of an error.
        try:
            key = TicketPriority(priority)
        except ValueError:
            key = TicketPriority.MEDIUM
        return self._thresholds.get(key, self._thresholds[TicketPriority.MEDIUM])

    def response_deadline(self, priority: TicketPriority | str, created_at: datetime) -> datetime:
        return created_at + self.thresholds_for(priority).response_window

    def resolution_deadline(self, priority: TicketPriority | str, created_at: datetime) -> datetime:
        return created_at + self.thresholds_for(priority).resolution_window


DEFAULT_SLA_POLICY = SlaPolicy()


def pause(ticket: SlaTracked, now: datetime) -> bool:
    """Stop the SLA clock. Returns False when it was already stopped."""

    if ticket.sla_paused_at is not None:
        return False
    ticket.sla_paused_at = now
    return True


def resume(ticket: SlaTracked, now: datetime) -> timedelta:
    """Restart the SLA clock, pushing both deadlines out by the paused time.

    Returns the elapsed pause, or a zero timedelta when the clock was running.
    """

    paused_at = ticket.sla_paused_at
    if paused_at is None:
        return timedelta(0)
    elapsed = max(now - paused_at, timedelta(0))
    ticket.sla_response_deadline = ticket.sla_response_deadline + elapsed
    ticket.sla_resolution_deadline = ticket.sla_resolution_deadline + elapsed
    ticket.sla_paused_duration = ticket.sla_paused_duration + elapsed
    ticket.sla_paused_at = None
    return elapsed
