from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TicketEvent:
    """Notification-worthy fact about a ticket, published after commit."""

    name: str
    ticket_id: UUID
    tenant_id: UUID
    ticket_number: str
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)


class TicketEventPublisher(Protocol):
    async def publish(self, event: TicketEvent) -> None:
        ...


class LoggingEventPublisher:
    """Default publisher; delivery transports are wired in by the host application."""

    async def publish(self, event: TicketEvent) -> None:
        logger.debug("Ticket event %s for %s: %s", event.name, event.ticket_number, dict(event.payload))
