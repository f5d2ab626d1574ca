from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from conftest import T0, make_ticket
from supportdesk.tickets import sla
from supportdesk.tickets.sla import DEFAULT_SLA_POLICY, SlaPolicy, SlaThresholds, TicketPriority


def test_default_thresholds_per_priority():
    expected = {
        TicketPriority.CRITICAL: (4, 8),
        TicketPriority.HIGH: (8, 24),
        TicketPriority.MEDIUM: (24, 72),
        TicketPriority.LOW: (48, 168),
    }
    for priority, (response, resolution) in expected.items():
        assert DEFAULT_SLA_POLICY.response_deadline(priority, T0) == T0 + timedelta(hours=response)
        assert DEFAULT_SLA_POLICY.resolution_deadline(priority, T0) == T0 + timedelta(hours=resolution)


def test_unknown_priority_falls_back_to_medium():
    medium = DEFAULT_SLA_POLICY.thresholds_for(TicketPriority.MEDIUM)
    assert DEFAULT_SLA_POLICY.thresholds_for("URGENT") == medium
    assert DEFAULT_SLA_POLICY.resolution_deadline("URGENT", T0) == T0 + timedelta(hours=72)


def test_custom_policy_keeps_medium_fallback():
    policy = SlaPolicy({TicketPriority.CRITICAL: SlaThresholds(response_hours=1, resolution_hours=2)})
    assert policy.response_deadline(TicketPriority.CRITICAL, T0) == T0 + timedelta(hours=1)
    assert policy.response_deadline(TicketPriority.LOW, T0) == T0 + timedelta(hours=24)


def test_pause_twice_is_same_as_once():
    ticket = make_ticket()
    assert sla.pause(ticket, T0 + timedelta(hours=1)) is True
    assert sla.pause(ticket, T0 + timedelta(hours=2)) is False
    assert ticket.sla_paused_at == T0 + timedelta(hours=1)


def test_resume_when_running_is_noop():
    ticket = make_ticket()
    response, resolution = ticket.sla_response_deadline, ticket.sla_resolution_deadline

    assert sla.resume(ticket, T0 + timedelta(hours=3)) == timedelta(0)
    assert sla.resume(ticket, T0 + timedelta(hours=4)) == timedelta(0)

    assert ticket.sla_response_deadline == response
    assert ticket.sla_resolution_deadline == resolution
    assert ticket.sla_paused_duration == timedelta(0)


def test_resume_shifts_deadlines_by_exact_pause():
    ticket = make_ticket()
    response, resolution = ticket.sla_response_deadline, ticket.sla_resolution_deadline
    paused_at = T0 + timedelta(hours=1, milliseconds=250)
    resumed_at = paused_at + timedelta(hours=2, minutes=17, milliseconds=3)

    sla.pause(ticket, paused_at)
    elapsed = sla.resume(ticket, resumed_at)

    assert elapsed == resumed_at - paused_at
    assert ticket.sla_response_deadline == response + elapsed
    assert ticket.sla_resolution_deadline == resolution + elapsed
    assert ticket.sla_paused_duration == elapsed
    assert ticket.sla_paused_at is None


def test_paused_duration_accumulates_across_pauses():
    ticket = make_ticket()
    sla.pause(ticket, T0 + timedelta(hours=1))
    sla.resume(ticket, T0 + timedelta(hours=2))
    sla.pause(ticket, T0 + timedelta(hours=5))
    sla.resume(ticket, T0 + timedelta(hours=5, minutes=30))

    assert ticket.sla_paused_duration == timedelta(hours=1, minutes=30)


def test_high_priority_waiting_on_customer_scenario():
    created = datetime(2025, 1, 1, tzinfo=timezone.utc)
    ticket = make_ticket(priority=TicketPriority.HIGH, created_at=created)
    agent = uuid4()

    assert ticket.sla_response_deadline == datetime(2025, 1, 1, 8, tzinfo=timezone.utc)
    assert ticket.sla_resolution_deadline == datetime(2025, 1, 2, tzinfo=timezone.utc)

    ticket.wait_on_customer(actor_id=agent, at=created + timedelta(hours=2))
    ticket.start_progress(actor_id=agent, at=created + timedelta(hours=5))

    assert ticket.sla_response_deadline == datetime(2025, 1, 1, 11, tzinfo=timezone.utc)
    assert ticket.sla_resolution_deadline == datetime(2025, 1, 2, 3, tzinfo=timezone.utc)
    assert ticket.sla_paused_duration == timedelta(hours=3)
