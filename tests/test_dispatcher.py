"""
Tests for scheduled notification dispatch
"""
import asyncio
from datetime import timedelta

import pytest

from conftest import T0, RecordingNotifier, fetch_all, set_conversation
from helpdesk_sla.core import NotifierException
from helpdesk_sla.sla.application import NotificationDispatcher
from helpdesk_sla.sla.domain import NotificationRule
from helpdesk_sla.sla.infrastructure import (
    AppliedSLAModel,
    ScheduledNotificationModel,
    SQLAlchemyUserStore,
)


class FailingNotifier(RecordingNotifier):
    async def send(self, message):
        raise NotifierException("relay down")


async def breach_first_response(sla_service, evaluation_service, clock, conversation_id, recipients):
    policy = await sla_service.create(
        name="Breach",
        description="Breach alerts",
        first_response_time="30m",
        resolution_time="4h",
        notifications=[NotificationRule(type="breach", recipients=recipients, metric="first_response")],
    )
    await sla_service.apply_sla(T0, conversation_id=conversation_id, team_id=0, policy_id=policy.id)
    clock.advance(minutes=31)
    await evaluation_service.evaluate_pending_slas()


async def test_breach_notification_sent(sla_service, evaluation_service, dispatcher, seed,
                                        clock, notifier, renderer, session_maker):
    """Test a due breach notification reaches the assignee and an explicit agent"""
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["assigned_user", "2"])

    assert await dispatcher.dispatch_due() == 1

    assert [m.recipient_emails for m in notifier.sent] == [["asha@example.com"], ["ben@example.com"]]
    assert notifier.sent[0].subject == "sla_breached subject"
    assert notifier.sent[0].provider == "email"

    name, data = renderer.calls[0]
    assert name == "sla_breached"
    assert data["sla"]["metric"] == "First Response"
    assert data["conversation"]["reference_number"] == "100"
    assert data["conversation"]["uuid"] == "c0000000-0000-0000-0000-000000000001"
    assert data["recipient"]["full_name"] == "Asha Rao"
    assert data["author"]["email"] == ""

    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.processed_at == T0 + timedelta(minutes=31)

    # Processed rows are never picked up again
    assert await dispatcher.dispatch_due() == 0
    assert len(notifier.sent) == 2


@pytest.mark.parametrize("status", ["Resolved", "Closed"])
async def test_closed_conversation_is_not_notified(sla_service, evaluation_service, dispatcher, seed,
                                                   clock, notifier, session_maker, status):
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["assigned_user"])
    await set_conversation(session_maker, 1, status=status)

    assert await dispatcher.dispatch_due() == 1

    assert notifier.sent == []
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.processed_at is not None


async def test_unassigned_conversation_skips_assigned_user(sla_service, evaluation_service, dispatcher, seed,
                                                           clock, notifier, renderer, session_maker):
    await breach_first_response(sla_service, evaluation_service, clock, 2, ["assigned_user"])

    assert await dispatcher.dispatch_due() == 1

    assert notifier.sent == []
    assert renderer.calls == []
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.processed_at is not None


async def test_unknown_agent_is_skipped(sla_service, evaluation_service, dispatcher, seed,
                                        clock, notifier, session_maker):
    # User 3 is a contact, not an agent
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["3", "not-a-number", "1"])

    await dispatcher.dispatch_due()

    assert [m.recipient_emails for m in notifier.sent] == [["asha@example.com"]]


async def test_warning_for_met_metric_is_skipped(sla_service, evaluation_service, dispatcher, seed,
                                                 clock, notifier, session_maker):
    """Test a warning is dropped once the metric it warns about is met"""
    policy = await sla_service.create(
        name="Warn",
        description="Warn before first response",
        first_response_time="30m",
        notifications=[NotificationRule(
            type="warning", recipients=["assigned_user"], metric="first_response",
            time_delay="10m", time_delay_type="before",
        )],
    )
    await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.send_at == T0 + timedelta(minutes=20)

    # Not due yet
    assert await dispatcher.dispatch_due() == 0

    await set_conversation(session_maker, 1, first_reply_at=T0 + timedelta(minutes=5))
    clock.advance(minutes=6)
    await evaluation_service.evaluate_pending_slas()
    [applied] = await fetch_all(session_maker, AppliedSLAModel)
    assert applied.first_response_met_at is not None

    clock.advance(minutes=15)
    assert await dispatcher.dispatch_due() == 1
    assert notifier.sent == []


async def test_warning_for_open_metric_is_sent(sla_service, dispatcher, seed, clock, notifier, renderer):
    policy = await sla_service.create(
        name="Warn",
        description="Warn before resolution",
        resolution_time="1h",
        notifications=[NotificationRule(
            type="warning", recipients=["1"], time_delay="15m", time_delay_type="before",
        )],
    )
    await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)
    clock.advance(minutes=45)

    assert await dispatcher.dispatch_due() == 1

    name, data = renderer.calls[0]
    assert name == "sla_breach_warning"
    assert data["sla"]["metric"] == "Resolution"
    assert data["sla"]["due_in"] == "15 minutes"
    assert len(notifier.sent) == 1


async def test_next_response_breach_notification(sla_service, evaluation_service, dispatcher, seed,
                                                 clock, notifier, renderer, session_maker, policy):
    await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)
    [applied] = await fetch_all(session_maker, AppliedSLAModel)
    await sla_service.create_next_response_sla_event(1, applied.id, policy.id, team_id=0)
    clock.advance(minutes=61)
    await evaluation_service.evaluate_pending_sla_events()

    await dispatcher.dispatch_due()

    # Applied SLAs were not evaluated, only the event breach is due
    assert [call[1]["sla"]["metric"] for call in renderer.calls] == ["Next Response"]
    assert len(notifier.sent) == 1


async def test_delivery_failure_still_marks_processed(uow_factory, session_maker, sla_service,
                                                      evaluation_service, seed, clock, renderer):
    notifier = FailingNotifier()
    dispatcher = NotificationDispatcher(
        uow_factory, SQLAlchemyUserStore(session_maker), renderer, notifier, clock=clock
    )
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["assigned_user"])

    assert await dispatcher.dispatch_due() == 1

    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.processed_at is not None


async def test_dispatch_stops_on_shutdown(sla_service, evaluation_service, dispatcher, seed, clock, notifier):
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["assigned_user"])
    shutdown = asyncio.Event()
    shutdown.set()

    assert await dispatcher.dispatch_due(shutdown) == 0
    assert notifier.sent == []



class FlakyNotifier(RecordingNotifier):
    """Records every attempt and fails on the second one."""

    async def send(self, message):
        self.sent.append(message)
        if len(self.sent) == 2:
            raise RuntimeError("connection reset")


async def test_unexpected_send_error_does_not_resend(uow_factory, session_maker, sla_service,
                                                     evaluation_service, seed, clock, renderer):
    """Test a recipient that fails unexpectedly does not get the row retried"""
    notifier = FlakyNotifier()
    dispatcher = NotificationDispatcher(
        uow_factory, SQLAlchemyUserStore(session_maker), renderer, notifier, clock=clock
    )
    await breach_first_response(sla_service, evaluation_service, clock, 1, ["1", "2"])

    assert await dispatcher.dispatch_due() == 1
    assert await dispatcher.dispatch_due() == 0

    assert [m.recipient_emails for m in notifier.sent] == [["asha@example.com"], ["ben@example.com"]]
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.processed_at is not None
