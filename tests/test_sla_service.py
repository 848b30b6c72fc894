"""
Tests for SLA policies, deadline calculation and applying SLAs
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0, fetch_all
from helpdesk_sla.core import (
    ConfigurationException,
    ResourceNotFoundException,
    ValidationException,
)
from helpdesk_sla.sla.application import SLAService
from helpdesk_sla.sla.domain import Breaches, NotificationRule
from helpdesk_sla.sla.infrastructure import (
    AppliedSLAModel,
    ConversationModel,
    HelpdeskConfigManager,
    ScheduledNotificationModel,
    SQLAlchemyTeamStore,
)


async def test_policy_crud(sla_service):
    """Test create, update and delete of a policy"""
    created = await sla_service.create(
        name="Gold",
        description="Gold customers",
        first_response_time="15m",
        notifications=[NotificationRule(type="warning", recipients=["1"], time_delay="5m", time_delay_type="before")],
    )
    assert created.id is not None
    assert (await sla_service.get(created.id)).notifications[0].time_delay == "5m"

    updated = await sla_service.update(created.id, name="Gold+", description="Gold customers", resolution_time="2h")
    assert updated.name == "Gold+"
    assert updated.first_response_time is None
    assert updated.resolution_time == "2h"
    assert [p.name for p in await sla_service.get_all()] == ["Gold+"]

    await sla_service.delete(created.id)
    with pytest.raises(ResourceNotFoundException):
        await sla_service.get(created.id)


async def test_policy_validation(sla_service):
    """Test invalid policies are rejected with every problem listed"""
    with pytest.raises(ValidationException) as exc_info:
        await sla_service.create(
            name="",
            description="x",
            first_response_time="soon",
            notifications=[NotificationRule(type="page", recipients=[], time_delay_type="before")],
        )

    errors = exc_info.value.details["errors"]
    assert any(e.startswith("name") for e in errors)
    assert any(e.startswith("first_response_time") for e in errors)
    assert any("notifications[0].type" in e for e in errors)
    assert any("notifications[0].recipients" in e for e in errors)
    assert any("notifications[0].time_delay" in e for e in errors)


async def test_policy_requires_a_duration(sla_service):
    with pytest.raises(ValidationException):
        await sla_service.create(name="Empty", description="No targets")


async def test_resolution_only_policy_deadlines(sla_service, seed):
    """Test a resolution-only policy leaves the first response deadline unset"""
    policy = await sla_service.create(name="Resolution", description="Resolution only", resolution_time="2h")

    # Team 1 works office hours
    deadlines = await sla_service.get_deadlines(T0, policy.id, team_id=1)
    assert deadlines.first_response is None
    assert deadlines.next_response is None
    assert deadlines.resolution == T0 + timedelta(hours=2)

    late_start = datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc)
    deadlines = await sla_service.get_deadlines(late_start, policy.id, team_id=1)
    assert deadlines.resolution == datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)


async def test_office_hours_skip_holiday(sla_service, seed):
    policy = await sla_service.create(name="Resolution", description="Resolution only", resolution_time="9h")

    # Tuesday 18:00 close; Wednesday the 4th is a holiday
    start = datetime(2026, 3, 3, 17, 0, tzinfo=timezone.utc)
    deadlines = await sla_service.get_deadlines(start, policy.id, team_id=1)

    assert deadlines.resolution == datetime(2026, 3, 5, 17, 0, tzinfo=timezone.utc)


async def test_unknown_team_falls_back_to_defaults(sla_service, seed, policy):
    deadlines = await sla_service.get_deadlines(T0, policy.id, team_id=42)

    assert deadlines.first_response == T0 + timedelta(minutes=30)
    assert deadlines.resolution == T0 + timedelta(hours=4)
    assert deadlines.next_response == T0 + timedelta(hours=1)


async def test_missing_business_hours_configuration(uow_factory, session_maker, policy, clock):
    empty = HelpdeskConfigManager()
    empty.load_dict({})
    service = SLAService(
        uow_factory,
        team_store=SQLAlchemyTeamStore(session_maker),
        settings_store=empty,
        business_hours_store=empty,
        clock=clock,
    )

    with pytest.raises(ConfigurationException, match="business hours or timezone not configured"):
        await service.get_deadlines(T0, policy.id, team_id=0)


async def test_apply_sla_stores_deadlines(sla_service, seed, policy, session_maker):
    """Test applying an always-open 30m / 4h policy"""
    applied_policy = await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)

    assert applied_policy.id == policy.id
    [applied] = await fetch_all(session_maker, AppliedSLAModel)
    assert applied.conversation_id == 1
    assert applied.status == "pending"
    assert applied.first_response_deadline_at == T0 + timedelta(minutes=30)
    assert applied.resolution_deadline_at == T0 + timedelta(hours=4)

    conversations = await fetch_all(session_maker, ConversationModel)
    assert conversations[0].next_sla_deadline_at == T0 + timedelta(minutes=30)
    # Only breach rules on this policy, nothing to warn about yet
    assert await fetch_all(session_maker, ScheduledNotificationModel) == []


async def test_apply_unknown_policy(sla_service, seed):
    with pytest.raises(ResourceNotFoundException):
        await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=99)


async def test_warning_in_the_past_is_not_scheduled(sla_service, seed, session_maker):
    """Test warnings more than five minutes late are dropped, later ones kept"""
    policy = await sla_service.create(
        name="Warn",
        description="Warn before first response",
        first_response_time="30m",
        resolution_time="4h",
        notifications=[NotificationRule(
            type="warning", recipients=["assigned_user"], metric="first_response",
            time_delay="10m", time_delay_type="before",
        )],
    )

    # Deadline T0-30m, warning T0-40m
    await sla_service.apply_sla(T0 - timedelta(hours=1), conversation_id=1, team_id=0, policy_id=policy.id)
    assert await fetch_all(session_maker, ScheduledNotificationModel) == []

    # Deadline T0+8m, warning T0-2m: within tolerance
    await sla_service.apply_sla(T0 - timedelta(minutes=22), conversation_id=2, team_id=0, policy_id=policy.id)
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.notification_type == "warning"
    assert row.metric == "first_response"
    assert row.send_at == T0 - timedelta(minutes=2)
    assert row.recipients == ["assigned_user"]


async def test_rule_with_bad_delay_is_skipped(sla_service, seed, session_maker, policy):
    rules = [
        NotificationRule(type="warning", recipients=["1"], time_delay="soon", time_delay_type="before"),
        NotificationRule(type="warning", recipients=["2"], metric="resolution"),
    ]
    deadlines = await sla_service.get_deadlines(T0, policy.id, team_id=0)
    await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)
    [applied] = await fetch_all(session_maker, AppliedSLAModel)

    created = await sla_service.create_notification_schedule(rules, applied.id, None, deadlines, Breaches())

    assert created == 1
    [row] = await fetch_all(session_maker, ScheduledNotificationModel)
    assert row.recipients == ["2"]
    assert row.send_at == T0 + timedelta(hours=4)
