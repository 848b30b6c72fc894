"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Entities: policies, applied SLAs, SLA events, scheduled notifications
  and the collaborator records the engine reads (teams, agents, calendars)
- Value Objects: duration parsing, business hours arithmetic and the
  stateless SLACalculator

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from helpdesk_sla.sla.domain.entities import (
    NotificationRule,
    SLAPolicy,
    Deadlines,
    Breaches,
    AppliedSLA,
    SLAEvent,
    ScheduledNotification,
    NotificationCandidate,
    DayWindow,
    BusinessHours,
    Team,
    Agent,
    NotificationMessage,
)
from helpdesk_sla.sla.domain.value_objects import (
    BusinessHoursCalculator,
    MetricVerdict,
    SLACalculator,
    format_duration,
    load_timezone,
    parse_duration,
)

__all__ = [
    # Entities
    "NotificationRule",
    "SLAPolicy",
    "Deadlines",
    "Breaches",
    "AppliedSLA",
    "SLAEvent",
    "ScheduledNotification",
    "NotificationCandidate",
    "DayWindow",
    "BusinessHours",
    "Team",
    "Agent",
    "NotificationMessage",
    # Value Objects & Services
    "BusinessHoursCalculator",
    "MetricVerdict",
    "SLACalculator",
    "format_duration",
    "load_timezone",
    "parse_duration",
]
