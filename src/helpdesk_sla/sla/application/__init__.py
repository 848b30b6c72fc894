"""
SLA Application Layer
======================

Application layer for the SLA engine.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from helpdesk_sla.sla.application.dto import (
    NotificationRuleDTO,
    SLAPolicyRequest,
    ApplySLARequest,
    NextResponseEventRequest,
    SLAEventMetRequest,
    SLAPolicyResponse,
    SLAEventDeadlineResponse,
    SLAEventMetResponse,
    ErrorResponse,
)
from helpdesk_sla.sla.application.services import (
    SLAService,
    SLAEvaluationService,
    NotificationScheduler,
    NotificationDispatcher,
    IUnitOfWork,
    ISLAPolicyRepository,
    IAppliedSLARepository,
    ISLAEventRepository,
    IScheduledNotificationRepository,
    IConversationRepository,
    ITeamStore,
    IUserStore,
    IAppSettingsStore,
    IBusinessHoursStore,
    IBusinessHoursCalendar,
    ITemplateRenderer,
    INotifier,
    utc_now,
)

__all__ = [
    # DTOs
    "NotificationRuleDTO",
    "SLAPolicyRequest",
    "ApplySLARequest",
    "NextResponseEventRequest",
    "SLAEventMetRequest",
    "SLAPolicyResponse",
    "SLAEventDeadlineResponse",
    "SLAEventMetResponse",
    "ErrorResponse",
    # Services
    "SLAService",
    "SLAEvaluationService",
    "NotificationScheduler",
    "NotificationDispatcher",
    # Repository Interfaces
    "IUnitOfWork",
    "ISLAPolicyRepository",
    "IAppliedSLARepository",
    "ISLAEventRepository",
    "IScheduledNotificationRepository",
    "IConversationRepository",
    # Collaborator Interfaces
    "ITeamStore",
    "IUserStore",
    "IAppSettingsStore",
    "IBusinessHoursStore",
    "IBusinessHoursCalendar",
    "ITemplateRenderer",
    "INotifier",
    "utc_now",
]
