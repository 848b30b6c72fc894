"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: External service integrations (config watcher, templates, notifier, scheduler)
"""

from helpdesk_sla.sla.infrastructure.models import (
    TeamModel,
    UserModel,
    ConversationModel,
    SLAPolicyModel,
    AppliedSLAModel,
    SLAEventModel,
    ScheduledNotificationModel,
)
from helpdesk_sla.sla.infrastructure.repositories import (
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyAppliedSLARepository,
    SQLAlchemySLAEventRepository,
    SQLAlchemyScheduledNotificationRepository,
    SQLAlchemyConversationRepository,
    SQLAlchemyUnitOfWork,
    SQLAlchemyTeamStore,
    SQLAlchemyUserStore,
)
from helpdesk_sla.sla.infrastructure.external import (
    HelpdeskConfigManager,
    JinjaTemplateRenderer,
    WebhookNotifier,
    CircuitBreaker,
    SLAScheduler,
)

__all__ = [
    "TeamModel",
    "UserModel",
    "ConversationModel",
    "SLAPolicyModel",
    "AppliedSLAModel",
    "SLAEventModel",
    "ScheduledNotificationModel",
    "SQLAlchemySLAPolicyRepository",
    "SQLAlchemyAppliedSLARepository",
    "SQLAlchemySLAEventRepository",
    "SQLAlchemyScheduledNotificationRepository",
    "SQLAlchemyConversationRepository",
    "SQLAlchemyUnitOfWork",
    "SQLAlchemyTeamStore",
    "SQLAlchemyUserStore",
    "HelpdeskConfigManager",
    "JinjaTemplateRenderer",
    "WebhookNotifier",
    "CircuitBreaker",
    "SLAScheduler",
]
