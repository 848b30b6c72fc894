"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. State transitions are conditional UPDATEs so
concurrent writers can never set both met_at and breached_at for a metric.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import insert, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from helpdesk_sla.config import AppliedSLAStatus, Metric, SLAEventStatus
from helpdesk_sla.core import (
    RepositoryException,
    ResourceNotFoundException,
    UnmetSLAEventAlreadyExistsException,
    ValidationException,
)
from helpdesk_sla.infrastructure.database import UTCDateTime
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application import (
    IAppliedSLARepository,
    IConversationRepository,
    IScheduledNotificationRepository,
    ISLAEventRepository,
    ISLAPolicyRepository,
    ITeamStore,
    IUnitOfWork,
    IUserStore,
)
from helpdesk_sla.sla.domain import (
    Agent, AppliedSLA, Deadlines, NotificationRule, ScheduledNotification,
    SLAEvent, SLAPolicy, Team,
)
from helpdesk_sla.sla.infrastructure.models import (
    AppliedSLAModel,
    ConversationModel,
    ScheduledNotificationModel,
    SLAEventModel,
    SLAPolicyModel,
    TeamModel,
    UserModel,
)

logger = get_logger(__name__)


@contextmanager
def _translate_errors(message: str, **context) -> Iterator[None]:
    """Log database failures in detail and re-raise them with a generic message."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(message, extra={"error": str(e), **context})
        raise RepositoryException(message, context) from e


OPEN_EVENT_INDEX = "uq_sla_events_open_per_applied_sla"


def _is_open_event_conflict(error: IntegrityError) -> bool:
    """True when the one-open-event index rejected the insert, not a foreign key."""
    constraint = getattr(error.orig, "constraint_name", None) or getattr(
        getattr(error.orig, "__cause__", None), "constraint_name", None
    )
    if constraint:
        return constraint == OPEN_EVENT_INDEX
    # SQLite names the columns instead of the index
    text = str(error.orig)
    return (
        OPEN_EVENT_INDEX in text
        or "UNIQUE constraint failed: sla_events.applied_sla_id, sla_events.metric" in text
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Mappers ==========

def _policy_to_domain(model: SLAPolicyModel) -> SLAPolicy:
    return SLAPolicy(
        id=model.id,
        name=model.name,
        description=model.description,
        first_response_time=model.first_response_time,
        next_response_time=model.next_response_time,
        resolution_time=model.resolution_time,
        notifications=[NotificationRule.from_dict(n) for n in (model.notifications or [])],
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _applied_sla_to_domain(
    model: AppliedSLAModel,
    conversation: Optional[ConversationModel]
) -> AppliedSLA:
    applied_sla = AppliedSLA(
        id=model.id,
        conversation_id=model.conversation_id,
        sla_policy_id=model.sla_policy_id,
        status=model.status,
        first_response_deadline_at=model.first_response_deadline_at,
        resolution_deadline_at=model.resolution_deadline_at,
        first_response_breached_at=model.first_response_breached_at,
        resolution_breached_at=model.resolution_breached_at,
        first_response_met_at=model.first_response_met_at,
        resolution_met_at=model.resolution_met_at,
        created_at=model.created_at,
    )
    if conversation is not None:
        applied_sla.conversation_first_reply_at = conversation.first_reply_at
        applied_sla.conversation_resolved_at = conversation.resolved_at
        applied_sla.conversation_status = conversation.status
        applied_sla.conversation_uuid = conversation.uuid
        applied_sla.conversation_reference_number = conversation.reference_number
        applied_sla.conversation_subject = conversation.subject
        applied_sla.conversation_assigned_user_id = conversation.assigned_user_id
    return applied_sla


def _event_to_domain(model: SLAEventModel) -> SLAEvent:
    return SLAEvent(
        id=model.id,
        applied_sla_id=model.applied_sla_id,
        sla_policy_id=model.sla_policy_id,
        deadline_at=model.deadline_at,
        metric=model.metric,
        status=model.status,
        met_at=model.met_at,
        breached_at=model.breached_at,
        created_at=model.created_at,
    )


def _notification_to_domain(model: ScheduledNotificationModel) -> ScheduledNotification:
    return ScheduledNotification(
        id=model.id,
        applied_sla_id=model.applied_sla_id,
        sla_event_id=model.sla_event_id,
        metric=model.metric,
        notification_type=model.notification_type,
        send_at=model.send_at,
        recipients=list(model.recipients or []),
        processed_at=model.processed_at,
        created_at=model.created_at,
    )


# ========== Repositories ==========

class SQLAlchemySLAPolicyRepository(ISLAPolicyRepository):
    """
    SQLAlchemy implementation of the SLA policy store.

    Missing rows raise ResourceNotFoundException; any other failure is
    logged and surfaces as RepositoryException with a generic message.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, policy_id: int) -> SLAPolicyModel:
        model = await self._session.get(SLAPolicyModel, policy_id, populate_existing=True)
        if model is None:
            raise ResourceNotFoundException("SLA", str(policy_id))
        return model

    async def get(self, policy_id: int) -> SLAPolicy:
        with _translate_errors("Error fetching SLA", policy_id=policy_id):
            return _policy_to_domain(await self._get_model(policy_id))

    async def get_all(self) -> List[SLAPolicy]:
        with _translate_errors("Error fetching SLAs"):
            result = await self._session.execute(
                select(SLAPolicyModel).order_by(SLAPolicyModel.id)
            )
            return [_policy_to_domain(m) for m in result.scalars().all()]

    async def create(self, policy: SLAPolicy) -> SLAPolicy:
        with _translate_errors("Error creating SLA"):
            model = SLAPolicyModel(
                name=policy.name,
                description=policy.description,
                first_response_time=policy.first_response_time,
                next_response_time=policy.next_response_time,
                resolution_time=policy.resolution_time,
                notifications=[n.to_dict() for n in policy.notifications],
            )
            self._session.add(model)
            await self._session.flush()
            return _policy_to_domain(model)

    async def update(self, policy: SLAPolicy) -> SLAPolicy:
        with _translate_errors("Error updating SLA", policy_id=policy.id):
            model = await self._get_model(policy.id)
            model.name = policy.name
            model.description = policy.description
            model.first_response_time = policy.first_response_time
            model.next_response_time = policy.next_response_time
            model.resolution_time = policy.resolution_time
            model.notifications = [n.to_dict() for n in policy.notifications]
            model.updated_at = _now()
            await self._session.flush()
            return _policy_to_domain(model)

    async def delete(self, policy_id: int) -> None:
        with _translate_errors("Error deleting SLA", policy_id=policy_id):
            model = await self._get_model(policy_id)
            await self._session.delete(model)
            await self._session.flush()


class SQLAlchemyAppliedSLARepository(IAppliedSLARepository):
    """SQLAlchemy implementation of applied SLA data access."""

    # metric -> (met_at column, breached_at column)
    _METRIC_COLUMNS = {
        Metric.FIRST_RESPONSE: ("first_response_met_at", "first_response_breached_at"),
        Metric.RESOLUTION: ("resolution_met_at", "resolution_breached_at"),
    }

    def __init__(self, session: AsyncSession):
        self._session = session

    def _base_query(self):
        return (
            select(AppliedSLAModel, ConversationModel)
            .outerjoin(ConversationModel, ConversationModel.id == AppliedSLAModel.conversation_id)
            .execution_options(populate_existing=True)
        )

    def _columns(self, metric: str) -> Tuple[str, str]:
        try:
            return self._METRIC_COLUMNS[metric]
        except KeyError:
            raise ValidationException(f"unknown applied SLA metric {metric!r}")

    async def create(self, conversation_id: int, sla_policy_id: int, deadlines: Deadlines) -> int:
        with _translate_errors("Error applying SLA", conversation_id=conversation_id):
            model = AppliedSLAModel(
                conversation_id=conversation_id,
                sla_policy_id=sla_policy_id,
                status=AppliedSLAStatus.PENDING,
                first_response_deadline_at=deadlines.first_response,
                resolution_deadline_at=deadlines.resolution,
            )
            self._session.add(model)
            await self._session.flush()
            return model.id

    async def get(self, applied_sla_id: int) -> AppliedSLA:
        with _translate_errors("Error fetching applied SLA", applied_sla_id=applied_sla_id):
            result = await self._session.execute(
                self._base_query().where(AppliedSLAModel.id == applied_sla_id)
            )
            row = result.one_or_none()
        if row is None:
            raise ResourceNotFoundException("Applied SLA", str(applied_sla_id))
        return _applied_sla_to_domain(*row)

    async def get_pending(self) -> List[AppliedSLA]:
        with _translate_errors("Error fetching pending SLAs"):
            result = await self._session.execute(
                self._base_query()
                .where(AppliedSLAModel.status != AppliedSLAStatus.COMPLETED)
                .order_by(AppliedSLAModel.id)
            )
            return [_applied_sla_to_domain(*row) for row in result.all()]

    async def _set_unresolved(self, applied_sla_id: int, metric: str, column: str, value: datetime) -> bool:
        met_column, breached_column = self._columns(metric)
        stmt = (
            update(AppliedSLAModel)
            .where(
                AppliedSLAModel.id == applied_sla_id,
                getattr(AppliedSLAModel, met_column).is_(None),
                getattr(AppliedSLAModel, breached_column).is_(None),
            )
            .values(**{column: value, "updated_at": _now()})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def set_met_at(self, applied_sla_id: int, metric: str, met_at: datetime) -> bool:
        with _translate_errors("Error updating SLA met", applied_sla_id=applied_sla_id, metric=metric):
            return await self._set_unresolved(applied_sla_id, metric, self._columns(metric)[0], met_at)

    async def set_breached_at(self, applied_sla_id: int, metric: str, breached_at: datetime) -> bool:
        with _translate_errors("Error updating SLA breach", applied_sla_id=applied_sla_id, metric=metric):
            return await self._set_unresolved(applied_sla_id, metric, self._columns(metric)[1], breached_at)

    async def set_status(self, applied_sla_id: int, status: str) -> None:
        with _translate_errors("Error updating applied SLA status", applied_sla_id=applied_sla_id):
            await self._session.execute(
                update(AppliedSLAModel)
                .where(AppliedSLAModel.id == applied_sla_id)
                .values(status=status, updated_at=_now())
                .execution_options(synchronize_session=False)
            )


class SQLAlchemySLAEventRepository(ISLAEventRepository):
    """SQLAlchemy implementation of SLA event data access."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _open_filter(applied_sla_id: int, metric: str):
        return (
            SLAEventModel.applied_sla_id == applied_sla_id,
            SLAEventModel.metric == metric,
            SLAEventModel.met_at.is_(None),
            SLAEventModel.breached_at.is_(None),
        )

    async def create_open_event(
        self,
        applied_sla_id: int,
        sla_policy_id: int,
        metric: str,
        deadline_at: datetime,
        created_at: datetime
    ) -> int:
        # INSERT ... SELECT ... WHERE NOT EXISTS, backed by the partial unique index.
        open_event = select(SLAEventModel.id).where(*self._open_filter(applied_sla_id, metric))
        source = select(
            literal(applied_sla_id),
            literal(sla_policy_id),
            literal(metric),
            literal(SLAEventStatus.PENDING),
            literal(deadline_at, UTCDateTime()),
            literal(created_at, UTCDateTime()),
        ).where(~open_event.exists())
        events = SLAEventModel.__table__
        stmt = (
            insert(events)
            .from_select(
                ["applied_sla_id", "sla_policy_id", "metric", "status", "deadline_at", "created_at"],
                source,
            )
            .returning(events.c.id)
        )

        with _translate_errors("Error inserting SLA event", applied_sla_id=applied_sla_id):
            try:
                result = await self._session.execute(stmt)
            except IntegrityError as e:
                if not _is_open_event_conflict(e):
                    raise
                raise UnmetSLAEventAlreadyExistsException(applied_sla_id, metric)
            event_id = result.scalar_one_or_none()

        if event_id is None:
            raise UnmetSLAEventAlreadyExistsException(applied_sla_id, metric)
        return event_id

    async def get(self, event_id: int) -> SLAEvent:
        with _translate_errors("Error fetching SLA event", sla_event_id=event_id):
            model = await self._session.get(SLAEventModel, event_id, populate_existing=True)
        if model is None:
            raise ResourceNotFoundException("SLA event", str(event_id))
        return _event_to_domain(model)

    async def get_pending(self) -> List[SLAEvent]:
        with _translate_errors("Error fetching pending SLA events"):
            result = await self._session.execute(
                select(SLAEventModel)
                .where(
                    SLAEventModel.status == SLAEventStatus.PENDING,
                    SLAEventModel.deadline_at.is_not(None),
                )
                .order_by(SLAEventModel.id)
            )
            return [_event_to_domain(m) for m in result.scalars().all()]

    async def set_latest_met_at(self, applied_sla_id: int, metric: str, met_at: datetime) -> Optional[datetime]:
        candidate = aliased(SLAEventModel)
        latest_open = (
            select(candidate.id)
            .where(
                candidate.applied_sla_id == applied_sla_id,
                candidate.metric == metric,
                candidate.met_at.is_(None),
                candidate.breached_at.is_(None),
            )
            .order_by(candidate.created_at.desc(), candidate.id.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(SLAEventModel)
            .where(
                SLAEventModel.id == latest_open,
                SLAEventModel.met_at.is_(None),
                SLAEventModel.breached_at.is_(None),
            )
            .values(met_at=met_at)
            .returning(SLAEventModel.met_at)
            .execution_options(synchronize_session=False)
        )
        with _translate_errors("Error marking SLA event as met", applied_sla_id=applied_sla_id):
            result = await self._session.execute(stmt)
            return result.scalar_one_or_none()

    async def mark_met(self, event_id: int) -> bool:
        with _translate_errors("Error marking SLA event as met", sla_event_id=event_id):
            result = await self._session.execute(
                update(SLAEventModel)
                .where(
                    SLAEventModel.id == event_id,
                    SLAEventModel.status == SLAEventStatus.PENDING,
                    SLAEventModel.met_at.is_not(None),
                )
                .values(status=SLAEventStatus.MET)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def mark_breached(self, event_id: int, breached_at: datetime) -> bool:
        with _translate_errors("Error marking SLA event as breached", sla_event_id=event_id):
            result = await self._session.execute(
                update(SLAEventModel)
                .where(
                    SLAEventModel.id == event_id,
                    SLAEventModel.status == SLAEventStatus.PENDING,
                    SLAEventModel.breached_at.is_(None),
                )
                .values(status=SLAEventStatus.BREACHED, breached_at=breached_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0


class SQLAlchemyScheduledNotificationRepository(IScheduledNotificationRepository):
    """SQLAlchemy implementation of scheduled notification data access."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        applied_sla_id: int,
        sla_event_id: Optional[int],
        metric: str,
        notification_type: str,
        send_at: datetime,
        recipients: List[str]
    ) -> int:
        with _translate_errors("Error inserting scheduled SLA notification", applied_sla_id=applied_sla_id):
            model = ScheduledNotificationModel(
                applied_sla_id=applied_sla_id,
                sla_event_id=sla_event_id,
                metric=metric,
                notification_type=notification_type,
                send_at=send_at,
                recipients=list(recipients),
            )
            self._session.add(model)
            await self._session.flush()
            return model.id

    async def get_due(self, now: datetime) -> List[ScheduledNotification]:
        with _translate_errors("Error fetching scheduled SLA notifications"):
            result = await self._session.execute(
                select(ScheduledNotificationModel)
                .where(
                    ScheduledNotificationModel.processed_at.is_(None),
                    ScheduledNotificationModel.send_at <= now,
                )
                .order_by(ScheduledNotificationModel.send_at, ScheduledNotificationModel.id)
            )
            return [_notification_to_domain(m) for m in result.scalars().all()]

    async def mark_processed(self, notification_id: int, processed_at: datetime) -> bool:
        with _translate_errors("Error marking notification as processed", scheduled_notification_id=notification_id):
            result = await self._session.execute(
                update(ScheduledNotificationModel)
                .where(
                    ScheduledNotificationModel.id == notification_id,
                    ScheduledNotificationModel.processed_at.is_(None),
                )
                .values(processed_at=processed_at)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0


class SQLAlchemyConversationRepository(IConversationRepository):
    """Maintains conversations.next_sla_deadline_at."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def set_next_sla_deadline(self, conversation_id: int, deadline: Optional[datetime]) -> None:
        with _translate_errors("Error updating conversation next SLA deadline", conversation_id=conversation_id):
            await self._session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(next_sla_deadline_at=deadline)
                .execution_options(synchronize_session=False)
            )

    async def refresh_next_sla_deadline(self, conversation_id: int) -> Optional[datetime]:
        with _translate_errors("Error updating conversation next SLA deadline", conversation_id=conversation_id):
            applied = await self._session.execute(
                select(AppliedSLAModel)
                .where(
                    AppliedSLAModel.conversation_id == conversation_id,
                    AppliedSLAModel.status == AppliedSLAStatus.PENDING,
                )
                .execution_options(populate_existing=True)
            )
            candidates = []
            for model in applied.scalars().all():
                candidates.extend(_applied_sla_to_domain(model, None).open_deadlines())

            events = await self._session.execute(
                select(SLAEventModel.deadline_at)
                .join(AppliedSLAModel, AppliedSLAModel.id == SLAEventModel.applied_sla_id)
                .where(
                    AppliedSLAModel.conversation_id == conversation_id,
                    SLAEventModel.met_at.is_(None),
                    SLAEventModel.breached_at.is_(None),
                    SLAEventModel.deadline_at.is_not(None),
                )
            )
            candidates.extend(events.scalars().all())

        deadline = min(candidates) if candidates else None
        await self.set_next_sla_deadline(conversation_id, deadline)
        return deadline


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    Unit of work over one AsyncSession.

    Repositories share the session; the transaction commits when the
    `async with` block exits cleanly and rolls back otherwise.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_factory()
        self.policies = SQLAlchemySLAPolicyRepository(self._session)
        self.applied_slas = SQLAlchemyAppliedSLARepository(self._session)
        self.events = SQLAlchemySLAEventRepository(self._session)
        self.notifications = SQLAlchemyScheduledNotificationRepository(self._session)
        self.conversations = SQLAlchemyConversationRepository(self._session)
        return self

    async def commit(self) -> None:
        with _translate_errors("Error committing transaction"):
            await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


# ========== Collaborator stores ==========

class SQLAlchemyTeamStore(ITeamStore):
    """Reads team business hours and timezone."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, team_id: int) -> Team:
        async with self._session_factory() as session:
            with _translate_errors("Error fetching team", team_id=team_id):
                model = await session.get(TeamModel, team_id)
        if model is None:
            raise ResourceNotFoundException("Team", str(team_id))
        return Team(
            id=model.id,
            name=model.name,
            business_hours_id=model.business_hours_id,
            timezone=model.timezone,
        )


class SQLAlchemyUserStore(IUserStore):
    """Reads enabled agents for notification delivery."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_agent(self, agent_id: int) -> Agent:
        async with self._session_factory() as session:
            with _translate_errors("Error fetching agent", agent_id=agent_id):
                result = await session.execute(
                    select(UserModel).where(
                        UserModel.id == agent_id,
                        UserModel.type == "agent",
                        UserModel.enabled.is_(True),
                    )
                )
                model = result.scalar_one_or_none()
        if model is None:
            raise ResourceNotFoundException("Agent", str(agent_id))
        return Agent(
            id=model.id,
            email=model.email,
            first_name=model.first_name,
            last_name=model.last_name,
        )
