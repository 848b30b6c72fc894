"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

Every operation, and every row inside an evaluation pass, runs in its own
unit of work so a failing row never blocks the rest of the pass.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from helpdesk_sla.config import (
    Metric, TimeDelayType, AppliedSLAStatus, SLAEventStatus,
    ASSIGNED_USER_RECIPIENT, METRIC_LABELS,
    TEMPLATE_SLA_BREACH_WARNING, TEMPLATE_SLA_BREACHED,
    VALID_METRICS, VALID_NOTIFICATION_TYPES, VALID_TIME_DELAY_TYPES,
)
from helpdesk_sla.core import (
    ApplicationException,
    BusinessHoursNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    InvalidDurationException,
    LatestSLAEventNotFoundException,
    NextResponseNotConfiguredException,
    UnmetSLAEventAlreadyExistsException,
    ValidationException,
)
from helpdesk_sla.sla.domain import (
    Agent, AppliedSLA, Breaches, BusinessHours, BusinessHoursCalculator,
    Deadlines, NotificationMessage, NotificationRule, ScheduledNotification,
    SLACalculator, SLAEvent, SLAPolicy, Team, format_duration, parse_duration,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISLAPolicyRepository(ABC):
    """Interface for SLA policy data access."""

    @abstractmethod
    async def get(self, policy_id: int) -> SLAPolicy:
        """Get policy by ID. Raises ResourceNotFoundException."""

    @abstractmethod
    async def get_all(self) -> List[SLAPolicy]:
        """List all policies ordered by ID."""

    @abstractmethod
    async def create(self, policy: SLAPolicy) -> SLAPolicy:
        """Insert a new policy and return it with its generated ID."""

    @abstractmethod
    async def update(self, policy: SLAPolicy) -> SLAPolicy:
        """Overwrite an existing policy. Raises ResourceNotFoundException."""

    @abstractmethod
    async def delete(self, policy_id: int) -> None:
        """Delete a policy. Raises ResourceNotFoundException."""


class IAppliedSLARepository(ABC):
    """Interface for applied SLA data access."""

    @abstractmethod
    async def create(self, conversation_id: int, sla_policy_id: int, deadlines: Deadlines) -> int:
        """Insert a pending applied SLA and return its ID."""

    @abstractmethod
    async def get(self, applied_sla_id: int) -> AppliedSLA:
        """Get applied SLA joined with its conversation fields."""

    @abstractmethod
    async def get_pending(self) -> List[AppliedSLA]:
        """Get all applied SLAs that are not completed."""

    @abstractmethod
    async def set_met_at(self, applied_sla_id: int, metric: str, met_at: datetime) -> bool:
        """Set met_at for a metric unless it is already met or breached."""

    @abstractmethod
    async def set_breached_at(self, applied_sla_id: int, metric: str, breached_at: datetime) -> bool:
        """Set breached_at for a metric unless it is already met or breached."""

    @abstractmethod
    async def set_status(self, applied_sla_id: int, status: str) -> None:
        """Update the overall status."""


class ISLAEventRepository(ABC):
    """Interface for SLA event data access."""

    @abstractmethod
    async def create_open_event(
        self,
        applied_sla_id: int,
        sla_policy_id: int,
        metric: str,
        deadline_at: datetime,
        created_at: datetime
    ) -> int:
        """
        Atomically insert an event unless an open one exists.

        Raises:
            UnmetSLAEventAlreadyExistsException: an open event already exists
        """

    @abstractmethod
    async def get(self, event_id: int) -> SLAEvent:
        """Get event by ID."""

    @abstractmethod
    async def get_pending(self) -> List[SLAEvent]:
        """Get pending events that carry a deadline."""

    @abstractmethod
    async def set_latest_met_at(self, applied_sla_id: int, metric: str, met_at: datetime) -> Optional[datetime]:
        """Mark the most recent open event as met; None if there is no open event."""

    @abstractmethod
    async def mark_met(self, event_id: int) -> bool:
        """Promote a pending event to met."""

    @abstractmethod
    async def mark_breached(self, event_id: int, breached_at: datetime) -> bool:
        """Promote a pending event to breached."""


class IScheduledNotificationRepository(ABC):
    """Interface for scheduled notification data access."""

    @abstractmethod
    async def create(
        self,
        applied_sla_id: int,
        sla_event_id: Optional[int],
        metric: str,
        notification_type: str,
        send_at: datetime,
        recipients: List[str]
    ) -> int:
        """Insert a schedule row."""

    @abstractmethod
    async def get_due(self, now: datetime) -> List[ScheduledNotification]:
        """Unprocessed rows with send_at <= now, oldest first."""

    @abstractmethod
    async def mark_processed(self, notification_id: int, processed_at: datetime) -> bool:
        """Set processed_at unless already set."""


class IConversationRepository(ABC):
    """Interface for the SLA-owned conversation fields."""

    @abstractmethod
    async def set_next_sla_deadline(self, conversation_id: int, deadline: Optional[datetime]) -> None:
        """Overwrite the conversation's next SLA deadline."""

    @abstractmethod
    async def refresh_next_sla_deadline(self, conversation_id: int) -> Optional[datetime]:
        """Recompute the next SLA deadline from unresolved metrics and open events."""


class IUnitOfWork(ABC):
    """
    Transaction boundary bundling the SLA repositories.

    Usage:
        async with uow_factory() as uow:
            await uow.applied_slas.get(applied_sla_id)
    """

    policies: ISLAPolicyRepository
    applied_slas: IAppliedSLARepository
    events: ISLAEventRepository
    notifications: IScheduledNotificationRepository
    conversations: IConversationRepository

    async def __aenter__(self) -> "IUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.commit()
            else:
                await self.rollback()
        finally:
            await self.close()

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction."""

    async def close(self) -> None:
        """Release underlying resources."""


# ========== Collaborator Interfaces ==========

class ITeamStore(ABC):
    @abstractmethod
    async def get(self, team_id: int) -> Team:
        """Get team. Raises ResourceNotFoundException."""


class IUserStore(ABC):
    @abstractmethod
    async def get_agent(self, agent_id: int) -> Agent:
        """Get an enabled agent. Raises ResourceNotFoundException."""


class IAppSettingsStore(ABC):
    @abstractmethod
    def get_by_prefix(self, prefix: str) -> Dict[str, object]:
        """Flattened settings whose keys start with `prefix.`."""


class IBusinessHoursStore(ABC):
    @abstractmethod
    def get(self, business_hours_id: int) -> BusinessHours:
        """Get calendar. Raises BusinessHoursNotFoundException."""


class IBusinessHoursCalendar(ABC):
    @abstractmethod
    def add_business_minutes(
        self,
        start: datetime,
        minutes: int,
        business_hours: BusinessHours,
        tz_name: str
    ) -> datetime:
        """Instant reached after `minutes` of open time from `start`."""


IBusinessHoursCalendar.register(BusinessHoursCalculator)


class ITemplateRenderer(ABC):
    @abstractmethod
    def render(self, name: str, data: dict) -> Tuple[str, str]:
        """Render a stored template. Returns (content, subject)."""


class INotifier(ABC):
    @abstractmethod
    async def send(self, message: NotificationMessage) -> None:
        """Hand a rendered message to the outbound channel."""


UnitOfWorkFactory = Callable[[], IUnitOfWork]
Clock = Callable[[], datetime]


# ========== Application Services ==========

class NotificationScheduler:
    """
    Turns notification rules into persisted schedule rows.

    Rows are written through the caller's unit of work so they commit
    together with the state change that triggered them.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now

    async def schedule(
        self,
        uow: IUnitOfWork,
        rules: List[NotificationRule],
        applied_sla_id: int,
        sla_event_id: Optional[int],
        deadlines: Deadlines,
        breaches: Breaches
    ) -> int:
        """
        Schedule warning/breach notifications.

        Returns:
            Number of rows created
        """
        now = self._clock()
        created = 0

        for rule in rules:
            try:
                candidates = SLACalculator.build_notification_schedule([rule], deadlines, breaches)
            except InvalidDurationException as e:
                logger.error(
                    "error parsing sla notification delay",
                    extra={"error": e.message, "applied_sla_id": applied_sla_id}
                )
                continue

            for candidate in candidates:
                log_context = {
                    "send_at": candidate.send_at.isoformat(),
                    "applied_sla_id": applied_sla_id,
                    "metric": candidate.metric,
                    "notification_type": candidate.notification_type,
                }
                if SLACalculator.is_too_late(candidate.send_at, now):
                    logger.warning(
                        "skipping scheduling notification as it is in the past",
                        extra=log_context
                    )
                    continue

                logger.info(
                    "scheduling SLA notification",
                    extra={**log_context, "recipients": candidate.recipients}
                )
                await uow.notifications.create(
                    applied_sla_id=applied_sla_id,
                    sla_event_id=sla_event_id,
                    metric=candidate.metric,
                    notification_type=candidate.notification_type,
                    send_at=candidate.send_at,
                    recipients=candidate.recipients,
                )
                created += 1

        return created


class SLAService:
    """
    Service for SLA policies, deadline calculation and SLA application.

    Coordinates between domain logic and data access.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        team_store: ITeamStore,
        settings_store: IAppSettingsStore,
        business_hours_store: IBusinessHoursStore,
        calendar: Optional[IBusinessHoursCalendar] = None,
        scheduler: Optional[NotificationScheduler] = None,
        clock: Optional[Clock] = None
    ):
        self._uow_factory = uow_factory
        self._team_store = team_store
        self._settings_store = settings_store
        self._business_hours_store = business_hours_store
        self._calendar = calendar or BusinessHoursCalculator()
        self._clock = clock or utc_now
        self._scheduler = scheduler or NotificationScheduler(self._clock)

    # ---------- Policy store ----------

    async def get(self, policy_id: int) -> SLAPolicy:
        async with self._uow_factory() as uow:
            return await uow.policies.get(policy_id)

    async def get_all(self) -> List[SLAPolicy]:
        async with self._uow_factory() as uow:
            return await uow.policies.get_all()

    async def create(
        self,
        name: str,
        description: str,
        first_response_time: Optional[str] = None,
        resolution_time: Optional[str] = None,
        next_response_time: Optional[str] = None,
        notifications: Optional[List[NotificationRule]] = None
    ) -> SLAPolicy:
        """Create a policy after validating its durations and rules."""
        policy = SLAPolicy(
            id=0,
            name=name,
            description=description,
            first_response_time=first_response_time or None,
            resolution_time=resolution_time or None,
            next_response_time=next_response_time or None,
            notifications=list(notifications or []),
        )
        self._validate_policy(policy)

        async with self._uow_factory() as uow:
            created = await uow.policies.create(policy)

        logger.info("SLA policy created", extra={"policy_id": created.id})
        return created

    async def update(
        self,
        policy_id: int,
        name: str,
        description: str,
        first_response_time: Optional[str] = None,
        resolution_time: Optional[str] = None,
        next_response_time: Optional[str] = None,
        notifications: Optional[List[NotificationRule]] = None
    ) -> SLAPolicy:
        """Update a policy. Deadlines already stored are left untouched."""
        policy = SLAPolicy(
            id=policy_id,
            name=name,
            description=description,
            first_response_time=first_response_time or None,
            resolution_time=resolution_time or None,
            next_response_time=next_response_time or None,
            notifications=list(notifications or []),
        )
        self._validate_policy(policy)

        async with self._uow_factory() as uow:
            updated = await uow.policies.update(policy)

        logger.info("SLA policy updated", extra={"policy_id": policy_id})
        return updated

    async def delete(self, policy_id: int) -> None:
        async with self._uow_factory() as uow:
            await uow.policies.delete(policy_id)
        logger.info("SLA policy deleted", extra={"policy_id": policy_id})

    @staticmethod
    def _validate_policy(policy: SLAPolicy) -> None:
        errors = []

        if not 1 <= len(policy.name or "") <= 255:
            errors.append("name must be between 1 and 255 characters")
        if not 1 <= len(policy.description or "") <= 255:
            errors.append("description must be between 1 and 255 characters")

        durations = {
            "first_response_time": policy.first_response_time,
            "resolution_time": policy.resolution_time,
            "next_response_time": policy.next_response_time,
        }
        if not any(durations.values()):
            errors.append("at least one of first_response_time, resolution_time or next_response_time is required")
        for field_name, value in durations.items():
            if not value:
                continue
            try:
                if parse_duration(value) <= timedelta(0):
                    errors.append(f"{field_name} must be positive")
            except InvalidDurationException:
                errors.append(f"{field_name}: invalid duration {value!r}")

        for index, rule in enumerate(policy.notifications):
            prefix = f"notifications[{index}]"
            if rule.type not in VALID_NOTIFICATION_TYPES:
                errors.append(f"{prefix}.type must be one of {VALID_NOTIFICATION_TYPES}")
            if rule.metric not in VALID_METRICS:
                errors.append(f"{prefix}.metric must be one of {VALID_METRICS}")
            if rule.time_delay_type not in VALID_TIME_DELAY_TYPES:
                errors.append(f"{prefix}.time_delay_type must be one of {VALID_TIME_DELAY_TYPES}")
            if not rule.recipients:
                errors.append(f"{prefix}.recipients must not be empty")
            if rule.time_delay_type != TimeDelayType.IMMEDIATELY:
                try:
                    parse_duration(rule.time_delay)
                except InvalidDurationException:
                    errors.append(f"{prefix}.time_delay is required when time_delay_type is {rule.time_delay_type!r}")

        if errors:
            raise ValidationException("invalid SLA policy", {"errors": errors})

    # ---------- Deadlines ----------

    async def get_deadlines(self, start_time: datetime, policy_id: int, team_id: int) -> Deadlines:
        """
        Calculate first response, resolution and next response deadlines.

        Raises:
            ConfigurationException: business hours or timezone unresolved
            BusinessHoursNotFoundException: calendar missing
            InvalidDurationException: malformed policy duration
            ResourceNotFoundException: policy missing
        """
        business_hours, tz_name = await self._resolve_business_hours(team_id)
        policy = await self.get(policy_id)
        return self._calculate_deadlines(start_time, policy, business_hours, tz_name)

    def _calculate_deadlines(
        self,
        start_time: datetime,
        policy: SLAPolicy,
        business_hours: BusinessHours,
        tz_name: str
    ) -> Deadlines:
        logger.debug(
            "calculating deadlines",
            extra={
                "timezone": tz_name,
                "business_hours_id": business_hours.id,
                "business_hours_always_open": business_hours.is_always_open,
            }
        )

        def deadline(duration: Optional[str]) -> Optional[datetime]:
            if not duration:
                return None
            minutes = int(parse_duration(duration).total_seconds() / 60)
            return self._calendar.add_business_minutes(start_time, minutes, business_hours, tz_name)

        return Deadlines(
            first_response=deadline(policy.first_response_time),
            resolution=deadline(policy.resolution_time),
            next_response=deadline(policy.next_response_time),
        )

    async def _resolve_business_hours(self, team_id: int) -> Tuple[BusinessHours, str]:
        """Team calendar and timezone, falling back to the helpdesk defaults."""
        business_hours_id = 0
        tz_name = ""

        if team_id:
            try:
                team = await self._team_store.get(team_id)
                business_hours_id = team.business_hours_id or 0
                tz_name = team.timezone or ""
            except ApplicationException as e:
                logger.warning(
                    "team lookup failed, using default business hours",
                    extra={"team_id": team_id, "error": e.message}
                )

        if not business_hours_id or not tz_name:
            app_settings = self._settings_store.get_by_prefix("app")
            try:
                business_hours_id = int(app_settings.get("app.business_hours_id") or 0)
            except (TypeError, ValueError):
                business_hours_id = 0
            tz_name = str(app_settings.get("app.timezone") or "")

        if not business_hours_id or not tz_name:
            raise ConfigurationException("business hours or timezone not configured")

        try:
            business_hours = self._business_hours_store.get(business_hours_id)
        except BusinessHoursNotFoundException:
            logger.warning(
                "business hours not found",
                extra={"team_id": team_id, "business_hours_id": business_hours_id}
            )
            raise

        return business_hours, tz_name

    # ---------- Applied SLA ----------

    async def apply_sla(
        self,
        start_time: datetime,
        conversation_id: int,
        team_id: int,
        policy_id: int
    ) -> SLAPolicy:
        """
        Bind a policy to a conversation.

        Stores first response and resolution deadlines and schedules their
        warning notifications. Next response deadlines live on SLA events.

        Returns:
            The applied policy
        """
        business_hours, tz_name = await self._resolve_business_hours(team_id)
        policy = await self.get(policy_id)
        deadlines = self._calculate_deadlines(start_time, policy, business_hours, tz_name)
        deadlines.next_response = None

        async with self._uow_factory() as uow:
            applied_sla_id = await uow.applied_slas.create(conversation_id, policy.id, deadlines)
            pending = [d for d in (deadlines.first_response, deadlines.resolution) if d is not None]
            await uow.conversations.set_next_sla_deadline(conversation_id, min(pending) if pending else None)
            # No breach has happened yet, only warnings are scheduled.
            await self._scheduler.schedule(
                uow, policy.notifications, applied_sla_id, None, deadlines, Breaches()
            )

        logger.info(
            "SLA applied",
            extra={
                "conversation_id": conversation_id,
                "applied_sla_id": applied_sla_id,
                "policy_id": policy.id,
            }
        )
        return policy

    # ---------- SLA events ----------

    async def create_next_response_sla_event(
        self,
        conversation_id: int,
        applied_sla_id: int,
        policy_id: int,
        team_id: int
    ) -> datetime:
        """
        Start a next response clock for an applied SLA.

        Returns:
            The event deadline

        Raises:
            ResourceNotFoundException: unknown policy or applied SLA
            ValidationException: the applied SLA belongs to another conversation
            NextResponseNotConfiguredException: policy has no next response target
            UnmetSLAEventAlreadyExistsException: an open event already exists
        """
        policy = await self.get(policy_id)
        log_context = {
            "conversation_id": conversation_id,
            "policy_id": policy_id,
            "applied_sla_id": applied_sla_id,
        }

        if not policy.next_response_time:
            logger.info("no next response time set for SLA policy, skipping event creation", extra=log_context)
            raise NextResponseNotConfiguredException(policy_id, applied_sla_id)

        business_hours, tz_name = await self._resolve_business_hours(team_id)
        now = self._clock()
        deadlines = self._calculate_deadlines(now, policy, business_hours, tz_name)
        deadline = deadlines.next_response
        if deadline is None:
            logger.info("next response deadline is zero, skipping event creation", extra=log_context)
            raise NextResponseNotConfiguredException(policy_id, applied_sla_id)

        try:
            async with self._uow_factory() as uow:
                applied_sla = await uow.applied_slas.get(applied_sla_id)
                if applied_sla.conversation_id != conversation_id:
                    raise ValidationException(
                        "applied SLA does not belong to the conversation",
                        {"applied_sla_id": applied_sla_id, "conversation_id": conversation_id}
                    )
                event_id = await uow.events.create_open_event(
                    applied_sla_id, policy.id, Metric.NEXT_RESPONSE, deadline, now
                )
                await uow.conversations.set_next_sla_deadline(conversation_id, deadline)
                await self._scheduler.schedule(
                    uow, policy.notifications, applied_sla_id, event_id,
                    Deadlines(next_response=deadline), Breaches()
                )
        except UnmetSLAEventAlreadyExistsException:
            logger.info("skipping next response SLA event creation; unmet event already exists", extra=log_context)
            raise

        logger.info(
            "next response SLA event created",
            extra={**log_context, "sla_event_id": event_id, "deadline_at": deadline.isoformat()}
        )
        return deadline

    async def set_latest_sla_event_met_at(self, applied_sla_id: int, metric: str) -> datetime:
        """
        Mark the most recent open event as met now.

        Raises:
            LatestSLAEventNotFoundException: there is no open event
        """
        async with self._uow_factory() as uow:
            met_at = await uow.events.set_latest_met_at(applied_sla_id, metric, self._clock())

        if met_at is None:
            logger.info(
                "no SLA event found for applied SLA and metric to update met_at",
                extra={"applied_sla_id": applied_sla_id, "metric": metric}
            )
            raise LatestSLAEventNotFoundException(applied_sla_id, metric)
        return met_at

    async def create_notification_schedule(
        self,
        rules: List[NotificationRule],
        applied_sla_id: int,
        sla_event_id: Optional[int],
        deadlines: Deadlines,
        breaches: Breaches
    ) -> int:
        """Schedule notifications in a unit of work of their own."""
        async with self._uow_factory() as uow:
            return await self._scheduler.schedule(
                uow, rules, applied_sla_id, sla_event_id, deadlines, breaches
            )


def _stop_requested(shutdown: Optional[asyncio.Event]) -> bool:
    return shutdown is not None and shutdown.is_set()


class SLAEvaluationService:
    """
    Service for evaluating SLA compliance.

    Run periodically to promote applied SLAs and SLA events to met or
    breached and schedule breach notifications.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        scheduler: Optional[NotificationScheduler] = None,
        clock: Optional[Clock] = None
    ):
        self._uow_factory = uow_factory
        self._clock = clock or utc_now
        self._scheduler = scheduler or NotificationScheduler(self._clock)

    async def evaluate_pending_slas(self, shutdown: Optional[asyncio.Event] = None) -> int:
        """
        Evaluate every applied SLA that is not completed.

        Returns:
            Number of rows evaluated without error
        """
        async with self._uow_factory() as uow:
            pending = await uow.applied_slas.get_pending()

        logger.info("evaluating pending SLAs", extra={"count": len(pending)})

        policy_cache: Dict[int, SLAPolicy] = {}
        evaluated = 0
        for applied_sla in pending:
            if _stop_requested(shutdown):
                logger.info("shutdown requested, stopping SLA evaluation")
                break
            try:
                await self._evaluate_applied_sla(applied_sla.id, policy_cache)
                evaluated += 1
            except Exception as e:
                logger.error(
                    "error evaluating SLA",
                    extra={"applied_sla_id": applied_sla.id, "error": str(e)}
                )

        logger.info("evaluated pending SLAs", extra={"count": evaluated})
        return evaluated

    async def _evaluate_applied_sla(self, applied_sla_id: int, policy_cache: Dict[int, SLAPolicy]) -> None:
        async with self._uow_factory() as uow:
            applied_sla = await uow.applied_slas.get(applied_sla_id)
            if applied_sla.status == AppliedSLAStatus.COMPLETED:
                return

            now = self._clock()
            for metric in (Metric.FIRST_RESPONSE, Metric.RESOLUTION):
                if applied_sla.is_metric_resolved(metric):
                    continue

                deadline = applied_sla.deadline_for(metric)
                if deadline is None:
                    logger.warning(
                        "deadline not set, skipping checking the deadline",
                        extra={
                            "conversation_id": applied_sla.conversation_id,
                            "applied_sla_id": applied_sla.id,
                            "metric": metric,
                        }
                    )
                    continue

                verdict = SLACalculator.evaluate_metric(
                    deadline, applied_sla.conversation_met_source(metric), now
                )
                if verdict is None:
                    continue

                if verdict.state == SLAEventStatus.MET:
                    await uow.applied_slas.set_met_at(applied_sla.id, metric, verdict.met_at)
                    logger.debug("SLA metric met", extra={"applied_sla_id": applied_sla.id, "metric": metric})
                    continue

                if not await uow.applied_slas.set_breached_at(applied_sla.id, metric, now):
                    continue
                logger.info("SLA metric breached", extra={"applied_sla_id": applied_sla.id, "metric": metric})

                policy = await self._get_policy(uow, applied_sla.sla_policy_id, policy_cache)
                breaches = Breaches()
                setattr(breaches, metric, now)
                await self._scheduler.schedule(
                    uow, policy.notifications, applied_sla.id, None, Deadlines(), breaches
                )

            await uow.conversations.refresh_next_sla_deadline(applied_sla.conversation_id)

            refreshed = await uow.applied_slas.get(applied_sla.id)
            if refreshed.is_complete:
                await uow.applied_slas.set_status(applied_sla.id, AppliedSLAStatus.COMPLETED)

    async def evaluate_pending_sla_events(self, shutdown: Optional[asyncio.Event] = None) -> int:
        """
        Evaluate every pending next response event.

        Returns:
            Number of events evaluated without error
        """
        async with self._uow_factory() as uow:
            events = await uow.events.get_pending()

        if not events:
            return 0
        logger.info("found pending SLA events for evaluation", extra={"count": len(events)})

        policy_cache: Dict[int, SLAPolicy] = {}
        evaluated = 0
        for event in events:
            if _stop_requested(shutdown):
                logger.info("shutdown requested, stopping SLA event evaluation")
                break
            try:
                await self._evaluate_event(event.id, policy_cache)
                evaluated += 1
            except Exception as e:
                logger.error(
                    "error evaluating SLA event",
                    extra={"sla_event_id": event.id, "error": str(e)}
                )
        return evaluated

    async def _evaluate_event(self, event_id: int, policy_cache: Dict[int, SLAPolicy]) -> None:
        async with self._uow_factory() as uow:
            event = await uow.events.get(event_id)
            if not event.is_pending:
                return
            if event.deadline_at is None:
                logger.warning("SLA event deadline is zero, skipping evaluation", extra={"sla_event_id": event.id})
                return

            now = self._clock()
            verdict = SLACalculator.evaluate_metric(event.deadline_at, event.met_at, now)
            if verdict is None:
                return

            if verdict.state == SLAEventStatus.MET:
                await uow.events.mark_met(event.id)
                return

            if not await uow.events.mark_breached(event.id, now):
                return
            logger.info("SLA event breached", extra={"sla_event_id": event.id, "applied_sla_id": event.applied_sla_id})

            policy = await self._get_policy(uow, event.sla_policy_id, policy_cache)
            await self._scheduler.schedule(
                uow, policy.notifications, event.applied_sla_id, event.id,
                Deadlines(), Breaches(next_response=now)
            )

    @staticmethod
    async def _get_policy(uow: IUnitOfWork, policy_id: int, cache: Dict[int, SLAPolicy]) -> SLAPolicy:
        policy = cache.get(policy_id)
        if policy is None:
            policy = await uow.policies.get(policy_id)
            cache[policy_id] = policy
        return policy


class NotificationDispatcher:
    """
    Drains due schedule rows, renders them and hands them to the notifier.

    Delivery is at-most-once: every row that reaches a decision is marked
    processed exactly once. Rows whose applied SLA cannot be loaded are left
    for the next pass.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        user_store: IUserStore,
        renderer: ITemplateRenderer,
        notifier: INotifier,
        clock: Optional[Clock] = None
    ):
        self._uow_factory = uow_factory
        self._user_store = user_store
        self._renderer = renderer
        self._notifier = notifier
        self._clock = clock or utc_now

    async def dispatch_due(self, shutdown: Optional[asyncio.Event] = None) -> int:
        """
        Process every due notification.

        Returns:
            Number of rows marked processed in this pass
        """
        async with self._uow_factory() as uow:
            due = await uow.notifications.get_due(self._clock())

        if not due:
            return 0
        logger.info("found scheduled SLA notifications", extra={"count": len(due)})

        processed = 0
        for notification in due:
            if _stop_requested(shutdown):
                logger.info("shutdown requested, stopping notification dispatch")
                break
            try:
                if await self.dispatch(notification):
                    processed += 1
            except Exception as e:
                logger.error(
                    "error sending notification",
                    extra={"scheduled_notification_id": notification.id, "error": str(e)}
                )

        logger.info("sent SLA notifications", extra={"count": processed})
        return processed

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        """
        Send one notification to all of its recipients.

        Returns:
            True if the row was marked processed by this call
        """
        async with self._uow_factory() as uow:
            applied_sla = await uow.applied_slas.get(notification.applied_sla_id)
            event = None
            if notification.sla_event_id:
                event = await uow.events.get(notification.sla_event_id)

        log_context = {
            "scheduled_notification_id": notification.id,
            "applied_sla_id": notification.applied_sla_id,
            "metric": notification.metric,
        }

        if applied_sla.is_conversation_closed:
            logger.info(
                "marking sla notification as processed as the conversation is resolved/closed",
                extra={**log_context, "status": applied_sla.conversation_status}
            )
            return await self._mark_processed(notification)

        skip_reason = self._skip_reason(notification, applied_sla, event)
        if skip_reason:
            logger.info(f"skipping notification as {skip_reason}", extra=log_context)
            return await self._mark_processed(notification)

        template = (
            TEMPLATE_SLA_BREACHED if notification.is_breach else TEMPLATE_SLA_BREACH_WARNING
        )

        for token in notification.recipients:
            agent_id = self._resolve_recipient(token, applied_sla)
            if not agent_id:
                logger.info("notification recipient not resolved", extra={**log_context, "recipient": token})
                continue

            try:
                agent = await self._user_store.get_agent(agent_id)
            except Exception as e:
                logger.error(
                    "error fetching agent for SLA notification",
                    extra={**log_context, "recipient_id": agent_id, "error": str(e)}
                )
                continue

            try:
                data = self._template_data(notification, applied_sla, event, agent)
                content, subject = self._renderer.render(template, data)
                await self._notifier.send(NotificationMessage(
                    recipient_emails=[agent.email],
                    subject=subject,
                    content=content,
                ))
            except ExternalServiceException as e:
                logger.error(
                    "error sending SLA notification",
                    extra={**log_context, "recipient_id": agent_id, "error": e.message}
                )
                continue
            except Exception as e:
                logger.error(
                    "unexpected error sending SLA notification",
                    extra={**log_context, "recipient_id": agent_id, "error": str(e)},
                    exc_info=True
                )
                continue

            logger.info("SLA notification sent", extra={**log_context, "recipient_id": agent_id})

        return await self._mark_processed(notification)

    @staticmethod
    def _skip_reason(
        notification: ScheduledNotification,
        applied_sla: AppliedSLA,
        event: Optional[SLAEvent]
    ) -> Optional[str]:
        """Why a notification is stale or unusable, None if it should be sent."""
        if notification.notification_type not in VALID_NOTIFICATION_TYPES:
            return f"notification type {notification.notification_type!r} is unknown"

        if notification.metric in (Metric.FIRST_RESPONSE, Metric.RESOLUTION):
            if applied_sla.met_at_for(notification.metric) is not None:
                return f"{notification.metric} is already met"
            return None

        if notification.metric == Metric.NEXT_RESPONSE:
            if event is None:
                return "next response SLA event not found"
            if event.met_at is not None:
                return "next response is already met"
            return None

        return f"metric {notification.metric!r} is unknown"

    @staticmethod
    def _resolve_recipient(token: str, applied_sla: AppliedSLA) -> int:
        """Agent ID for a recipient token; 0 when it resolves to nobody."""
        if token == ASSIGNED_USER_RECIPIENT:
            return applied_sla.conversation_assigned_user_id or 0
        try:
            return int(token)
        except (TypeError, ValueError):
            logger.error("error parsing recipient ID", extra={"recipient": token})
            return 0

    def _template_data(
        self,
        notification: ScheduledNotification,
        applied_sla: AppliedSLA,
        event: Optional[SLAEvent],
        agent: Agent
    ) -> dict:
        # Relative durations; absolute times would need the agent's timezone.
        now = self._clock()

        def friendly(target: Optional[datetime]) -> str:
            if target is None:
                return ""
            return format_duration(target - now)

        if notification.metric == Metric.NEXT_RESPONSE:
            deadline, breached_at = event.deadline_at, event.breached_at
        else:
            deadline = applied_sla.deadline_for(notification.metric)
            breached_at = applied_sla.breached_at_for(notification.metric)

        return {
            "sla": {
                "due_in": friendly(deadline),
                "overdue_by": friendly(breached_at),
                "metric": METRIC_LABELS.get(notification.metric, ""),
            },
            "conversation": {
                "reference_number": applied_sla.conversation_reference_number,
                "subject": applied_sla.conversation_subject,
                "priority": "",
                "uuid": applied_sla.conversation_uuid,
            },
            "recipient": {
                "first_name": agent.first_name,
                "last_name": agent.last_name,
                "full_name": agent.full_name,
                "email": agent.email,
            },
            # Automated notifications have no author.
            "author": {
                "first_name": "",
                "last_name": "",
                "full_name": "",
                "email": "",
            },
        }

    async def _mark_processed(self, notification: ScheduledNotification) -> bool:
        async with self._uow_factory() as uow:
            return await uow.notifications.mark_processed(notification.id, self._clock())
