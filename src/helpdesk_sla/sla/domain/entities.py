"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Optional

from helpdesk_sla.config import (
    Metric, NotificationType, TimeDelayType, AppliedSLAStatus,
    SLAEventStatus, NotificationProvider, CLOSED_CONVERSATION_STATUSES
)


@dataclass
class NotificationRule:
    """A warning or breach notification rule attached to an SLA policy."""

    type: str
    recipients: List[str] = field(default_factory=list)
    metric: str = Metric.ALL
    time_delay: str = ""
    time_delay_type: str = TimeDelayType.IMMEDIATELY

    def __post_init__(self):
        if not self.metric:
            self.metric = Metric.ALL

    @property
    def has_delay(self) -> bool:
        return self.time_delay_type != TimeDelayType.IMMEDIATELY and bool(self.time_delay)

    def applies_to(self, metric: str) -> bool:
        """Check if the rule covers the given metric."""
        return self.metric in (metric, Metric.ALL)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "metric": self.metric,
            "recipients": list(self.recipients),
            "time_delay": self.time_delay,
            "time_delay_type": self.time_delay_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRule":
        return cls(
            type=data.get("type", ""),
            recipients=list(data.get("recipients") or []),
            metric=data.get("metric") or Metric.ALL,
            time_delay=data.get("time_delay") or "",
            time_delay_type=data.get("time_delay_type") or TimeDelayType.IMMEDIATELY,
        )


@dataclass
class SLAPolicy:
    """
    SLA policy definition.

    Durations are Go-style strings ("30m", "4h", "1h30m"); an empty value
    means the policy does not track that metric.
    """

    id: int
    name: str
    description: str = ""
    first_response_time: Optional[str] = None
    next_response_time: Optional[str] = None
    resolution_time: Optional[str] = None
    notifications: List[NotificationRule] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Deadlines:
    """Deadline instants computed for an SLA policy."""

    first_response: Optional[datetime] = None
    resolution: Optional[datetime] = None
    next_response: Optional[datetime] = None

    def for_metric(self, metric: str) -> Optional[datetime]:
        return {
            Metric.FIRST_RESPONSE: self.first_response,
            Metric.RESOLUTION: self.resolution,
            Metric.NEXT_RESPONSE: self.next_response,
        }.get(metric)


@dataclass
class Breaches:
    """Breach instants used to schedule breach notifications."""

    first_response: Optional[datetime] = None
    resolution: Optional[datetime] = None
    next_response: Optional[datetime] = None

    def for_metric(self, metric: str) -> Optional[datetime]:
        return {
            Metric.FIRST_RESPONSE: self.first_response,
            Metric.RESOLUTION: self.resolution,
            Metric.NEXT_RESPONSE: self.next_response,
        }.get(metric)


@dataclass
class AppliedSLA:
    """
    An SLA policy bound to a conversation.

    Carries the read-only conversation fields the evaluator and the
    notification dispatcher need.
    """

    id: int
    conversation_id: int
    sla_policy_id: int
    status: str = AppliedSLAStatus.PENDING
    first_response_deadline_at: Optional[datetime] = None
    resolution_deadline_at: Optional[datetime] = None
    first_response_breached_at: Optional[datetime] = None
    resolution_breached_at: Optional[datetime] = None
    first_response_met_at: Optional[datetime] = None
    resolution_met_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    # Conversation fields
    conversation_first_reply_at: Optional[datetime] = None
    conversation_resolved_at: Optional[datetime] = None
    conversation_status: str = ""
    conversation_uuid: str = ""
    conversation_reference_number: str = ""
    conversation_subject: str = ""
    conversation_assigned_user_id: Optional[int] = None

    @property
    def is_conversation_closed(self) -> bool:
        return self.conversation_status in CLOSED_CONVERSATION_STATUSES

    def deadline_for(self, metric: str) -> Optional[datetime]:
        if metric == Metric.FIRST_RESPONSE:
            return self.first_response_deadline_at
        if metric == Metric.RESOLUTION:
            return self.resolution_deadline_at
        return None

    def met_at_for(self, metric: str) -> Optional[datetime]:
        if metric == Metric.FIRST_RESPONSE:
            return self.first_response_met_at
        if metric == Metric.RESOLUTION:
            return self.resolution_met_at
        return None

    def breached_at_for(self, metric: str) -> Optional[datetime]:
        if metric == Metric.FIRST_RESPONSE:
            return self.first_response_breached_at
        if metric == Metric.RESOLUTION:
            return self.resolution_breached_at
        return None

    def conversation_met_source(self, metric: str) -> Optional[datetime]:
        """Conversation timestamp that satisfies the metric, if any."""
        if metric == Metric.FIRST_RESPONSE:
            return self.conversation_first_reply_at
        if metric == Metric.RESOLUTION:
            return self.conversation_resolved_at
        return None

    def is_metric_resolved(self, metric: str) -> bool:
        """A metric is resolved once it is met or breached."""
        return self.met_at_for(metric) is not None or self.breached_at_for(metric) is not None

    @property
    def is_complete(self) -> bool:
        """Every configured metric is met or breached; unconfigured ones count as resolved."""
        return all(
            self.deadline_for(metric) is None or self.is_metric_resolved(metric)
            for metric in (Metric.FIRST_RESPONSE, Metric.RESOLUTION)
        )

    def open_deadlines(self) -> List[datetime]:
        return [
            self.deadline_for(metric)
            for metric in (Metric.FIRST_RESPONSE, Metric.RESOLUTION)
            if self.deadline_for(metric) is not None and not self.is_metric_resolved(metric)
        ]


@dataclass
class SLAEvent:
    """A next response deadline instance; at most one open per applied SLA."""

    id: int
    applied_sla_id: int
    sla_policy_id: int
    deadline_at: Optional[datetime]
    metric: str = Metric.NEXT_RESPONSE
    status: str = SLAEventStatus.PENDING
    met_at: Optional[datetime] = None
    breached_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.met_at is None and self.breached_at is None

    @property
    def is_pending(self) -> bool:
        """Not yet promoted to met or breached by the evaluator."""
        return self.status == SLAEventStatus.PENDING


@dataclass
class ScheduledNotification:
    """A persisted, due-dated warning or breach alert."""

    id: int
    applied_sla_id: int
    metric: str
    notification_type: str
    send_at: datetime
    recipients: List[str] = field(default_factory=list)
    sla_event_id: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_breach(self) -> bool:
        return self.notification_type == NotificationType.BREACH


@dataclass
class NotificationCandidate:
    """A notification computed by the scheduler, not yet persisted."""

    send_at: datetime
    metric: str
    notification_type: str
    recipients: List[str]


@dataclass(frozen=True)
class DayWindow:
    """Open window for one weekday, in local wall-clock time."""

    open: time
    close: time


@dataclass
class BusinessHours:
    """A business hours calendar."""

    id: int
    name: str
    is_always_open: bool = False
    hours: Dict[str, DayWindow] = field(default_factory=dict)
    holidays: List[date] = field(default_factory=list)


@dataclass
class Team:
    """Team fields relevant to SLA calculation."""

    id: int
    name: str = ""
    business_hours_id: Optional[int] = None
    timezone: str = ""


@dataclass
class Agent:
    """Agent (notification recipient)."""

    id: int
    email: str
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class NotificationMessage:
    """A rendered notification handed to the outbound delivery channel."""

    recipient_emails: List[str]
    subject: str
    content: str
    provider: str = NotificationProvider.EMAIL

    def to_dict(self) -> dict:
        return {
            "recipient_emails": list(self.recipient_emails),
            "subject": self.subject,
            "content": self.content,
            "provider": self.provider,
        }
