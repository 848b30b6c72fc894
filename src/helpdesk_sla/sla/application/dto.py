"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from helpdesk_sla.sla.domain import NotificationRule, SLAPolicy


# ========== Type Aliases for Literals ==========
MetricStr = Literal["first_response", "resolution", "next_response", "all"]
TrackedMetricStr = Literal["first_response", "resolution", "next_response"]
NotificationTypeStr = Literal["warning", "breach"]
TimeDelayTypeStr = Literal["immediately", "before", "after"]


# ========== Request DTOs ==========

class NotificationRuleDTO(BaseModel):
    """A warning or breach notification rule."""
    type: NotificationTypeStr = Field(..., description="Notification kind")
    metric: MetricStr = Field(default="all", description="Metric the rule applies to")
    recipients: List[str] = Field(
        ...,
        min_length=1,
        description="Agent IDs or the token 'assigned_user'"
    )
    time_delay: str = Field(default="", description="Go-style duration, e.g. '30m'")
    time_delay_type: TimeDelayTypeStr = Field(default="immediately")

    def to_domain(self) -> NotificationRule:
        return NotificationRule(
            type=self.type,
            metric=self.metric,
            recipients=list(self.recipients),
            time_delay=self.time_delay,
            time_delay_type=self.time_delay_type,
        )

    @classmethod
    def from_domain(cls, rule: NotificationRule) -> "NotificationRuleDTO":
        return cls(**rule.to_dict())


class SLAPolicyRequest(BaseModel):
    """Request body for creating or updating an SLA policy."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1, max_length=255)
    first_response_time: Optional[str] = Field(None, description="e.g. '30m'")
    resolution_time: Optional[str] = Field(None, description="e.g. '4h'")
    next_response_time: Optional[str] = Field(None, description="e.g. '1h'")
    notifications: List[NotificationRuleDTO] = Field(default_factory=list)

    @field_validator("first_response_time", "resolution_time", "next_response_time")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty strings as an unset duration."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    def rules(self) -> List[NotificationRule]:
        return [n.to_domain() for n in self.notifications]


class ApplySLARequest(BaseModel):
    """Request body for applying a policy to a conversation."""
    conversation_id: int = Field(..., ge=1)
    policy_id: int = Field(..., ge=1)
    team_id: int = Field(default=0, ge=0, description="0 uses the helpdesk defaults")
    start_time: Optional[datetime] = Field(
        None,
        description="Clock start; defaults to now"
    )


class NextResponseEventRequest(BaseModel):
    """Request body for starting a next response clock."""
    conversation_id: int = Field(..., ge=1)
    policy_id: int = Field(..., ge=1)
    team_id: int = Field(default=0, ge=0)


class SLAEventMetRequest(BaseModel):
    """Request body for marking the latest open event as met."""
    metric: TrackedMetricStr = Field(default="next_response")


# ========== Response DTOs ==========

class SLAPolicyResponse(BaseModel):
    """Response model for an SLA policy."""
    id: int
    name: str
    description: str
    first_response_time: Optional[str] = None
    resolution_time: Optional[str] = None
    next_response_time: Optional[str] = None
    notifications: List[NotificationRuleDTO] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, policy: SLAPolicy) -> "SLAPolicyResponse":
        return cls(
            id=policy.id,
            name=policy.name,
            description=policy.description,
            first_response_time=policy.first_response_time,
            resolution_time=policy.resolution_time,
            next_response_time=policy.next_response_time,
            notifications=[NotificationRuleDTO.from_domain(n) for n in policy.notifications],
            created_at=policy.created_at,
            updated_at=policy.updated_at,
        )


class SLAEventDeadlineResponse(BaseModel):
    """Deadline of a newly created next response event."""
    deadline_at: datetime


class SLAEventMetResponse(BaseModel):
    """Instant an SLA event was marked met."""
    met_at: datetime


class ErrorResponse(BaseModel):
    """Error body returned by the SLA routes."""
    detail: str
    details: dict = Field(default_factory=dict)
