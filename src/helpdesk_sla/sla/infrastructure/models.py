"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA engine.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.

The conversations, teams and users tables belong to the wider helpdesk;
they are mapped here with the columns the SLA engine reads.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_sla.infrastructure.database import Base, UTCDateTime
from helpdesk_sla.config import AppliedSLAStatus, SLAEventStatus, Metric


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TeamModel(Base):
    """Maps to the 'teams' table."""
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_hours_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str] = mapped_column(String(100), nullable=False, default="")


class UserModel(Base):
    """Maps to the 'users' table. Only agents receive SLA notifications."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="agent")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ConversationModel(Base):
    """
    Maps to the 'conversations' table.

    The SLA engine only writes next_sla_deadline_at.
    """
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    reference_number: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="Open")
    assigned_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    assigned_team_id: Mapped[Optional[int]] = mapped_column(ForeignKey("teams.id"), nullable=True)
    first_reply_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_sla_deadline_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class SLAPolicyModel(Base):
    """Maps to the 'sla_policies' table."""
    __tablename__ = "sla_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Go-style durations ("30m", "4h"); NULL when the metric is not tracked
    first_response_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    next_response_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resolution_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Ordered list of notification rule objects
    notifications: Mapped[List[dict]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class AppliedSLAModel(Base):
    """Maps to the 'applied_slas' table."""
    __tablename__ = "applied_slas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sla_policy_id: Mapped[int] = mapped_column(
        ForeignKey("sla_policies.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AppliedSLAStatus.PENDING, index=True
    )

    first_response_deadline_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_deadline_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    first_response_breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    first_response_met_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_met_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class SLAEventModel(Base):
    """
    Maps to the 'sla_events' table.

    The partial unique index allows any number of closed events per applied
    SLA and metric but only one open one.
    """
    __tablename__ = "sla_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    applied_sla_id: Mapped[int] = mapped_column(
        ForeignKey("applied_slas.id", ondelete="CASCADE"), nullable=False
    )
    sla_policy_id: Mapped[int] = mapped_column(
        ForeignKey("sla_policies.id", ondelete="RESTRICT"), nullable=False
    )
    metric: Mapped[str] = mapped_column(String(20), nullable=False, default=Metric.NEXT_RESPONSE)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SLAEventStatus.PENDING, index=True
    )
    deadline_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    met_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index(
            "uq_sla_events_open_per_applied_sla",
            "applied_sla_id",
            "metric",
            unique=True,
            postgresql_where=text("met_at IS NULL AND breached_at IS NULL"),
            sqlite_where=text("met_at IS NULL AND breached_at IS NULL"),
        ),
    )


class ScheduledNotificationModel(Base):
    """Maps to the 'scheduled_sla_notifications' table."""
    __tablename__ = "scheduled_sla_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    applied_sla_id: Mapped[int] = mapped_column(
        ForeignKey("applied_slas.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sla_event_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sla_events.id", ondelete="CASCADE"), nullable=True
    )
    metric: Mapped[str] = mapped_column(String(20), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Recipient tokens stored verbatim, resolved at send time
    recipients: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    send_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_sla_notifications_due", "processed_at", "send_at"),
    )
