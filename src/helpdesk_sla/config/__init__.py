"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Helpdesk configuration ==========
    helpdesk_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="YAML file holding app defaults and business hours calendars"
    )

    # ========== SLA engine ==========
    sla_evaluation_interval: int = Field(
        default=60,
        description="Seconds between applied SLA / SLA event evaluation passes",
        ge=1
    )
    sla_notification_interval: int = Field(
        default=20,
        description="Seconds between scheduled notification dispatch passes",
        ge=1
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Relay endpoint that delivers rendered SLA notifications"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notification relay calls",
        ge=0.1,
        le=30
    )
    template_dir: Optional[Path] = Field(
        default=None,
        description="Directory with template overrides (<name>.subject / <name>.html)"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class Metric(str):
    """SLA metrics tracked per conversation."""
    FIRST_RESPONSE = "first_response"
    RESOLUTION = "resolution"
    NEXT_RESPONSE = "next_response"
    ALL = "all"


class NotificationType(str):
    """Scheduled notification kinds."""
    WARNING = "warning"
    BREACH = "breach"


class TimeDelayType(str):
    """How a notification rule's delay is applied."""
    IMMEDIATELY = "immediately"
    BEFORE = "before"
    AFTER = "after"


class AppliedSLAStatus(str):
    """Applied SLA lifecycle states."""
    PENDING = "pending"
    COMPLETED = "completed"


class SLAEventStatus(str):
    """SLA event lifecycle states."""
    PENDING = "pending"
    MET = "met"
    BREACHED = "breached"


class ConversationStatus(str):
    """Conversation statuses as stored by the helpdesk."""
    OPEN = "Open"
    REPLIED = "Replied"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    SNOOZED = "Snoozed"


class NotificationProvider(str):
    """Outbound delivery providers."""
    EMAIL = "email"


ASSIGNED_USER_RECIPIENT = "assigned_user"

# Notifications whose send time is further in the past than this are dropped.
NOTIFICATION_PAST_TOLERANCE = timedelta(minutes=5)

METRIC_LABELS = {
    Metric.FIRST_RESPONSE: "First Response",
    Metric.RESOLUTION: "Resolution",
    Metric.NEXT_RESPONSE: "Next Response",
}

TEMPLATE_SLA_BREACH_WARNING = "sla_breach_warning"
TEMPLATE_SLA_BREACHED = "sla_breached"


# ========== Lists for validation ==========

VALID_METRICS = [
    Metric.FIRST_RESPONSE, Metric.RESOLUTION,
    Metric.NEXT_RESPONSE, Metric.ALL
]
VALID_NOTIFICATION_TYPES = [NotificationType.WARNING, NotificationType.BREACH]
VALID_TIME_DELAY_TYPES = [
    TimeDelayType.IMMEDIATELY, TimeDelayType.BEFORE, TimeDelayType.AFTER
]
CLOSED_CONVERSATION_STATUSES = [ConversationStatus.RESOLVED, ConversationStatus.CLOSED]
