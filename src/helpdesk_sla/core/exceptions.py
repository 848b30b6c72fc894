"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class InvalidDurationException(ConfigurationException):
    """A duration string (SLA target or notification delay) could not be parsed."""

    def __init__(self, value: str, details: Optional[dict] = None):
        self.value = value
        super().__init__(f"invalid duration {value!r}", details or {"value": value})


class BusinessHoursNotFoundException(ResourceNotFoundException):
    """The referenced business hours calendar does not exist."""

    def __init__(self, business_hours_id: int):
        super().__init__("Business hours", str(business_hours_id))


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class TemplateRenderException(ExternalServiceException):
    """Exception for notification template rendering failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Template", message, details)


class NotifierException(ExternalServiceException):
    """Exception for outbound notification delivery failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notifier", message, details)


class UnmetSLAEventAlreadyExistsException(DomainException):
    """An open (unmet, unbreached) SLA event already exists for the applied SLA."""

    def __init__(self, applied_sla_id: int, metric: str):
        self.applied_sla_id = applied_sla_id
        self.metric = metric
        super().__init__(
            "unmet SLA event already exists, cannot create a new one for the same applied SLA and metric",
            {"applied_sla_id": applied_sla_id, "metric": metric}
        )


class LatestSLAEventNotFoundException(DomainException):
    """No open SLA event exists to be marked as met."""

    def __init__(self, applied_sla_id: int, metric: str):
        self.applied_sla_id = applied_sla_id
        self.metric = metric
        super().__init__(
            "latest SLA event not found for the applied SLA and metric",
            {"applied_sla_id": applied_sla_id, "metric": metric}
        )


class NextResponseNotConfiguredException(DomainException):
    """The SLA policy has no next response target, there is nothing to track."""

    def __init__(self, policy_id: int, applied_sla_id: int):
        self.policy_id = policy_id
        self.applied_sla_id = applied_sla_id
        super().__init__(
            f"no next response time set for SLA policy: {policy_id}, applied_sla: {applied_sla_id}",
            {"policy_id": policy_id, "applied_sla_id": applied_sla_id}
        )
