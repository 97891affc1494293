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


# ========== Issue lifecycle ==========

class InvalidTransitionException(DomainException):
    """Raised when a status change is not in the workflow graph."""

    def __init__(self, current_status: str, requested_status: str, reason: Optional[str] = None):
        self.current_status = current_status
        self.requested_status = requested_status
        message = f"Cannot transition from {current_status} to {requested_status}"
        if reason:
            message += f" ({reason})"
        super().__init__(
            message,
            {"current_status": current_status, "requested_status": requested_status}
        )


class StaleWriteException(DomainException):
    """Raised when an issue changed underneath the caller; reread and retry."""

    def __init__(self, issue_id: str, expected_version: Optional[int] = None):
        self.issue_id = issue_id
        self.expected_version = expected_version
        super().__init__(
            f"Issue {issue_id} was modified concurrently",
            {"issue_id": issue_id, "expected_version": expected_version}
        )


class InvalidRatingException(ValidationException):
    """Raised when a feedback rating is outside 1..5."""

    def __init__(self, rating):
        self.rating = rating
        super().__init__(f"Rating must be an integer between 1 and 5, got {rating!r}", {"rating": rating})


class AlreadyRatedException(DomainException):
    """Raised on a second feedback submission for the same issue."""

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} has already been rated", {"issue_id": issue_id})


class NotResolvedException(DomainException):
    """Raised when feedback is submitted for an issue that is not resolved."""

    def __init__(self, issue_id: str, status: str):
        self.issue_id = issue_id
        self.status = status
        super().__init__(
            f"Issue {issue_id} is {status}; only resolved issues can be rated",
            {"issue_id": issue_id, "status": status}
        )


class NotReporterException(DomainException):
    """Raised when someone other than the reporter submits feedback."""

    def __init__(self, issue_id: str, citizen_id: str):
        self.issue_id = issue_id
        self.citizen_id = citizen_id
        super().__init__(
            "Only the reporter can rate this issue",
            {"issue_id": issue_id, "citizen_id": citizen_id}
        )
