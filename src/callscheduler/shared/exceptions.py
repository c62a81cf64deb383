"""
Custom exceptions for the application.
"""

from typing import Any
from uuid import UUID


class AppError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, code: str = "APP_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(AppError):
    """Required configuration is missing or unusable (e.g. a loopback base URL)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "CONFIGURATION_ERROR")


class ProviderError(AppError):
    """The telephony provider rejected or failed an operation."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "PROVIDER_ERROR")
        self.error_code = error_code
        self.provider_response = provider_response or {}


class UnknownCorrelationError(AppError):
    """A webhook references an identifier that is unknown or not yet written."""

    def __init__(self, identifier: str | UUID) -> None:
        super().__init__(f"No call log correlates with {identifier}", "UNKNOWN_CORRELATION")
        self.identifier = identifier


class ScheduleExecutionError(AppError):
    """An automatically fired scheduled call failed."""

    def __init__(self, scheduled_call_id: UUID, message: str) -> None:
        super().__init__(
            f"Scheduled call {scheduled_call_id} failed: {message}",
            "SCHEDULE_EXECUTION_ERROR",
        )
        self.scheduled_call_id = scheduled_call_id


class NotFoundError(AppError):
    """Requested entity does not exist."""

    def __init__(self, entity: str, identifier: str | UUID) -> None:
        super().__init__(f"{entity} not found: {identifier}", "NOT_FOUND")
        self.entity = entity
        self.identifier = identifier


class ValidationError(AppError):
    """Validation error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "VALIDATION_ERROR")
