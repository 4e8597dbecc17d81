"""Koya exception hierarchy.

Every error raised by the webhook subsystem inherits from KoyaError so the
API layer and periodic jobs can handle them with a single except clause.
"""

from __future__ import annotations


class KoyaError(Exception):
    """Base exception for all Koya errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "koya_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(KoyaError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(KoyaError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "webhook", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class InvalidTransitionError(KoyaError):
    """A delivery or failure record was asked to leave a terminal state.

    Attributes:
        record_id: ID of the record.
        current: Status the record is in.
        target: Status that was requested.
    """

    code: str = "invalid_transition"

    def __init__(self, record_id: str, current: str, target: str) -> None:
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {record_id} from {current} to {target}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "record_id": self.record_id,
                "current": self.current,
                "target": self.target,
                "message": self.message,
            }
        }


class StorageError(KoyaError):
    """Storage operation failed.

    Raised when the delivery or failure store cannot complete a read or write.
    """

    code: str = "storage_error"


class ConfigurationError(KoyaError):
    """Required configuration is missing or invalid."""

    code: str = "configuration_error"


class AuthenticationError(KoyaError):
    """Authentication failed.

    Raised when a job endpoint is called without the configured cron secret.
    """

    code: str = "authentication_error"
