"""
ChangeFlow error hierarchy.

Every domain failure is raised as one of these types. The API layer maps
``kind`` to a stable HTTP status and a safe ``user_message``; ``context`` is
for internal logs only and is never echoed to callers.

Usage:
    from changeflow.errors import NotFoundError, BusinessRuleError

    raise NotFoundError("Request", entity_id)
    raise BusinessRuleError("Invalid transition", allowed_next=["SUBMITTED"])
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    BUSINESS_RULE = "BUSINESS_RULE"
    CONFLICT = "CONFLICT"
    RATE_LIMIT = "RATE_LIMIT"
    STORAGE = "STORAGE"


class ChangeFlowError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind = ErrorKind.STORAGE
    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    user_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.context = context or {}

    def public_details(self) -> Dict[str, Any]:
        """Details that are safe to return to an untrusted caller."""
        return dict(self.details)


class ValidationError(ChangeFlowError):
    """Malformed or missing payload fields."""

    kind = ErrorKind.VALIDATION
    code = "VALIDATION_FAILED"
    status_code = 400
    user_message = "The provided data is not valid. Please check your input and try again."

    def __init__(
        self,
        message: str,
        errors: Optional[Iterable[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.errors: List[str] = list(errors or [message])
        super().__init__(message, details={"errors": self.errors}, context=context)


class AuthorizationError(ChangeFlowError):
    """Actor lacks the capability required for the operation."""

    kind = ErrorKind.AUTHORIZATION
    code = "AUTHORIZATION_FAILED"
    status_code = 403
    user_message = "You do not have permission to perform this action."

    def __init__(
        self,
        message: str,
        reasons: Optional[Iterable[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.reasons: List[str] = list(reasons or [message])
        super().__init__(message, details={"reasons": self.reasons}, context=context)


class NotFoundError(ChangeFlowError):
    """
    Entity does not exist within the actor's organization.

    Used for BOTH genuinely missing records and cross-organization access,
    so callers cannot probe for the existence of another tenant's records.
    """

    kind = ErrorKind.NOT_FOUND
    code = "RESOURCE_NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str,
        identifier: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} '{identifier}' not found"
        super().__init__(message, context=context)
        self.user_message = f"The requested {resource.lower()} could not be found."


class BusinessRuleError(ChangeFlowError):
    """
    Illegal transition or unmet precondition.

    Always carries the statuses that ARE currently legal from the entity's
    status so a client can self-correct.
    """

    kind = ErrorKind.BUSINESS_RULE
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422
    user_message = "This action violates business rules and cannot be completed."

    def __init__(
        self,
        message: str,
        violations: Optional[Iterable[str]] = None,
        allowed_next: Optional[Iterable[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.violations: List[str] = list(violations or [message])
        self.allowed_next: List[str] = sorted(allowed_next or [])
        super().__init__(
            message,
            details={"violations": self.violations, "allowed_next": self.allowed_next},
            context=context,
        )


class ConflictError(ChangeFlowError):
    """Concurrent write detected, or a required change produced no diff."""

    kind = ErrorKind.CONFLICT
    code = "CONFLICT"
    status_code = 409
    user_message = "The record was changed by someone else or nothing changed. Reload and try again."


class RateLimitError(ChangeFlowError):
    kind = ErrorKind.RATE_LIMIT
    code = "RATE_LIMITED"
    status_code = 429
    user_message = "Too many requests. Please slow down and try again shortly."

    def __init__(self, key: str, limit: int, window_seconds: int):
        super().__init__(
            f"Rate limit of {limit}/{window_seconds}s exceeded",
            details={"limit": limit, "window_seconds": window_seconds},
            context={"key": key},
        )


class StorageError(ChangeFlowError):
    """Storage failure that survived the retry budget."""

    kind = ErrorKind.STORAGE
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    user_message = "The service is temporarily unavailable. Please try again later."


class TransientStorageError(StorageError):
    """Connection loss or timeout at the storage adapter. Safe to retry."""

    code = "STORAGE_TRANSIENT"
