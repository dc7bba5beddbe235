"""
Exception hierarchy for the organization core.

Store clients raise StoreError subclasses; the provisioning service turns
them into FetchError or a failed ProvisioningResult. Nothing here is fatal.
"""

from __future__ import annotations

from typing import Any

_SENSITIVE_FIELDS = {"password", "token", "access_token", "secret", "api_key"}


class TaskdeskError(Exception):
    """Base class: a human-readable message plus debugging context."""

    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        details = {
            k: v for k, v in self.context.items() if k.lower() not in _SENSITIVE_FIELDS
        }
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": details or None,
        }


class ValidationError(TaskdeskError):
    default_message = "Invalid input"


class AuthenticationError(TaskdeskError):
    default_message = "Authentication failed"


class InvalidTransitionError(TaskdeskError):
    default_message = "Invalid provisioning state transition"


# ---------------------------------------------------------------------------
# Store layer
# ---------------------------------------------------------------------------

class StoreError(TaskdeskError):
    default_message = "The data store rejected the request"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status: int | None = None,
        **context: Any,
    ):
        super().__init__(message, code=code, status=status, **context)
        self.code = code
        self.status = status


class AccessPolicyError(StoreError):
    default_message = "Access denied by the store's row-level policy"


class UniquenessError(StoreError):
    default_message = "A row with the same unique key already exists"


class TransportError(StoreError):
    default_message = "Could not reach the data store"


# ---------------------------------------------------------------------------
# Organization core
# ---------------------------------------------------------------------------

class FetchError(TaskdeskError):
    default_message = "Could not load organizations"


class MembershipIntegrityError(FetchError):
    default_message = "A membership record has no valid role"


class PartialProvisioningFailure(TaskdeskError):
    """The organization row was written but its owner membership was not."""

    default_message = "Organization was created without an owner membership"

    def __init__(
        self,
        organization_id: str,
        cause: StoreError,
        *,
        compensated: bool,
        compensation_error: StoreError | None = None,
    ):
        super().__init__(
            cause.message,
            organization_id=organization_id,
            compensated=compensated,
            compensation_error=compensation_error.message if compensation_error else None,
        )
        self.organization_id = organization_id
        self.cause = cause
        self.compensated = compensated
        self.compensation_error = compensation_error
