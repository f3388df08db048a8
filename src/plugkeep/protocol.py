"""Request/response models exchanged between plugins and the host.

Every plugin-to-host call is an :class:`APIRequest` tagged with the calling
plugin's identity. The gateway always answers with an :class:`APIResponse`
carrying the same correlation id, so callers can match out-of-order
completions.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Machine-readable error kinds for lifecycle and gateway outcomes."""

    # Lifecycle errors
    VALIDATION_FAILED = "ValidationFailed"
    DEPENDENCY_UNSATISFIED = "DependencyUnsatisfied"
    LOAD_FAILED = "LoadFailed"
    ACTIVATION_FAILED = "ActivationFailed"
    RELOAD_FAILED = "ReloadFailed"
    BUSY = "Busy"
    INVALID_STATE = "InvalidState"

    # Gateway / sandbox errors
    NOT_ACTIVE = "NotActive"
    PERMISSION_DENIED = "PermissionDenied"
    RATE_LIMITED = "RateLimited"
    RESOURCE_LIMIT_EXCEEDED = "ResourceLimitExceeded"
    TIMEOUT = "Timeout"
    CAPABILITY_ERROR = "CapabilityError"
    UNAVAILABLE = "Unavailable"
    INVALID_REQUEST = "InvalidRequest"


def new_correlation_id() -> str:
    """Generate a fresh correlation id."""
    return uuid.uuid4().hex


class APIRequest(BaseModel):
    """A plugin-to-host capability call."""

    model_config = ConfigDict(populate_by_name=True)

    plugin: str = Field(..., description="Identity of the calling plugin")
    capability: str = Field(..., description="Target capability identifier (e.g. 'memory.read')")
    method: str = Field(..., description="Method name on the capability provider")
    payload: dict[str, Any] = Field(default_factory=dict, description="Method arguments")
    correlation_id: str = Field(
        default_factory=new_correlation_id,
        alias="correlationId",
        description="Identifier echoed back in the response",
    )


class APIError(BaseModel):
    """Error details of a failed request."""

    kind: ErrorKind = Field(..., description="Machine-readable error kind")
    message: str = Field(..., description="Human-readable message")


class APIResponse(BaseModel):
    """Outcome of a gateway call."""

    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(..., alias="correlationId")
    success: bool
    payload: Any = None
    error: APIError | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def error_kind(self) -> ErrorKind | None:
        """Error kind, or None for successful responses."""
        return self.error.kind if self.error else None

    @classmethod
    def ok(cls, correlation_id: str, payload: Any = None) -> "APIResponse":
        """Create a success response."""
        return cls(correlation_id=correlation_id, success=True, payload=payload)

    @classmethod
    def fail(cls, correlation_id: str, kind: ErrorKind, message: str) -> "APIResponse":
        """Create an error response."""
        return cls(
            correlation_id=correlation_id,
            success=False,
            error=APIError(kind=kind, message=message),
        )
