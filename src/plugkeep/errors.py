"""Exception hierarchy for plugin lifecycle and gateway failures.

Exceptions are raised inside the manager, sandbox and gateway and converted
into structured results (``TransitionResult`` / ``APIResponse``) at their
public boundaries.
"""

from typing import Any, ClassVar

from plugkeep.protocol import ErrorKind


class PlugkeepError(Exception):
    """Base error carrying a machine-readable kind."""

    kind: ClassVar[ErrorKind] = ErrorKind.CAPABILITY_ERROR

    def __init__(self, message: str, *, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailedError(PlugkeepError):
    kind = ErrorKind.VALIDATION_FAILED


class DependencyUnsatisfiedError(PlugkeepError):
    """Missing, circular or version-incompatible dependency."""

    kind = ErrorKind.DEPENDENCY_UNSATISFIED


class LoadFailedError(PlugkeepError):
    kind = ErrorKind.LOAD_FAILED


class ActivationFailedError(PlugkeepError):
    kind = ErrorKind.ACTIVATION_FAILED


class ReloadFailedError(PlugkeepError):
    """Reload aborted; the previous version stays authoritative."""

    kind = ErrorKind.RELOAD_FAILED


class BusyError(PlugkeepError):
    """Another lifecycle transition is in flight for the same plugin."""

    kind = ErrorKind.BUSY


class NotActiveError(PlugkeepError):
    kind = ErrorKind.NOT_ACTIVE


class PermissionDeniedError(PlugkeepError):
    kind = ErrorKind.PERMISSION_DENIED


class RateLimitedError(PlugkeepError):
    kind = ErrorKind.RATE_LIMITED


class ResourceLimitExceededError(PlugkeepError):
    kind = ErrorKind.RESOURCE_LIMIT_EXCEEDED


class PluginTimeoutError(PlugkeepError):
    kind = ErrorKind.TIMEOUT


class UnavailableError(PlugkeepError):
    """No provider is bound for the requested capability."""

    kind = ErrorKind.UNAVAILABLE


class InvalidRequestError(PlugkeepError):
    kind = ErrorKind.INVALID_REQUEST


class InvalidStateError(PlugkeepError):
    """The operation is not allowed from the plugin's current state."""

    kind = ErrorKind.INVALID_STATE


def error_for(kind: ErrorKind, message: str) -> PlugkeepError:
    """Build the exception matching an error kind."""
    for cls in _all_subclasses(PlugkeepError):
        if cls.kind == kind:
            return cls(message)
    return PlugkeepError(message)


def _all_subclasses(cls: type) -> list[type]:
    found = []
    for sub in cls.__subclasses__():
        found.append(sub)
        found.extend(_all_subclasses(sub))
    return found
