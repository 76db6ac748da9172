"""Exceptions related to infra-reconcile."""

from enum import StrEnum

__all__ = [
    "ErrorKind",
    "ReconcileException",
    "InputException",
    "CommandException",
    "ProviderException",
    "NotAuthenticatedError",
    "MissingConfigurationError",
    "ResourceConflictError",
    "ImmutableFieldConflictError",
    "ProviderUnavailableError",
    "DependencyFailedError",
    "ResourceFailedError",
    "CommandFailedError",
    "ObjectNotFoundError",
]


class ErrorKind(StrEnum):
    """Classification of a failure reported for a resource."""

    NOT_AUTHENTICATED = "NotAuthenticated"
    MISSING_CONFIGURATION = "MissingConfiguration"
    RESOURCE_CONFLICT = "ResourceConflict"
    IMMUTABLE_FIELD_CONFLICT = "ImmutableFieldConflict"
    TIMED_OUT = "TimedOut"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    DEPENDENCY_FAILED = "DependencyFailed"
    RESOURCE_FAILED = "ResourceFailed"
    COMMAND_FAILED = "CommandFailed"
    INTERNAL = "Internal"


class ReconcileException(Exception):
    """Generic base exception used for this library."""


class InputException(ReconcileException):
    """Raised when the plan files or values are not formatted as expected."""


class CommandException(ReconcileException):
    """Raised when there is a failure running a subcommand."""


class ProviderException(ReconcileException):
    """Raised by a resource provider, carrying the kind of failure."""

    kind: ErrorKind = ErrorKind.COMMAND_FAILED


class NotAuthenticatedError(ProviderException):
    """Raised when credentials for the external system are missing or expired."""

    kind = ErrorKind.NOT_AUTHENTICATED


class MissingConfigurationError(ProviderException, InputException):
    """Raised when a required parameter is absent."""

    kind = ErrorKind.MISSING_CONFIGURATION


class ResourceConflictError(ProviderException):
    """Raised on a name collision with an incompatible existing resource."""

    kind = ErrorKind.RESOURCE_CONFLICT


class ImmutableFieldConflictError(ProviderException):
    """Raised when a parameter differs but cannot be updated in place."""

    kind = ErrorKind.IMMUTABLE_FIELD_CONFLICT

    def __init__(self, spec_id: str, fields: list[str]) -> None:
        super().__init__(
            f"Resource {spec_id} cannot update immutable fields: {', '.join(fields)}"
        )
        self.spec_id = spec_id
        self.fields = fields


class CommandFailedError(ProviderException, CommandException):
    """Raised when a provider command fails in a way that is not classified."""

    kind = ErrorKind.COMMAND_FAILED


class ProviderUnavailableError(ProviderException):
    """Raised on a transient network or API error; safe to retry."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ResourceFailedError(ProviderException):
    """Raised when a resource has reached a terminal failed state."""

    kind = ErrorKind.RESOURCE_FAILED

    def __init__(self, resource_name: str, message: str | None) -> None:
        super().__init__(
            f"Resource {resource_name} failed: {message or 'Unknown error'}"
        )
        self.resource_name = resource_name
        self.message = message


class DependencyFailedError(ProviderException):
    """Raised when a dependency of a resource did not reach Done."""

    kind = ErrorKind.DEPENDENCY_FAILED

    def __init__(
        self,
        spec_id: str,
        dependency_id: str,
        dependency_error: str | None,
    ):
        self.spec_id = spec_id
        self.dependency_id = dependency_id
        self.dependency_error = dependency_error
        super().__init__(
            f"Resource {spec_id} dependency {dependency_id} failed: "
            f"{dependency_error or 'Unknown error'}"
        )


class ObjectNotFoundError(ReconcileException):
    """Raised when an external object does not exist."""
