"""Error taxonomy shared by protocol adapters, ledgers and the check executor."""

from enum import Enum
from typing import Iterable, Optional


class ErrorCategory(str, Enum):
    """Failure categories recorded on a Failed execution."""

    AUTHENTICATION_FAILURE = "AuthenticationFailure"
    CONNECTION_TIMEOUT = "ConnectionTimeout"
    PROTOCOL_ERROR = "ProtocolError"
    INVALID_CONFIGURATION = "InvalidConfiguration"
    TIMEOUT = "Timeout"
    STORE_UNAVAILABLE = "StoreUnavailable"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.CONNECTION_TIMEOUT,
    ErrorCategory.PROTOCOL_ERROR,
    ErrorCategory.STORE_UNAVAILABLE,
})


class DiscoveryError(RuntimeError):
    """Base class for categorized failures."""

    category: ErrorCategory = ErrorCategory.PROTOCOL_ERROR

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


class AuthenticationFailure(DiscoveryError):
    """Raised when the remote rejects the credentials."""

    category = ErrorCategory.AUTHENTICATION_FAILURE


class ConnectionTimeout(DiscoveryError):
    """Raised when connecting to or reading from the remote times out."""

    category = ErrorCategory.CONNECTION_TIMEOUT


class ProtocolError(DiscoveryError):
    """Raised on transient remote failures (5xx, dropped connections)."""

    category = ErrorCategory.PROTOCOL_ERROR


class InvalidConfigurationError(DiscoveryError):
    """Raised when settings or patterns cannot work against the remote."""

    category = ErrorCategory.INVALID_CONFIGURATION


class InvalidTokenPlacement(InvalidConfigurationError):
    """Raised when a date token appears in a host or authority component."""


class ExecutionTimeout(DiscoveryError):
    """Raised when an execution exceeds its hard time budget."""

    category = ErrorCategory.TIMEOUT


class StoreUnavailableError(DiscoveryError):
    """Raised when the backing store cannot be reached or written."""

    category = ErrorCategory.STORE_UNAVAILABLE


class ConcurrencyConflict(RuntimeError):
    """Raised when an update carries a stale concurrency token."""

    def __init__(self, configuration_id: str, expected_version: Optional[str]):
        super().__init__(
            f"Configuration {configuration_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.configuration_id = configuration_id
        self.expected_version = expected_version


class ConfigurationNotFound(LookupError):
    """Raised when a configuration does not exist for the tenant."""


class InvalidTransition(RuntimeError):
    """Raised on an illegal execution status change."""


class NotificationError(RuntimeError):
    """Raised when a notification could not be handed to its transport."""


def redact(message: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace every secret value found in message with a mask."""
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    return message
