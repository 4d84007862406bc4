# =============================================================================
# Messaging Errors
# =============================================================================
# Every failure that crosses a component boundary is a MessagingError carrying
# an ErrorKind. The orchestrator maps the kind onto a sync status, and the
# upsyncer uses it to decide between "skip this message" and "abort the phase".
# =============================================================================

from enum import Enum, auto


class ErrorKind(Enum):
    """Classification of a messaging failure."""
    IO_ERROR = auto()               # Network trouble, timeouts, dropped sockets
    AUTHENTICATION_FAILED = auto()  # Bad or missing credentials
    SERVER_ERROR = auto()           # Server answered NO/BAD
    INTERNAL_ERROR = auto()         # Anything unexpected on our side


# =============================================================================
# Exceptions
# =============================================================================

class MessagingError(Exception):
    """
    Base exception for messaging failures.

    Attributes:
        kind: The ErrorKind of this failure.
    """

    default_kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str = "", kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind

    @property
    def is_auth_failure(self) -> bool:
        return self.kind == ErrorKind.AUTHENTICATION_FAILED


class ConnectionFailedError(MessagingError):
    """Raised when the server cannot be reached or the connection drops."""
    default_kind = ErrorKind.IO_ERROR


class AuthenticationFailedError(MessagingError):
    """Raised when login fails or no password is available."""
    default_kind = ErrorKind.AUTHENTICATION_FAILED


class ServerError(MessagingError):
    """Raised when the server rejects a command (NO/BAD)."""
    default_kind = ErrorKind.SERVER_ERROR
