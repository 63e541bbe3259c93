"""Publishing exceptions and error classification."""
from enum import Enum
from typing import List, Optional, Sequence

import asyncpg
import httpx


class ErrorKind(str, Enum):
    """How the retry layer should treat an error."""
    CREDENTIAL_EXPIRED = "credential_expired"
    TRANSIENT = "transient"
    CONTENT_INVALID = "content_invalid"
    NOT_FOUND = "not_found"
    PERMANENT = "permanent"


# HTTP statuses that mean the credential must be refreshed
UNAUTHORIZED_STATUS_CODES = frozenset({401})

# HTTP statuses worth retrying as-is
TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class PublishingError(Exception):
    """Base error for the publication engine."""

    kind: ErrorKind = ErrorKind.PERMANENT


class CredentialExpiredError(PublishingError):
    """The credential used for a remote call is expired or was rejected."""

    kind = ErrorKind.CREDENTIAL_EXPIRED


class TransientSendError(PublishingError):
    """Network failure or server-side error that may succeed on retry."""

    kind = ErrorKind.TRANSIENT


class EmailSendError(PublishingError):
    """The transport rejected the send for a reason retrying won't fix."""

    kind = ErrorKind.PERMANENT


class ContentValidationError(PublishingError):
    """Rendered content failed validation; nothing was sent."""

    kind = ErrorKind.CONTENT_INVALID

    def __init__(self, message: str, issues: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.issues: List[str] = list(issues or [])


class ArticleNotFoundError(PublishingError):
    """The article behind a publication no longer exists."""

    kind = ErrorKind.NOT_FOUND


class ChannelNotConfiguredError(PublishingError):
    """No publisher is registered for a channel."""

    kind = ErrorKind.PERMANENT


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind without looking at its message."""
    if isinstance(exc, PublishingError):
        return exc.kind

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in UNAUTHORIZED_STATUS_CODES:
            return ErrorKind.CREDENTIAL_EXPIRED
        if status in TRANSIENT_STATUS_CODES:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT

    if isinstance(exc, httpx.TransportError):
        return ErrorKind.TRANSIENT

    if isinstance(exc, (asyncpg.exceptions.InvalidAuthorizationSpecificationError,
                        asyncpg.exceptions.InvalidPasswordError)):
        return ErrorKind.CREDENTIAL_EXPIRED

    if isinstance(exc, (asyncpg.exceptions.ConnectionDoesNotExistError,
                        asyncpg.exceptions.CannotConnectNowError,
                        ConnectionError,
                        TimeoutError)):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT
