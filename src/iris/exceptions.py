"""Error taxonomy and the tagged result used by the retry / breaker layers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    MODERATION = "moderation"
    CONTENT_FILTERED = "content_filtered"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TOKEN_LIMIT = "token_limit"
    BREAKER_OPEN = "breaker_open"


# Kinds that indicate the remote dependency itself is struggling.
TRANSIENT_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT}
)


class FallbackStrategy(StrEnum):
    GENERIC_DESCRIPTION = "generic_description"
    REDUCE_DETAIL = "reduce_detail"
    BLOCKED_CONTENT = "blocked_content"


class IrisError(Exception):
    """Base exception for Iris service."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        retryable: bool = False,
        fallback: FallbackStrategy | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.fallback = fallback

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def evolve(self, **changes) -> IrisError:
        """Copy of this error with some attributes replaced; ``self`` is untouched."""
        clone = type(self).__new__(type(self), *self.args)
        clone.__dict__.update(self.__dict__, **changes)
        clone.__cause__ = self.__cause__
        return clone

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "fallback": self.fallback.value if self.fallback else None,
        }


class VisionValidationError(IrisError):
    """Raised on bad input shape/cardinality or an unparseable model response."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.VALIDATION, retryable=False)


class ImageNotFoundError(VisionValidationError):
    """Raised when the media library has no image for an identifier."""

    def __init__(self, image_id: str) -> None:
        super().__init__(f"Image {image_id} not found")
        self.image_id = image_id


class ModerationError(IrisError):
    """Raised when safety policy blocks a request outright."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message,
            ErrorKind.MODERATION,
            retryable=False,
            fallback=FallbackStrategy.BLOCKED_CONTENT,
        )


class ContentFilteredError(IrisError):
    """Raised when content is not appropriate for the requested audience."""

    def __init__(
        self, message: str, fallback: FallbackStrategy | None = None
    ) -> None:
        super().__init__(
            message, ErrorKind.CONTENT_FILTERED, retryable=False, fallback=fallback
        )


class RemoteCallError(IrisError):
    """Raised when the remote inference call fails at the transport level."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        retryable: bool,
        fallback: FallbackStrategy | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, kind, retryable=retryable, fallback=fallback)
        self.status_code = status_code
        self.retry_after = retry_after


class CircuitOpenError(IrisError):
    """Raised when the circuit breaker is rejecting calls."""

    def __init__(self, service_name: str, state: str) -> None:
        super().__init__(
            f"Circuit breaker for '{service_name}' is {state}. "
            "Service is temporarily unavailable.",
            ErrorKind.BREAKER_OPEN,
            retryable=False,
        )
        self.service_name = service_name
        self.state = state


# ------------------------------------------------------------------ #
#  Tagged result
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: IrisError

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    @property
    def fallback(self) -> FallbackStrategy | None:
        return self.error.fallback

    def unwrap(self):
        raise self.error

    def without_fallback(self) -> Err:
        return Err(self.error.evolve(fallback=None))


Result = Ok[T] | Err


def wrap_unexpected(exc: Exception, context: str) -> IrisError:
    """Classify an unexpected exception as a retryable network error, once."""
    if isinstance(exc, IrisError):
        return exc
    error = IrisError(
        f"{context} failed: {exc}", ErrorKind.NETWORK, retryable=True
    )
    error.__cause__ = exc
    return error


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.MODERATION: 403,
    ErrorKind.CONTENT_FILTERED: 403,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.BREAKER_OPEN: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK: 502,
    ErrorKind.TOKEN_LIMIT: 502,
}


def http_status(error: IrisError) -> int:
    if isinstance(error, ImageNotFoundError):
        return 404
    return _HTTP_STATUS.get(error.kind, 500)
