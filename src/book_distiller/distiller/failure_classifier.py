"""Deterministic turn failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from book_distiller.distiller.backend.base import ArtifactIngestionError, RemoteCallError
from book_distiller.distiller.models import FailureClass
from book_distiller.distiller.validator import ContentValidationError

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "resource_exhausted",
    "429",
    "quota",
)
_SERVER_PATTERNS: tuple[str, ...] = (
    "status 500",
    "status 502",
    "status 503",
    "status 504",
    "unavailable",
    "overloaded",
    "internal error",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection reset",
    "timed out",
    "timeout",
    "could not resolve host",
)
_ACCESS_PATTERNS: tuple[str, ...] = (
    "status 401",
    "status 403",
    "permission denied",
    "api key not valid",
    "invalid api key",
)

_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT_CALL,
        FailureClass.EMPTY_RESPONSE,
        FailureClass.REASONING_LEAKAGE,
    },
)


@dataclass(slots=True)
class TurnFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    message: str

    @property
    def retryable(self) -> bool:
        return self.failure_class in _RETRYABLE_CLASSES


def classify_turn_failure(
    error: BaseException,
    *,
    during_turn: bool = False,
) -> TurnFailureClassification:
    """Map an exception to a failure class.

    With ``during_turn`` every failure other than content validation is a
    retryable call failure, whatever its type; the ``reason_code`` only
    narrows it down for logs. Outside a turn, ingestion and configuration
    errors are fatal.
    """

    message = str(error) or type(error).__name__

    if isinstance(error, ContentValidationError):
        return TurnFailureClassification(
            failure_class=error.failure_class,
            reason_code=error.failure_class.value,
            message=message,
        )

    if not during_turn and isinstance(error, ArtifactIngestionError):
        return TurnFailureClassification(
            failure_class=FailureClass.INGESTION,
            reason_code="artifact_ingestion",
            message=message,
        )

    if not during_turn and isinstance(error, ValueError):
        return TurnFailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code="invalid_configuration",
            message=message,
        )

    haystack = message.lower()
    for reason_code, patterns in (
        ("rate_limited", _RATE_LIMIT_PATTERNS),
        ("access_denied", _ACCESS_PATTERNS),
        ("server_unavailable", _SERVER_PATTERNS),
        ("network", _NETWORK_PATTERNS),
    ):
        if _first_match(haystack, patterns) is not None:
            return TurnFailureClassification(
                failure_class=FailureClass.TRANSIENT_CALL,
                reason_code=reason_code,
                message=message,
            )

    return TurnFailureClassification(
        failure_class=FailureClass.TRANSIENT_CALL,
        reason_code="remote_call" if isinstance(error, RemoteCallError) else "unexpected",
        message=message,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
