# src/core/errors.py — v1
"""Error taxonomy for batch submission and bulk record operations.

Retryable: NetworkError, RateLimited, RequestTimeout.
Terminal: SubmissionValidationError, ServiceRejection.
ConflictDetected is a normal branch, not a failure.
LimitExceeded and SubmissionBlocked are synchronous refusals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from stepbatch.core.models import ExistingRecord


class StepBatchError(Exception):
    """Base class for all classified failures."""

    kind: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or self.kind)

    @property
    def user_message(self) -> str:
        """Short message suitable for display next to an item."""
        return _USER_MESSAGES.get(self.kind, str(self))


class NetworkError(StepBatchError):
    kind = "network"
    retryable = True


class RateLimited(StepBatchError):
    kind = "rate_limit"
    retryable = True


class RequestTimeout(StepBatchError):
    kind = "timeout"
    retryable = True


class SubmissionValidationError(StepBatchError):
    kind = "validation"


class ServiceRejection(StepBatchError):
    kind = "rejected"


class ConflictDetected(StepBatchError):
    """The (user, date) slot already holds a record."""

    kind = "conflict"

    def __init__(self, existing: ExistingRecord, date: str | None = None) -> None:
        self.existing = existing
        self.date = date
        super().__init__(f"A record already exists for {date or 'this date'} (id={existing.id})")


class LimitExceeded(StepBatchError):
    """Bulk operation over the configured cap; refused, never truncated."""

    kind = "limit_exceeded"

    def __init__(self, operation: str, limit: int, actual: int) -> None:
        self.operation = operation
        self.limit = limit
        self.actual = actual
        super().__init__(
            f"Cannot {operation} {actual} records at once: the limit is {limit}"
        )


class SubmissionBlocked(StepBatchError):
    """submit_reviewed() refused before any commit was issued."""

    kind = "blocked"

    def __init__(
        self,
        low_confidence_ids: Sequence[str] = (),
        incomplete_ids: Sequence[str] = (),
    ) -> None:
        self.low_confidence_ids = list(low_confidence_ids)
        self.incomplete_ids = list(incomplete_ids)
        parts: list[str] = []
        if self.low_confidence_ids:
            parts.append(
                f"{len(self.low_confidence_ids)} image(s) have low confidence; "
                "review and confirm them before submitting"
            )
        if self.incomplete_ids:
            parts.append(
                f"{len(self.incomplete_ids)} image(s) are missing steps or a valid date"
            )
        super().__init__("; ".join(parts) or "Submission blocked")


class InvalidTransition(StepBatchError):
    """An item was asked to move along an edge the state machine does not define."""

    kind = "invalid_transition"

    def __init__(self, item_id: str, from_status: str, to_status: str) -> None:
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Item {item_id}: cannot move from '{from_status}' to '{to_status}'")


_USER_MESSAGES: dict[str, str] = {
    "network": "Network error. Check your connection and try again.",
    "rate_limit": "Too many requests. Please wait a moment.",
    "timeout": "The request timed out.",
    "validation": "The image or its data was rejected as invalid.",
    "rejected": "The server rejected this request.",
}


def classify_error(error: BaseException) -> StepBatchError:
    """Map any exception onto the taxonomy.

    Already-classified errors pass through unchanged. httpx timeouts become
    RequestTimeout and other httpx transport errors NetworkError; builtin
    timeouts and connection errors follow the same split. Anything else is
    a terminal ServiceRejection.
    """
    if isinstance(error, StepBatchError):
        return error

    import httpx

    if isinstance(error, httpx.TimeoutException) or isinstance(error, TimeoutError):
        classified: StepBatchError = RequestTimeout(str(error) or "timeout")
    elif isinstance(error, (httpx.TransportError, ConnectionError)):
        classified = NetworkError(str(error) or "network failure")
    else:
        classified = ServiceRejection(f"{type(error).__name__}: {error}")
    classified.__cause__ = error
    return classified
