# src/batch/state_machine.py — v1
"""Per-item status transitions driven by events.

Timers and network callbacks never touch a BatchItem directly: they build an
event and the BatchController applies it with apply_event(), one at a time.

    pending -> extracting -> review -> submitting -> success
                   |                      |
                   v                      v
                 error  <-----------------+
                   |
                   +-> extracting (retry)  +-> review (cached extraction)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from stepbatch.core.errors import InvalidTransition, StepBatchError
from stepbatch.core.models import BatchItem, EditedValues, ExtractedData, ItemStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    "pending": frozenset({"extracting"}),
    "extracting": frozenset({"review", "error"}),
    "review": frozenset({"submitting"}),
    "submitting": frozenset({"success", "error"}),
    "error": frozenset({"extracting", "review"}),
    "success": frozenset(),
}


def can_transition(from_status: ItemStatus, to_status: ItemStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def transition(item: BatchItem, to_status: ItemStatus) -> None:
    """Move ``item`` to ``to_status`` or raise InvalidTransition."""
    if not can_transition(item.status, to_status):
        raise InvalidTransition(item.id, item.status, to_status)
    logger.debug("Item %s: %s -> %s", item.id, item.status, to_status)
    item.status = to_status


# === EVENTS ===


@dataclass(frozen=True)
class ExtractionStarted:
    item_id: str
    discard_extraction: bool = False


@dataclass(frozen=True)
class ExtractionSucceeded:
    item_id: str
    proof_ref: str
    extracted: ExtractedData


@dataclass(frozen=True)
class ExtractionFailed:
    item_id: str
    error: StepBatchError
    proof_ref: str | None = None


@dataclass(frozen=True)
class RetryScheduled:
    """An automatic retry was armed; the item waits in ``error``."""

    item_id: str
    delay_s: float
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RetryExhausted:
    item_id: str


@dataclass(frozen=True)
class RetryCancelled:
    item_id: str
    reset_count: bool = False


@dataclass(frozen=True)
class CachedExtractionRestored:
    """Manual submit-only retry: back to review without re-extracting."""

    item_id: str


@dataclass(frozen=True)
class SubmitStarted:
    item_id: str


@dataclass(frozen=True)
class CommitSucceeded:
    item_id: str
    submission_id: str


@dataclass(frozen=True)
class CommitFailed:
    item_id: str
    error: StepBatchError


ItemEvent = (
    ExtractionStarted | ExtractionSucceeded | ExtractionFailed | RetryScheduled
    | RetryExhausted | RetryCancelled | CachedExtractionRestored | SubmitStarted
    | CommitSucceeded | CommitFailed
)


# === REDUCER ===


def _on_extraction_started(item: BatchItem, event: ExtractionStarted) -> None:
    transition(item, "extracting")
    item.retry.next_retry_at = None
    if event.discard_extraction:
        item.extracted = None
        item.edited = None
        item.confirmed_low_confidence = False


def _on_extraction_succeeded(item: BatchItem, event: ExtractionSucceeded) -> None:
    transition(item, "review")
    item.proof_ref = event.proof_ref
    item.extracted = event.extracted
    item.edited = EditedValues(steps=event.extracted.steps, date=event.extracted.date)
    item.confirmed_low_confidence = False
    _clear_error(item)


def _on_extraction_failed(item: BatchItem, event: ExtractionFailed) -> None:
    transition(item, "error")
    if event.proof_ref is not None:
        item.proof_ref = event.proof_ref
    _record_error(item, event.error)


def _on_retry_scheduled(item: BatchItem, event: RetryScheduled) -> None:
    if item.status != "error":
        raise InvalidTransition(item.id, item.status, "error")
    item.retry.count += 1
    item.retry.auto_retrying = True
    item.retry.next_retry_at = event.at + timedelta(seconds=event.delay_s)
    item.retry.error_details["retries_attempted"] = item.retry.count


def _on_retry_exhausted(item: BatchItem, event: RetryExhausted) -> None:
    item.retry.auto_retrying = False
    item.retry.next_retry_at = None
    logger.warning("Item %s: automatic retries exhausted after %d", item.id, item.retry.count)


def _on_retry_cancelled(item: BatchItem, event: RetryCancelled) -> None:
    item.retry.auto_retrying = False
    item.retry.next_retry_at = None
    if event.reset_count:
        item.retry.count = 0


def _on_cached_restored(item: BatchItem, event: CachedExtractionRestored) -> None:
    if not item.has_cached_extraction:
        raise InvalidTransition(item.id, item.status, "review")
    transition(item, "review")
    _clear_error(item)


def _on_submit_started(item: BatchItem, event: SubmitStarted) -> None:
    if item.needs_confirmation:
        raise InvalidTransition(item.id, item.status, "submitting")
    transition(item, "submitting")


def _on_commit_succeeded(item: BatchItem, event: CommitSucceeded) -> None:
    transition(item, "success")
    item.submission_id = event.submission_id
    _clear_error(item)


def _on_commit_failed(item: BatchItem, event: CommitFailed) -> None:
    transition(item, "error")
    _record_error(item, event.error)


_HANDLERS: dict[type, Callable[[BatchItem, object], None]] = {
    ExtractionStarted: _on_extraction_started,  # type: ignore[dict-item]
    ExtractionSucceeded: _on_extraction_succeeded,  # type: ignore[dict-item]
    ExtractionFailed: _on_extraction_failed,  # type: ignore[dict-item]
    RetryScheduled: _on_retry_scheduled,  # type: ignore[dict-item]
    RetryExhausted: _on_retry_exhausted,  # type: ignore[dict-item]
    RetryCancelled: _on_retry_cancelled,  # type: ignore[dict-item]
    CachedExtractionRestored: _on_cached_restored,  # type: ignore[dict-item]
    SubmitStarted: _on_submit_started,  # type: ignore[dict-item]
    CommitSucceeded: _on_commit_succeeded,  # type: ignore[dict-item]
    CommitFailed: _on_commit_failed,  # type: ignore[dict-item]
}


def apply_event(item: BatchItem, event: ItemEvent) -> BatchItem:
    """Apply one event to ``item`` in place and return it.

    Raises:
        InvalidTransition: The event implies an edge the machine does not define.
    """
    if event.item_id != item.id:
        raise ValueError(f"Event for {event.item_id} applied to item {item.id}")
    handler = _HANDLERS[type(event)]
    handler(item, event)
    return item


def _record_error(item: BatchItem, error: StepBatchError) -> None:
    item.retry.retryable = error.retryable
    item.retry.last_error = error.user_message
    item.retry.error_kind = error.kind
    item.retry.error_details = {
        "message": str(error),
        "kind": error.kind,
        "status_code": error.status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retries_attempted": item.retry.count,
    }
    logger.warning("Item %s failed (%s): %s", item.id, error.kind, error)


def _clear_error(item: BatchItem) -> None:
    item.retry.retryable = None
    item.retry.last_error = None
    item.retry.error_kind = None
    item.retry.error_details = {}
    item.retry.auto_retrying = False
    item.retry.next_retry_at = None
