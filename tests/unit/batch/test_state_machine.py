# tests/unit/batch/test_state_machine.py — v1
"""Tests for batch/state_machine.py — allowed edges and event reducers."""

from __future__ import annotations

from pathlib import Path

import pytest

from stepbatch.batch.state_machine import (
    CachedExtractionRestored,
    CommitFailed,
    CommitSucceeded,
    ExtractionFailed,
    ExtractionStarted,
    ExtractionSucceeded,
    RetryCancelled,
    RetryExhausted,
    RetryScheduled,
    SubmitStarted,
    apply_event,
    can_transition,
)
from stepbatch.core.errors import InvalidTransition, NetworkError, SubmissionValidationError
from stepbatch.core.models import BatchItem, ExtractedData


def _item(**kwargs) -> BatchItem:
    return BatchItem(id="it1", source_path=Path("p.png"), filename="p.png", **kwargs)


def _extracted(confidence: str = "high") -> ExtractedData:
    return ExtractedData(steps=8000, date="2026-01-10", confidence=confidence)


class TestTransitions:
    @pytest.mark.parametrize(
        "src,dst",
        [
            ("pending", "extracting"),
            ("extracting", "review"),
            ("extracting", "error"),
            ("review", "submitting"),
            ("submitting", "success"),
            ("submitting", "error"),
            ("error", "extracting"),
            ("error", "review"),
        ],
    )
    def test_allowed(self, src, dst):
        assert can_transition(src, dst)

    @pytest.mark.parametrize(
        "src,dst",
        [
            ("pending", "review"),
            ("review", "success"),
            ("success", "error"),
            ("success", "extracting"),
            ("error", "success"),
        ],
    )
    def test_forbidden(self, src, dst):
        assert not can_transition(src, dst)


class TestExtractionEvents:
    def test_success_initializes_edits(self):
        item = _item()
        apply_event(item, ExtractionStarted("it1"))
        apply_event(item, ExtractionSucceeded("it1", "proofs/1.jpg", _extracted()))

        assert item.status == "review"
        assert item.proof_ref == "proofs/1.jpg"
        assert item.edited.steps == 8000
        assert item.edited.date == "2026-01-10"

    def test_failure_records_error_and_keeps_proof(self):
        item = _item(status="extracting")
        apply_event(item, ExtractionFailed("it1", NetworkError("offline"), proof_ref="proofs/2.jpg"))

        assert item.status == "error"
        assert item.proof_ref == "proofs/2.jpg"
        assert item.retry.retryable is True
        assert item.retry.error_kind == "network"
        assert item.retry.last_error.startswith("Network error")
        assert item.retry.error_details["message"] == "offline"

    def test_terminal_failure_not_retryable(self):
        item = _item(status="extracting")
        apply_event(item, ExtractionFailed("it1", SubmissionValidationError("bad image", status_code=422)))
        assert item.retry.retryable is False
        assert item.retry.error_details["status_code"] == 422

    def test_restart_can_discard_extraction(self):
        item = _item(status="error", extracted=_extracted(), proof_ref="p", confirmed_low_confidence=True)
        apply_event(item, ExtractionStarted("it1", discard_extraction=True))
        assert item.status == "extracting"
        assert item.extracted is None
        assert item.proof_ref == "p"
        assert not item.confirmed_low_confidence

    def test_wrong_item_rejected(self):
        with pytest.raises(ValueError):
            apply_event(_item(), ExtractionStarted("other"))

    def test_invalid_edge_raises(self):
        with pytest.raises(InvalidTransition):
            apply_event(_item(), ExtractionSucceeded("it1", "p", _extracted()))


class TestRetryEvents:
    def test_scheduled_increments_count(self):
        item = _item(status="error")
        apply_event(item, RetryScheduled("it1", delay_s=5))
        assert item.retry.count == 1
        assert item.retry.auto_retrying
        assert item.retry.next_retry_at is not None

    def test_scheduled_requires_error(self):
        with pytest.raises(InvalidTransition):
            apply_event(_item(status="review"), RetryScheduled("it1", delay_s=5))

    def test_exhausted_stops_auto_retry(self):
        item = _item(status="error")
        apply_event(item, RetryScheduled("it1", delay_s=0))
        apply_event(item, RetryExhausted("it1"))
        assert not item.retry.auto_retrying
        assert item.retry.count == 1

    def test_cancel_resets_count(self):
        item = _item(status="error")
        apply_event(item, RetryScheduled("it1", delay_s=0))
        apply_event(item, RetryCancelled("it1", reset_count=True))
        assert item.retry.count == 0
        assert item.retry.next_retry_at is None


class TestSubmitEvents:
    def test_low_confidence_blocks_submit(self):
        item = _item(status="review", extracted=_extracted("low"))
        with pytest.raises(InvalidTransition):
            apply_event(item, SubmitStarted("it1"))

    def test_confirmed_low_confidence_submits(self):
        item = _item(status="review", extracted=_extracted("low"), confirmed_low_confidence=True)
        apply_event(item, SubmitStarted("it1"))
        assert item.status == "submitting"

    def test_commit_success(self):
        item = _item(status="submitting", extracted=_extracted())
        apply_event(item, CommitSucceeded("it1", "sub-1"))
        assert item.status == "success"
        assert item.submission_id == "sub-1"

    def test_commit_failure_keeps_cached_extraction(self):
        item = _item(status="submitting", extracted=_extracted(), proof_ref="p")
        apply_event(item, CommitFailed("it1", NetworkError("offline")))
        assert item.status == "error"
        assert item.has_cached_extraction

    def test_cached_restore(self):
        item = _item(status="error", extracted=_extracted(), proof_ref="p")
        item.retry.last_error = "boom"
        apply_event(item, CachedExtractionRestored("it1"))
        assert item.status == "review"
        assert item.retry.last_error is None

    def test_cached_restore_needs_cache(self):
        with pytest.raises(InvalidTransition):
            apply_event(_item(status="error"), CachedExtractionRestored("it1"))
