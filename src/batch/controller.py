# src/batch/controller.py — v1
"""Batch controller: owns the items and drives them one at a time.

Items live in an insertion-ordered map keyed by item id. Every status change
goes through state_machine.apply_event(). Network work (extraction, commits,
fired auto-retries) runs under a single asyncio.Lock, so at most one pipeline
or commit call is in flight and a firing retry queues behind it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from stepbatch.api.models import CommitRequest
from stepbatch.batch.retry import RetryPolicy, RetryScheduler
from stepbatch.batch.review import ReviewGate
from stepbatch.batch.state_machine import (
    CachedExtractionRestored,
    CommitFailed,
    CommitSucceeded,
    ExtractionFailed,
    ExtractionStarted,
    ExtractionSucceeded,
    ItemEvent,
    RetryCancelled,
    RetryExhausted,
    RetryScheduled,
    SubmitStarted,
    apply_event,
)
from stepbatch.conflicts.resolver import ConflictResolver, ResolutionResult
from stepbatch.core.errors import ConflictDetected, ServiceRejection, StepBatchError, classify_error
from stepbatch.core.models import (
    BatchItem,
    BatchResult,
    ConflictCase,
    IncomingRecord,
    IntakeReport,
    ItemOutcome,
    ItemStatus,
)
from stepbatch.extraction.compressor import detect_media_type
from stepbatch.extraction.pipeline import ExtractionPipeline, PipelineError
from stepbatch.logging.context import set_batch_context, set_item_context

if TYPE_CHECKING:
    from stepbatch.api.base_gateway import BaseGateway
    from stepbatch.config.settings import Settings

logger = logging.getLogger(__name__)


class BatchController:
    """Coordinates a batch of proof images from intake to commit.

    Args:
        gateway: Backend for upload, extraction and commits.
        settings: Limits, delays and retry policy.
        proxy_member_id: Submit on behalf of this proxy member.
        today: Reference date for review validation (defaults to today).
    """

    def __init__(
        self,
        gateway: BaseGateway,
        settings: Settings,
        proxy_member_id: str | None = None,
        today: date | None = None,
    ) -> None:
        self.batch_id = uuid.uuid4().hex[:8]
        self._gateway = gateway
        self._settings = settings
        self._proxy_member_id = proxy_member_id
        self._today = today
        self._items: dict[str, BatchItem] = {}
        self._conflicts: dict[str, ConflictCase] = {}
        self._lock = asyncio.Lock()

        self.pipeline = ExtractionPipeline(gateway, settings)
        self.scheduler = RetryScheduler(RetryPolicy.from_settings(settings))
        self.review = ReviewGate(today)
        self.resolver = ConflictResolver(
            gateway,
            league_id=settings.league_id or None,
            proxy_member_id=proxy_member_id,
        )

    # --- Collection ---

    @property
    def items(self) -> list[BatchItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> BatchItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise KeyError(f"No item {item_id} in batch {self.batch_id}") from None

    def by_status(self, *statuses: ItemStatus) -> list[BatchItem]:
        return [item for item in self._items.values() if item.status in statuses]

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self._items.values():
            counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    @property
    def pending_conflicts(self) -> list[ConflictCase]:
        return list(self._conflicts.values())

    def add_files(self, paths: Iterable[str | Path]) -> IntakeReport:
        """Add image files to the batch, up to the configured maximum.

        Non-image files are skipped. When more images are given than free
        slots remain, the first ones are kept and the rest reported as
        truncated.
        """
        report = IntakeReport()
        limit = self._settings.max_batch_uploads
        images: list[tuple[Path, str]] = []
        for raw in paths:
            path = Path(raw)
            media_type = detect_media_type(path)
            if media_type is None:
                report.skipped_non_image.append(str(path))
                continue
            images.append((path, media_type))

        free = max(limit - len(self._items), 0)
        for path, media_type in images[:free]:
            item = BatchItem(
                source_path=path,
                filename=path.name,
                content_type=media_type,
                size_bytes=path.stat().st_size,
            )
            self._items[item.id] = item
            report.added.append(item.id)
        report.truncated = [str(path) for path, _ in images[free:]]

        if report.truncated:
            if free == 0:
                report.warning = f"Maximum {limit} images per batch"
            else:
                report.warning = f"Only {free} images added (max {limit} per batch)"
            logger.warning(report.warning)
        if report.skipped_non_image:
            logger.info("Skipped %d non-image files", len(report.skipped_non_image))
        logger.info("Added %d items to batch %s", len(report.added), self.batch_id)
        return report

    def remove_item(self, item_id: str) -> BatchItem:
        """Drop an item and cancel its pending auto-retry.

        Raises:
            ValueError: The item is already submitting.
        """
        item = self.get(item_id)
        if item.status == "submitting":
            raise ValueError(f"Item {item_id} is being submitted and cannot be removed")
        self.scheduler.cancel(item_id)
        del self._items[item_id]
        self._conflicts.pop(item_id, None)
        logger.info("Removed item %s", item_id)
        return item

    def reset(self) -> None:
        """Clear the whole batch."""
        self.scheduler.cancel_all()
        self._items.clear()
        self._conflicts.clear()
        logger.debug("Batch %s reset", self.batch_id)

    def apply(self, event: ItemEvent) -> BatchItem | None:
        """Apply one event; events for removed items are dropped."""
        item = self._items.get(event.item_id)
        if item is None:
            logger.debug("Dropping %s for removed item %s", type(event).__name__, event.item_id)
            return None
        return apply_event(item, event)

    # --- Review (delegates to ReviewGate) ---

    def edit_steps(self, item_id: str, steps: int) -> None:
        self.review.edit_steps(self.get(item_id), steps)
        self._drop_checked_conflict(item_id)

    def edit_date(self, item_id: str, value: str) -> None:
        self.review.edit_date(self.get(item_id), value)
        self._drop_checked_conflict(item_id)

    def confirm_low_confidence(self, item_id: str, confirmed: bool = True) -> None:
        self.review.confirm_low_confidence(self.get(item_id), confirmed)

    def _drop_checked_conflict(self, item_id: str) -> None:
        # Edited values invalidate a conflict found by check_conflicts().
        if self._conflicts.pop(item_id, None) is not None:
            logger.info("Item %s edited; its checked conflict was discarded", item_id)

    # --- Extraction ---

    async def extract_all(self) -> BatchResult:
        """Run every pending item through the pipeline, in order.

        Retryable failures are handed to the retry scheduler; terminal ones
        settle in ``error`` with ``retryable=False``.
        """
        set_batch_context(self.batch_id, operation="extract")
        started = time.monotonic()
        ids = [item.id for item in self.by_status("pending")]
        logger.info("Extracting %d items", len(ids))

        outcomes = await self._run_sequential(ids, self._extract_one)
        result = self._summarize(outcomes, started, success_status="review")
        logger.info(
            "Extraction done: %d ready for review, %d failed (%.1fs)",
            result.success_count, result.error_count, result.duration_seconds,
        )
        return result

    async def _extract_one(self, item_id: str, discard_extraction: bool = False) -> ItemOutcome | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status not in ("pending", "error"):
                return None
            set_item_context(item_id)
            try:
                self.apply(ExtractionStarted(item_id, discard_extraction=discard_extraction))
                try:
                    result = await self.pipeline.run(item, reference=self._today)
                except PipelineError as e:
                    self.apply(ExtractionFailed(item_id, e.error, proof_ref=e.proof_ref))
                    self._after_extraction_failure(item_id, e.error)
                else:
                    self.apply(ExtractionSucceeded(item_id, result.proof_ref, result.extracted))
                if item_id not in self._items:
                    logger.debug("Item %s removed during extraction", item_id)
                    return None
                return self._outcome(item)
            finally:
                set_item_context(None)

    def _after_extraction_failure(self, item_id: str, error: StepBatchError) -> None:
        item = self._items.get(item_id)
        if item is None:
            return
        policy = self.scheduler.policy
        if policy.should_retry(error, item.retry.count):
            delay = self.scheduler.schedule(
                item_id, item.retry.count, lambda: self._fire_auto_retry(item_id),
            )
            self.apply(RetryScheduled(item_id, delay))
        elif error.retryable:
            self.apply(RetryExhausted(item_id))

    async def _fire_auto_retry(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is None or item.status != "error" or not item.retry.auto_retrying:
            return
        logger.info("Item %s: auto-retry %d firing", item_id, item.retry.count)
        await self._extract_one(item_id)

    async def wait_for_retries(self) -> None:
        """Block until every armed auto-retry has fired and finished."""
        await self.scheduler.wait_idle()

    # --- Manual retry ---

    async def retry_submit_only(self, item_id: str) -> ItemOutcome:
        """Restore an errored item with cached extraction straight to review."""
        item = self._require_error(item_id)
        if not item.has_cached_extraction:
            raise ValueError(f"Item {item_id} has no cached extraction to reuse")
        self._cancel_auto_retry(item_id)
        self.apply(CachedExtractionRestored(item_id))
        logger.info("Item %s restored to review from cache", item_id)
        return self._outcome(item)

    async def retry_full_extraction(self, item_id: str) -> ItemOutcome:
        """Re-run extraction, reusing an uploaded proof but not cached fields."""
        item = self._require_error(item_id)
        self._cancel_auto_retry(item_id)
        outcome = await self._extract_one(item_id, discard_extraction=True)
        return outcome or self._outcome(item)

    async def retry_item(self, item_id: str, force_extract: bool = False) -> ItemOutcome:
        """Manual retry: submit-only when cached data exists, unless forced."""
        item = self._require_error(item_id)
        if item.retry.retryable is False:
            raise ValueError(f"Item {item_id} failed with a terminal error and cannot be retried")
        if item.has_cached_extraction and not force_extract:
            return await self.retry_submit_only(item_id)
        return await self.retry_full_extraction(item_id)

    async def retry_all_failed(self) -> BatchResult:
        """Manually retry every retryable failed item, in order."""
        set_batch_context(self.batch_id, operation="retry")
        started = time.monotonic()
        ids = [item.id for item in self.by_status("error") if item.retry.retryable]
        logger.info("Retrying %d failed items", len(ids))
        outcomes = await self._run_sequential(ids, self._retry_if_failed)
        return self._summarize(outcomes, started, success_status="review")

    async def _retry_if_failed(self, item_id: str) -> ItemOutcome | None:
        # An auto-retry may have settled the item since the id list was taken.
        item = self._items.get(item_id)
        if item is None or item.status != "error":
            return None
        return await self.retry_item(item_id)

    def _require_error(self, item_id: str) -> BatchItem:
        item = self.get(item_id)
        if item.status != "error":
            raise ValueError(f"Item {item_id} is not in error (status={item.status})")
        return item

    def _cancel_auto_retry(self, item_id: str) -> None:
        self.scheduler.cancel(item_id)
        self.apply(RetryCancelled(item_id, reset_count=True))

    # --- Submission ---

    async def check_conflicts(self) -> list[ConflictCase]:
        """Ask the backend which review items would collide with stored records.

        Colliding items stay in ``review`` and are held back by
        submit_reviewed(); apply a resolution with resolve_conflicts().
        Editing a held item discards its conflict.
        """
        candidates: list[tuple[BatchItem, int, str]] = []
        for item in self.by_status("review"):
            if item.id in self._conflicts or not self.review.is_complete(item):
                continue
            steps, value = self.review.commit_values(item)
            if steps is not None and value is not None:
                candidates.append((item, steps, value))
        if not candidates:
            return []

        set_batch_context(self.batch_id, operation="check_conflicts")
        dates = sorted({value for _, _, value in candidates})
        async with self._lock:
            response = await self._gateway.check_conflicts(dates, self._settings.league_id or None)
        existing = {c.date: c.existing.as_existing() for c in response.conflicts}

        found: list[ConflictCase] = []
        for item, steps, value in candidates:
            if value not in existing:
                continue
            case = ConflictCase(
                date=value,
                existing=existing[value],
                incoming=IncomingRecord(steps=steps, proof_ref=item.proof_ref),
                item_id=item.id,
            )
            self._conflicts[item.id] = case
            found.append(case)
        logger.info("Conflict check: %d of %d items collide", len(found), len(candidates))
        return found

    async def submit_reviewed(self) -> BatchResult:
        """Commit every review item, in order.

        Items holding a conflict from check_conflicts() are not committed;
        they are reported as conflicts in the result.

        Raises:
            SubmissionBlocked: Some review item is unconfirmed low confidence
                or incomplete. Nothing is committed.
        """
        reviewed = self.by_status("review")
        if not reviewed:
            return BatchResult()
        self.review.ensure_committable(reviewed)

        set_batch_context(self.batch_id, operation="submit")
        started = time.monotonic()
        held = [item for item in reviewed if item.id in self._conflicts]
        ready = [item.id for item in reviewed if item.id not in self._conflicts]
        logger.info("Submitting %d items (%d held for conflict resolution)", len(ready), len(held))
        outcomes = [ItemOutcome(item_id=item.id, status=item.status, conflict=True) for item in held]
        outcomes += await self._run_sequential(ready, self._commit_one)
        result = self._summarize(outcomes, started, success_status="success")
        logger.info(
            "Submission done: %d succeeded, %d failed, %d conflicts (%.1fs)",
            result.success_count, result.error_count, result.conflict_count,
            result.duration_seconds,
        )
        return result

    async def _commit_one(self, item_id: str) -> ItemOutcome | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != "review":
                return None
            set_item_context(item_id)
            try:
                steps, value = self.review.commit_values(item)
                self.apply(SubmitStarted(item_id))
                request = CommitRequest(
                    date=value,
                    steps=steps,
                    proof_ref=item.proof_ref,
                    overwrite=self._settings.commit_overwrite,
                    league_id=self._settings.league_id or None,
                    proxy_member_id=self._proxy_member_id,
                )
                try:
                    response = await self._gateway.commit(request)
                except ConflictDetected as c:
                    case = ConflictCase(
                        date=c.date or request.date,
                        existing=c.existing,
                        incoming=IncomingRecord(steps=request.steps, proof_ref=request.proof_ref),
                        item_id=item_id,
                    )
                    self._conflicts[item_id] = case
                    logger.info(
                        "Conflict on %s with record %s (recommended: %s)",
                        case.date, c.existing.id, case.resolution,
                    )
                    return ItemOutcome(item_id=item_id, status=item.status, conflict=True)
                except Exception as e:  # noqa: BLE001
                    self.apply(CommitFailed(item_id, classify_error(e)))
                else:
                    self.apply(CommitSucceeded(item_id, response.id))
                return self._outcome(item)
            finally:
                set_item_context(None)

    async def resolve_conflicts(
        self, cases: list[ConflictCase] | None = None,
    ) -> list[ResolutionResult]:
        """Apply the chosen resolution of each conflict independently.

        ``use_incoming`` overwrites the existing record and ``keep_existing``
        points the item at it; both settle the item in ``success``. ``skip``
        drops the item from the batch. A failed overwrite moves the item to
        ``error``.

        Raises:
            SubmissionBlocked: A held review item that would be written is
                unconfirmed low confidence or incomplete. Nothing is applied.
        """
        if cases is None:
            cases = self.pending_conflicts
        else:
            # Cases already resolved or belonging to removed items are ignored.
            cases = [case for case in cases if case.item_id is None or case.item_id in self._conflicts]
        held: list[BatchItem] = []
        for case in cases:
            item = self._items.get(case.item_id) if case.item_id else None
            if item is not None and item.status == "review" and case.resolution != "skip":
                held.append(item)
        self.review.ensure_committable(held)

        set_batch_context(self.batch_id, operation="resolve")
        async with self._lock:
            results = await self.resolver.resolve_all(cases)

        for case, result in zip(cases, results):
            item_id = case.item_id
            if item_id is None or item_id not in self._items:
                continue
            self._conflicts.pop(item_id, None)
            if result.success and result.action == "skip":
                del self._items[item_id]
                logger.info("Item %s skipped and dropped from batch", item_id)
                continue
            if self._items[item_id].status == "review":
                self.apply(SubmitStarted(item_id))
            if result.success:
                self.apply(CommitSucceeded(item_id, result.record_id or case.existing.id))
            else:
                error = result.error or ServiceRejection(result.message or "Resolution failed")
                self.apply(CommitFailed(item_id, classify_error(error)))
        return results

    # --- Internals ---

    async def _run_sequential(
        self, ids: list[str], step: Callable[[str], Awaitable[ItemOutcome | None]],
    ) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        for index, item_id in enumerate(ids):
            if item_id not in self._items:
                continue
            outcome = await step(item_id)
            if outcome is not None:
                outcomes.append(outcome)
            if index < len(ids) - 1 and self._settings.inter_item_delay_s > 0:
                await asyncio.sleep(self._settings.inter_item_delay_s)
        return outcomes

    @staticmethod
    def _outcome(item: BatchItem) -> ItemOutcome:
        return ItemOutcome(
            item_id=item.id,
            status=item.status,
            submission_id=item.submission_id,
            error=item.retry.last_error if item.status == "error" else None,
        )

    def _summarize(
        self, outcomes: list[ItemOutcome], started: float, success_status: ItemStatus,
    ) -> BatchResult:
        conflicts = [
            self._conflicts[o.item_id] for o in outcomes
            if o.conflict and o.item_id in self._conflicts
        ]
        return BatchResult(
            success_count=sum(1 for o in outcomes if o.status == success_status),
            error_count=sum(1 for o in outcomes if o.status == "error"),
            conflict_count=len(conflicts),
            outcomes=outcomes,
            conflicts=conflicts,
            duration_seconds=round(time.monotonic() - started, 3),
        )
