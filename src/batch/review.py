# src/batch/review.py — v1
"""Review phase: user edits and the low-confidence commit block.

Items reach ``review`` with ``edited`` initialized from ``extracted``. Edits
are accepted only while an item is in review. A low-confidence item blocks
the whole submit until the user confirms it; medium and high confidence never
block but are reported by confidence_summary().
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from typing import Iterable

from stepbatch.core.dates import is_valid_submission_date
from stepbatch.core.errors import SubmissionBlocked
from stepbatch.core.models import BatchItem, EditedValues

logger = logging.getLogger(__name__)


class ReviewGate:
    """Holds the edit/confirm rules for items in ``review``."""

    def __init__(self, today: date | None = None) -> None:
        self._today = today

    # --- Edits ---

    def edit_steps(self, item: BatchItem, steps: int) -> None:
        self._require_review(item)
        if steps < 0:
            raise ValueError(f"Steps must be >= 0, got {steps}")
        self._edited(item).steps = steps
        logger.debug("Item %s: steps edited to %d", item.id, steps)

    def edit_date(self, item: BatchItem, value: str) -> None:
        self._require_review(item)
        if not is_valid_submission_date(value, self._today):
            raise ValueError(f"Date must be YYYY-MM-DD and not in the future, got {value!r}")
        self._edited(item).date = value
        logger.debug("Item %s: date edited to %s", item.id, value)

    def confirm_low_confidence(self, item: BatchItem, confirmed: bool = True) -> None:
        self._require_review(item)
        item.confirmed_low_confidence = confirmed
        logger.debug("Item %s: low-confidence confirmation=%s", item.id, confirmed)

    # --- Commit gating ---

    def commit_values(self, item: BatchItem) -> tuple[int | None, str | None]:
        """Steps and date that would be committed (edits win over extraction)."""
        edited = item.edited or EditedValues()
        extracted = item.extracted
        steps = edited.steps if edited.steps is not None else (extracted.steps if extracted else None)
        value = edited.date if edited.date is not None else (extracted.date if extracted else None)
        return steps, value

    def is_complete(self, item: BatchItem) -> bool:
        steps, value = self.commit_values(item)
        if steps is None or steps < 0:
            return False
        return value is not None and is_valid_submission_date(value, self._today)

    def blocking_items(self, items: Iterable[BatchItem]) -> tuple[list[str], list[str]]:
        """(unconfirmed low-confidence ids, incomplete ids) among review items."""
        low: list[str] = []
        incomplete: list[str] = []
        for item in items:
            if item.status != "review":
                continue
            if item.needs_confirmation:
                low.append(item.id)
            if not self.is_complete(item):
                incomplete.append(item.id)
        return low, incomplete

    def ensure_committable(self, items: Iterable[BatchItem]) -> None:
        """Refuse the whole submit while any review item is blocked.

        Raises:
            SubmissionBlocked: Listing every blocking item.
        """
        low, incomplete = self.blocking_items(items)
        if low or incomplete:
            logger.warning(
                "Submit blocked: %d low-confidence unconfirmed, %d incomplete",
                len(low), len(incomplete),
            )
            raise SubmissionBlocked(low_confidence_ids=low, incomplete_ids=incomplete)

    @staticmethod
    def confidence_summary(items: Iterable[BatchItem]) -> dict[str, int]:
        counts = Counter(item.confidence for item in items if item.confidence is not None)
        return {level: counts.get(level, 0) for level in ("high", "medium", "low")}

    # --- Internals ---

    @staticmethod
    def _require_review(item: BatchItem) -> None:
        if item.status != "review":
            raise ValueError(f"Item {item.id} is not in review (status={item.status})")

    @staticmethod
    def _edited(item: BatchItem) -> EditedValues:
        if item.edited is None:
            item.edited = EditedValues()
        return item.edited
