# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

No module redefines these types; batch items, batch results, record filters
and bulk outcomes are all imported from core.models.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

ItemStatus = Literal["pending", "extracting", "review", "submitting", "success", "error"]
Confidence = Literal["high", "medium", "low"]
DayType = Literal["all", "weekday", "weekend"]
ViewContext = Literal["me", "proxy"]
ConflictAction = Literal["keep_existing", "use_incoming", "skip"]


def generate_item_id() -> str:
    """Opaque local identifier, stable for the item's lifetime in a batch."""
    return uuid.uuid4().hex[:9]


# === DATES ===


class DateRange(BaseModel):
    """Inclusive range of YYYY-MM-DD dates."""

    model_config = {"frozen": True}

    start: str
    end: str


# === RECORD FILTERS ===


class RecordFilter(BaseModel):
    """Scope of the committed-records listing (league, owner, proxy, dates)."""

    model_config = {"frozen": True}

    league_id: str | None = None
    view_context: ViewContext = "me"
    user_id: str | None = None
    proxy_member_id: str | None = None
    date_range: DateRange | None = None

    @property
    def is_resolvable(self) -> bool:
        """A proxy view needs a concrete proxy member; otherwise it matches nothing."""
        if self.view_context == "proxy":
            return bool(self.proxy_member_id)
        return True


# === BATCH ITEMS ===


class ExtractedData(BaseModel):
    """Fields derived from a proof image by the extraction service."""

    steps: int | None = None
    date: str | None = None
    distance_km: float | None = None
    calories: int | None = None
    confidence: Confidence = "low"
    notes: str | None = None


class EditedValues(BaseModel):
    """User overrides of the extracted steps/date, mutable while in review."""

    steps: int | None = None
    date: str | None = None


class RetryState(BaseModel):
    """Retry bookkeeping for one item."""

    count: int = 0
    next_retry_at: datetime | None = None
    auto_retrying: bool = False
    retryable: bool | None = None
    last_error: str | None = None
    error_kind: str | None = None
    error_details: dict[str, Any] = Field(default_factory=dict)


class BatchItem(BaseModel):
    """One uploaded proof image undergoing processing."""

    id: str = Field(default_factory=generate_item_id)
    source_path: Path
    filename: str
    content_type: str = "image/jpeg"
    size_bytes: int = 0
    status: ItemStatus = "pending"

    extracted: ExtractedData | None = None
    edited: EditedValues | None = None
    confirmed_low_confidence: bool = False

    proof_ref: str | None = None
    retry: RetryState = Field(default_factory=RetryState)
    submission_id: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def confidence(self) -> Confidence | None:
        return self.extracted.confidence if self.extracted else None

    @property
    def needs_confirmation(self) -> bool:
        """Low-confidence extraction not yet confirmed by the user."""
        return self.confidence == "low" and not self.confirmed_low_confidence

    @property
    def has_cached_extraction(self) -> bool:
        """Extraction data and an uploaded proof are both available for reuse."""
        return self.extracted is not None and self.proof_ref is not None

    def read_source(self) -> bytes:
        return self.source_path.read_bytes()


# === CONFLICTS ===


class ExistingRecord(BaseModel):
    """Stored record already occupying a (user, date) slot."""

    id: str
    steps: int
    verified: bool | None = None
    proof_ref: str | None = None
    created_at: str | None = None


class IncomingRecord(BaseModel):
    """Values the batch is trying to commit for the same date."""

    steps: int
    proof_ref: str | None = None


class ConflictCase(BaseModel):
    """Collision between an incoming commit and an existing record.

    Ephemeral: built when the persistence layer reports a date collision and
    discarded once resolved. ``resolution`` defaults to the recommendation.
    """

    date: str
    existing: ExistingRecord
    incoming: IncomingRecord
    item_id: str | None = None
    resolution: ConflictAction | None = None

    def model_post_init(self, __context: Any) -> None:
        if self.resolution is None:
            self.resolution = self.recommended_action

    @property
    def recommended_action(self) -> ConflictAction:
        from stepbatch.conflicts.resolver import recommend

        return recommend(self).action


# === RESULTS ===


class IntakeReport(BaseModel):
    """Outcome of adding files to a batch."""

    added: list[str] = Field(default_factory=list)
    skipped_non_image: list[str] = Field(default_factory=list)
    truncated: list[str] = Field(default_factory=list)
    warning: str | None = None


class ItemOutcome(BaseModel):
    """Per-item result recorded by a batch operation."""

    item_id: str
    status: ItemStatus
    submission_id: str | None = None
    error: str | None = None
    conflict: bool = False


class BatchResult(BaseModel):
    """Aggregate result of a batch operation over many items."""

    success_count: int = 0
    error_count: int = 0
    conflict_count: int = 0
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    conflicts: list[ConflictCase] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.outcomes)


class BulkOutcome(BaseModel):
    """Result of a bulk mutation over committed records."""

    operation: Literal["delete", "edit_date", "reverify"]
    requested: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)
