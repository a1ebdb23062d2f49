# src/api/models.py — v1
"""Wire models exchanged with the submissions backend.

Field aliases follow the backend's JSON names (``proof_path``, ``for_date``,
``extracted_steps``...). Models accept either the alias or the field name.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from stepbatch.core.models import ConflictAction, Confidence, ExistingRecord


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UploadTarget(_Wire):
    """Signed upload slot for one proof image."""

    upload_url: str
    path: str


class ExtractionResponse(_Wire):
    """Raw extraction service output for one proof."""

    steps: int | None = Field(default=None, alias="extracted_steps")
    date: str | None = Field(default=None, alias="extracted_date")
    distance_km: float | None = Field(default=None, alias="extracted_km")
    calories: int | None = Field(default=None, alias="extracted_calories")
    confidence: Confidence = "low"
    notes: str | None = None


class CommitRequest(_Wire):
    """Create (or overwrite) the record for one date."""

    date: str
    steps: int
    proof_ref: str | None = Field(default=None, alias="proof_path")
    overwrite: bool = False
    league_id: str | None = None
    proxy_member_id: str | None = None


class CommitResponse(_Wire):
    id: str
    verified: bool | None = None


class RecordSummary(_Wire):
    """One committed record as returned by the listing endpoint."""

    id: str
    date: str = Field(alias="for_date")
    steps: int
    verified: bool | None = None
    proof_ref: str | None = Field(default=None, alias="proof_path")
    user_id: str | None = None
    league_id: str | None = None
    created_at: str | None = None

    def as_existing(self) -> ExistingRecord:
        return ExistingRecord(
            id=self.id, steps=self.steps, verified=self.verified,
            proof_ref=self.proof_ref, created_at=self.created_at,
        )


class RecordPage(_Wire):
    items: list[RecordSummary] = Field(default_factory=list, alias="submissions")
    total: int = 0


class BulkItemResult(_Wire):
    id: str
    success: bool
    error: str | None = None


class BulkResponse(_Wire):
    """Aggregate (``count``) and, where supported, per-id results."""

    success: bool = True
    count: int = 0
    results: list[BulkItemResult] = Field(default_factory=list)


# === CONFLICT CHECK / RESOLVE ===


class DateConflict(_Wire):
    date: str
    existing: RecordSummary
    source: str | None = None


class ConflictCheckResponse(_Wire):
    """Which of the requested dates already hold a record."""

    has_conflicts: bool = False
    conflicts: list[DateConflict] = Field(default_factory=list)
    conflict_dates: list[str] = Field(default_factory=list)


class IncomingData(_Wire):
    steps: int
    proof_ref: str | None = Field(default=None, alias="proof_path")


class ResolutionEntry(_Wire):
    date: str
    action: ConflictAction
    incoming: IncomingData | None = Field(default=None, alias="incoming_data")


class ResolveRequest(_Wire):
    """Apply several conflict resolutions in one call."""

    resolutions: list[ResolutionEntry]
    league_id: str | None = None
    proxy_member_id: str | None = None


class ResolutionRowResult(_Wire):
    date: str
    action: ConflictAction
    success: bool
    message: str = ""
    record_id: str | None = Field(default=None, alias="submission_id")


class ResolveResponse(_Wire):
    """Per-row results, in request order."""

    resolved: int = 0
    total: int = 0
    results: list[ResolutionRowResult] = Field(default_factory=list)
