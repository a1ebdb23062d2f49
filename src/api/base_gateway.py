# src/api/base_gateway.py — v1
"""Abstract interface to the submissions backend.

Implementations raise errors from stepbatch.core.errors: a commit that
collides with an existing record raises ConflictDetected, transport problems
raise NetworkError/RequestTimeout, and so on. Bulk mutations always take an
explicit id list, never a filter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from stepbatch.api.models import (
    BulkResponse,
    CommitRequest,
    CommitResponse,
    ConflictCheckResponse,
    ExtractionResponse,
    RecordPage,
    ResolveRequest,
    ResolveResponse,
    UploadTarget,
)
from stepbatch.core.models import RecordFilter


class BaseGateway(ABC):
    """Unified interface for the upload, extraction and record endpoints."""

    @abstractmethod
    async def sign_upload(self, content_type: str) -> UploadTarget:
        """Request an upload slot for a proof image."""

    @abstractmethod
    async def upload(self, upload_url: str, data: bytes, content_type: str) -> None:
        """PUT the (compressed) image bytes to a signed upload URL."""

    @abstractmethod
    async def extract(
        self, proof_ref: str, context_hint: str | None = None, league_id: str | None = None,
    ) -> ExtractionResponse:
        """Run the extraction service on a stored proof."""

    @abstractmethod
    async def commit(self, request: CommitRequest) -> CommitResponse:
        """Create the record for a date (or overwrite it when requested)."""

    @abstractmethod
    async def check_conflicts(
        self, dates: list[str], league_id: str | None = None,
    ) -> ConflictCheckResponse:
        """Report which dates already hold a record, before committing."""

    @abstractmethod
    async def resolve_conflicts(self, request: ResolveRequest) -> ResolveResponse:
        """Apply several conflict resolutions; results come back per row."""

    @abstractmethod
    async def delete_records(self, ids: list[str]) -> BulkResponse:
        """Delete records by id."""

    @abstractmethod
    async def patch_record_date(self, record_id: str, new_date: str, reason: str) -> None:
        """Move one record to another date."""

    @abstractmethod
    async def reverify(self, ids: list[str]) -> BulkResponse:
        """Re-run verification on records by id."""

    @abstractmethod
    async def list_records(
        self, record_filter: RecordFilter, limit: int, offset: int = 0,
    ) -> RecordPage:
        """One page of committed records matching a filter, plus the total count."""

    async def aclose(self) -> None:
        """Release network resources (no-op by default)."""
