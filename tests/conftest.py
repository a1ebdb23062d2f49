# tests/conftest.py — v1
"""Shared test fixtures for all unit and integration tests.

Provides a scripted in-memory gateway, fast settings (no delays) and small
proof images written under tmp_path. No network access.
"""

from __future__ import annotations

from collections import defaultdict, deque
from datetime import date
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from stepbatch.api.base_gateway import BaseGateway
from stepbatch.api.models import (
    BulkItemResult,
    BulkResponse,
    CommitRequest,
    CommitResponse,
    ConflictCheckResponse,
    DateConflict,
    ExtractionResponse,
    RecordPage,
    RecordSummary,
    ResolutionRowResult,
    ResolveRequest,
    ResolveResponse,
    UploadTarget,
)
from stepbatch.config.settings import Settings
from stepbatch.core.errors import ConflictDetected, ServiceRejection
from stepbatch.core.models import ExistingRecord, RecordFilter

TODAY = date(2026, 1, 20)


# === FAKE GATEWAY ===


class FakeGateway(BaseGateway):
    """In-memory backend with scripted extraction results and failures.

    Extraction results are scripted per filename: each call pops the next
    entry (an ExtractionResponse or an exception to raise); once the script
    is exhausted the default response is returned. Committed records are
    kept per date and a second commit for the same date without overwrite
    raises ConflictDetected. Resolve requests replace records per row; dates
    in ``fail_dates`` come back as failed rows.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.extraction_script: dict[str, deque[Any]] = defaultdict(deque)
        self.default_extraction = ExtractionResponse(
            extracted_steps=10_000, extracted_date="2026-01-10", confidence="high",
        )
        self.upload_errors: deque[Exception] = deque()
        self.commit_errors: deque[Exception] = deque()
        self.resolve_errors: deque[Exception] = deque()
        self.fail_dates: set[str] = set()
        self.existing: dict[str, ExistingRecord] = {}
        self.records: list[RecordSummary] = []
        self.fail_ids: set[str] = set()
        self.reverify_response: BulkResponse | None = None
        self._next_id = 0

    # --- Scripting helpers ---

    def script_extraction(self, filename: str, *results: Any) -> None:
        self.extraction_script[filename].extend(results)

    def add_records(self, count: int, prefix: str = "rec") -> list[str]:
        ids = []
        for i in range(count):
            record_id = f"{prefix}-{i:04d}"
            self.records.append(
                RecordSummary(id=record_id, for_date=f"2026-01-{(i % 28) + 1:02d}", steps=1000 + i)
            )
            ids.append(record_id)
        return ids

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def args_of(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _new_id(self) -> str:
        self._next_id += 1
        return f"sub-{self._next_id}"

    # --- BaseGateway ---

    async def sign_upload(self, content_type: str) -> UploadTarget:
        self.calls.append(("sign_upload", (content_type,)))
        n = self.count("sign_upload")
        return UploadTarget(upload_url=f"https://storage.test/upload/{n}", path=f"proofs/{n}.jpg")

    async def upload(self, upload_url: str, data: bytes, content_type: str) -> None:
        self.calls.append(("upload", (upload_url, len(data), content_type)))
        if self.upload_errors:
            raise self.upload_errors.popleft()

    async def extract(
        self, proof_ref: str, context_hint: str | None = None, league_id: str | None = None,
    ) -> ExtractionResponse:
        self.calls.append(("extract", (proof_ref, context_hint, league_id)))
        script = self.extraction_script.get(context_hint or "")
        if script:
            result = script.popleft()
            if isinstance(result, Exception):
                raise result
            return result
        return self.default_extraction

    async def commit(self, request: CommitRequest) -> CommitResponse:
        self.calls.append(("commit", (request,)))
        if self.commit_errors:
            raise self.commit_errors.popleft()
        current = self.existing.get(request.date)
        if current is not None and not request.overwrite:
            raise ConflictDetected(current, date=request.date)
        record_id = current.id if current is not None else self._new_id()
        self.existing[request.date] = ExistingRecord(
            id=record_id,
            steps=request.steps,
            verified=None if request.proof_ref else False,
            proof_ref=request.proof_ref,
        )
        return CommitResponse(id=record_id)

    async def check_conflicts(
        self, dates: list[str], league_id: str | None = None,
    ) -> ConflictCheckResponse:
        self.calls.append(("check_conflicts", (list(dates), league_id)))
        conflicts = []
        for day in dates:
            record = self.existing.get(day)
            if record is None:
                continue
            conflicts.append(DateConflict(
                date=day,
                existing=RecordSummary(
                    id=record.id, date=day, steps=record.steps,
                    verified=record.verified, proof_ref=record.proof_ref,
                ),
                source="existing",
            ))
        return ConflictCheckResponse(
            has_conflicts=bool(conflicts),
            conflicts=conflicts,
            conflict_dates=[c.date for c in conflicts],
        )

    async def resolve_conflicts(self, request: ResolveRequest) -> ResolveResponse:
        self.calls.append(("resolve_conflicts", (request,)))
        if self.resolve_errors:
            raise self.resolve_errors.popleft()
        results = []
        for entry in request.resolutions:
            current = self.existing.get(entry.date)
            if entry.action == "skip":
                results.append(ResolutionRowResult(
                    date=entry.date, action=entry.action, success=True, message="Skipped - no changes made",
                ))
            elif entry.action == "keep_existing":
                results.append(ResolutionRowResult(
                    date=entry.date, action=entry.action, success=True, message="Kept existing submission",
                    record_id=current.id if current else None,
                ))
            elif entry.incoming is None:
                results.append(ResolutionRowResult(
                    date=entry.date, action=entry.action, success=False,
                    message="Missing incoming data for replacement",
                ))
            elif entry.date in self.fail_dates:
                results.append(ResolutionRowResult(
                    date=entry.date, action=entry.action, success=False, message="Write failed",
                ))
            else:
                record_id = current.id if current is not None else self._new_id()
                self.existing[entry.date] = ExistingRecord(
                    id=record_id,
                    steps=entry.incoming.steps,
                    verified=None if entry.incoming.proof_ref else False,
                    proof_ref=entry.incoming.proof_ref,
                )
                results.append(ResolutionRowResult(
                    date=entry.date, action=entry.action, success=True,
                    message="Replaced existing submission", record_id=record_id,
                ))
        return ResolveResponse(
            resolved=sum(1 for r in results if r.success), total=len(results), results=results,
        )

    async def delete_records(self, ids: list[str]) -> BulkResponse:
        self.calls.append(("delete_records", (list(ids),)))
        failing = [i for i in ids if i in self.fail_ids]
        if failing:
            raise ServiceRejection(f"Cannot delete {failing[0]}", status_code=500)
        self.records = [r for r in self.records if r.id not in ids]
        return BulkResponse(success=True, count=len(ids))

    async def patch_record_date(self, record_id: str, new_date: str, reason: str) -> None:
        self.calls.append(("patch_record_date", (record_id, new_date, reason)))
        if record_id in self.fail_ids:
            raise ServiceRejection(f"Cannot move {record_id}", status_code=500)

    async def reverify(self, ids: list[str]) -> BulkResponse:
        self.calls.append(("reverify", (list(ids),)))
        if self.reverify_response is not None:
            return self.reverify_response
        return BulkResponse(
            success=True,
            count=len(ids),
            results=[
                BulkItemResult(id=i, success=i not in self.fail_ids,
                               error="Verification failed" if i in self.fail_ids else None)
                for i in ids
            ],
        )

    async def list_records(
        self, record_filter: RecordFilter, limit: int, offset: int = 0,
    ) -> RecordPage:
        self.calls.append(("list_records", (record_filter, limit, offset)))
        matching = self.records
        if record_filter.date_range is not None:
            start, end = record_filter.date_range.start, record_filter.date_range.end
            matching = [r for r in matching if start <= r.date <= end]
        return RecordPage(submissions=matching[offset:offset + limit], total=len(matching))


# === FIXTURES ===


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with every delay set to zero."""
    return Settings(
        _env_file=None,
        inter_item_delay_s=0,
        auto_retry_delays_s="0,0,0",
        max_auto_retries=3,
    )


@pytest.fixture
def today() -> date:
    return TODAY


def write_image(path: Path, size: tuple[int, int] = (32, 32), color: str = "white") -> Path:
    Image.new("RGB", size, color).save(path)
    return path


@pytest.fixture
def sample_images(tmp_path: Path) -> list[Path]:
    """Three small PNG proofs."""
    return [write_image(tmp_path / f"proof_{i}.png") for i in range(3)]


@pytest.fixture
def image_factory(tmp_path: Path):
    """Write an image of a given size under tmp_path and return its path."""

    def _make(name: str, size: tuple[int, int] = (32, 32), color: str = "white") -> Path:
        return write_image(tmp_path / name, size=size, color=color)

    return _make
