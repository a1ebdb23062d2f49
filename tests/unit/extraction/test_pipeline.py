# tests/unit/extraction/test_pipeline.py — v1
"""Tests for extraction/pipeline.py — upload reuse and failure wrapping."""

from __future__ import annotations

import pytest

from stepbatch.api.models import ExtractionResponse
from stepbatch.config.settings import Settings
from stepbatch.core.errors import NetworkError, RateLimited, ServiceRejection
from stepbatch.core.models import BatchItem
from stepbatch.extraction.pipeline import ExtractionPipeline, PipelineError


def _item(path, **kwargs) -> BatchItem:
    return BatchItem(source_path=path, filename=path.name, content_type="image/png", **kwargs)


@pytest.fixture
def pipeline(gateway, fast_settings) -> ExtractionPipeline:
    return ExtractionPipeline(gateway, fast_settings)


class TestPipelineRun:
    @pytest.mark.asyncio
    async def test_uploads_then_extracts(self, pipeline, gateway, image_factory, today):
        item = _item(image_factory("proof.png"))
        result = await pipeline.run(item, reference=today)

        assert result.uploaded
        assert result.proof_ref == "proofs/1.jpg"
        assert result.extracted.steps == 10_000
        assert [name for name, _ in gateway.calls] == ["sign_upload", "upload", "extract"]

    @pytest.mark.asyncio
    async def test_filename_sent_as_hint(self, pipeline, gateway, image_factory, today):
        item = _item(image_factory("IMG_2026_01_05.png"))
        await pipeline.run(item, reference=today)
        proof_ref, hint, _ = gateway.args_of("extract")[0]
        assert hint == "IMG_2026_01_05.png"

    @pytest.mark.asyncio
    async def test_league_forwarded(self, gateway, image_factory, today):
        settings = Settings(_env_file=None, league_id="lg-9")
        await ExtractionPipeline(gateway, settings).run(_item(image_factory("p.png")), reference=today)
        assert gateway.args_of("extract")[0][2] == "lg-9"

    @pytest.mark.asyncio
    async def test_cached_proof_skips_upload(self, pipeline, gateway, image_factory, today):
        item = _item(image_factory("proof.png"), proof_ref="proofs/cached.jpg")
        result = await pipeline.run(item, reference=today)

        assert not result.uploaded
        assert result.proof_ref == "proofs/cached.jpg"
        assert gateway.count("upload") == 0
        assert gateway.args_of("extract")[0][0] == "proofs/cached.jpg"

    @pytest.mark.asyncio
    async def test_partial_date_normalized(self, pipeline, gateway, image_factory, today):
        gateway.script_extraction(
            "proof.png", ExtractionResponse(extracted_steps=5, extracted_date="Dec 30", confidence="medium"),
        )
        result = await pipeline.run(_item(image_factory("proof.png")), reference=today)
        assert result.extracted.date == "2025-12-30"
        assert result.extracted.confidence == "medium"

    @pytest.mark.asyncio
    async def test_does_not_mutate_item(self, pipeline, image_factory, today):
        item = _item(image_factory("proof.png"))
        await pipeline.run(item, reference=today)
        assert item.proof_ref is None
        assert item.extracted is None
        assert item.status == "pending"


class TestPipelineFailures:
    @pytest.mark.asyncio
    async def test_extract_failure_keeps_proof(self, pipeline, gateway, image_factory, today):
        gateway.script_extraction("proof.png", RateLimited("slow down", status_code=429))
        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(_item(image_factory("proof.png")), reference=today)

        assert isinstance(exc_info.value.error, RateLimited)
        assert exc_info.value.proof_ref == "proofs/1.jpg"

    @pytest.mark.asyncio
    async def test_upload_failure_has_no_proof(self, pipeline, gateway, image_factory, today):
        gateway.upload_errors.append(NetworkError("offline"))
        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(_item(image_factory("proof.png")), reference=today)

        assert exc_info.value.proof_ref is None
        assert exc_info.value.error.retryable
        assert gateway.count("extract") == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_classified_terminal(self, pipeline, gateway, image_factory, today):
        gateway.script_extraction("proof.png", KeyError("steps"))
        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(_item(image_factory("proof.png")), reference=today)
        assert isinstance(exc_info.value.error, ServiceRejection)
        assert not exc_info.value.error.retryable

    @pytest.mark.asyncio
    async def test_missing_source_file(self, pipeline, tmp_path, today):
        item = BatchItem(source_path=tmp_path / "gone.png", filename="gone.png")
        with pytest.raises(PipelineError):
            await pipeline.run(item, reference=today)
