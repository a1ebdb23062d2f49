# src/extraction/pipeline.py — v1
"""Per-item extraction pipeline: compress -> upload -> extract.

The pipeline never mutates the item it is given. It returns a PipelineResult
on success or raises PipelineError wrapping the classified failure together
with any proof reference obtained before the failure, so the controller can
cache it and a later retry skips the upload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from stepbatch.core.dates import normalize_extracted_date
from stepbatch.core.errors import StepBatchError, classify_error
from stepbatch.core.models import BatchItem, ExtractedData
from stepbatch.extraction.compressor import compress_image

if TYPE_CHECKING:
    from stepbatch.api.base_gateway import BaseGateway
    from stepbatch.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Proof reference and extracted fields for one item."""

    proof_ref: str
    extracted: ExtractedData
    uploaded: bool


class PipelineError(Exception):
    """A pipeline step failed; carries the classified cause."""

    def __init__(self, error: StepBatchError, proof_ref: str | None = None) -> None:
        self.error = error
        self.proof_ref = proof_ref
        super().__init__(str(error))


class ExtractionPipeline:
    """Runs one item through compression, upload and extraction."""

    def __init__(self, gateway: BaseGateway, settings: Settings) -> None:
        self._gateway = gateway
        self._settings = settings

    async def run(self, item: BatchItem, reference: date | None = None) -> PipelineResult:
        """Process one item.

        A proof reference already cached on the item is reused and the
        compress/upload steps are skipped.

        Raises:
            PipelineError: Any step failed.
        """
        proof_ref = item.proof_ref
        uploaded = False
        try:
            if proof_ref is None:
                proof_ref = await self._upload(item)
                uploaded = True
            else:
                logger.debug("Reusing cached proof %s", proof_ref)

            response = await self._gateway.extract(
                proof_ref,
                context_hint=item.filename,
                league_id=self._settings.league_id or None,
            )
        except Exception as e:  # noqa: BLE001
            raise PipelineError(classify_error(e), proof_ref=proof_ref) from e

        extracted = ExtractedData(
            steps=response.steps,
            date=normalize_extracted_date(response.date, reference),
            distance_km=response.distance_km,
            calories=response.calories,
            confidence=response.confidence,
            notes=response.notes,
        )
        logger.debug(
            "Extracted steps=%s date=%s confidence=%s",
            extracted.steps, extracted.date, extracted.confidence,
        )
        return PipelineResult(proof_ref=proof_ref, extracted=extracted, uploaded=uploaded)

    async def _upload(self, item: BatchItem) -> str:
        data, content_type = compress_image(
            item.read_source(),
            item.content_type,
            max_bytes=self._settings.max_file_size_bytes,
            max_dimension=self._settings.max_image_dimension,
        )
        target = await self._gateway.sign_upload(content_type)
        await self._gateway.upload(target.upload_url, data, content_type)
        logger.info("Uploaded proof %s (%d bytes)", target.path, len(data))
        return target.path
