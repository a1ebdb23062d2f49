# src/conflicts/resolver.py — v1
"""Recommendation rule and per-row application of conflict resolutions.

Recommendation, evaluated in order:
    1. existing verified with proof        -> keep_existing
    2. incoming has proof, existing none   -> use_incoming
    3. existing has proof, not verified    -> keep_existing
    4. neither has proof                   -> keep_existing

Each resolution is applied independently: one failing row never blocks or
rolls back the others. Replacements travel in one bulk resolve request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stepbatch.api.models import IncomingData, ResolutionEntry, ResolveRequest
from stepbatch.core.errors import ServiceRejection, StepBatchError, classify_error
from stepbatch.core.models import ConflictAction, ConflictCase

if TYPE_CHECKING:
    from stepbatch.api.base_gateway import BaseGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recommendation:
    action: ConflictAction
    reason: str


@dataclass
class ResolutionResult:
    """Outcome of applying one row's resolution."""

    date: str
    action: ConflictAction
    success: bool
    message: str = ""
    record_id: str | None = None
    item_id: str | None = None
    error: Exception | None = None


def recommend(case: ConflictCase) -> Recommendation:
    """Deterministic recommendation for one conflict."""
    existing_has_proof = bool(case.existing.proof_ref)
    existing_verified = case.existing.verified is True
    incoming_has_proof = bool(case.incoming.proof_ref)

    if existing_verified and existing_has_proof:
        if incoming_has_proof:
            return Recommendation(
                "keep_existing", "Both have screenshots. The existing entry is already verified.",
            )
        return Recommendation(
            "keep_existing",
            "The existing submission has a verified screenshot and is likely more accurate.",
        )
    if incoming_has_proof and not existing_has_proof:
        return Recommendation(
            "use_incoming",
            "The new submission has a screenshot which is likely more accurate than the manual entry.",
        )
    if existing_has_proof:
        return Recommendation(
            "keep_existing", "The existing submission has a screenshot (pending verification).",
        )
    return Recommendation("keep_existing", "Consider submitting a screenshot for better accuracy.")


class ConflictResolver:
    """Applies chosen resolutions through the gateway.

    ``skip`` and ``keep_existing`` rows need no write and are settled
    locally. All ``use_incoming`` rows go out in a single resolve request
    whose per-row results are matched back in request order.

    Args:
        gateway: Backend used for ``use_incoming`` overwrites.
        league_id: League scope of the overwrite (None = global).
        proxy_member_id: Proxy member the batch is submitting for, if any.
    """

    def __init__(
        self,
        gateway: BaseGateway,
        league_id: str | None = None,
        proxy_member_id: str | None = None,
    ) -> None:
        self._gateway = gateway
        self._league_id = league_id
        self._proxy_member_id = proxy_member_id

    async def resolve(self, case: ConflictCase) -> ResolutionResult:
        """Apply ``case.resolution`` (the recommendation when unset)."""
        return (await self.resolve_all([case]))[0]

    async def resolve_all(self, cases: list[ConflictCase]) -> list[ResolutionResult]:
        """Apply every row; failures are reported per row, in input order."""
        results: dict[int, ResolutionResult] = {}
        replacing: list[tuple[int, ConflictCase]] = []

        for index, case in enumerate(cases):
            action: ConflictAction = case.resolution or recommend(case).action
            if action == "skip":
                logger.info("Conflict %s: skipped", case.date)
                results[index] = ResolutionResult(
                    case.date, action, True, "Skipped - no changes made", item_id=case.item_id,
                )
            elif action == "keep_existing":
                logger.info("Conflict %s: kept existing record %s", case.date, case.existing.id)
                results[index] = ResolutionResult(
                    case.date, action, True, "Kept existing submission",
                    record_id=case.existing.id, item_id=case.item_id,
                )
            else:
                replacing.append((index, case))

        if replacing:
            results.update(await self._replace(replacing))
        return [results[index] for index in range(len(cases))]

    async def _replace(
        self, rows: list[tuple[int, ConflictCase]],
    ) -> dict[int, ResolutionResult]:
        request = ResolveRequest(
            resolutions=[
                ResolutionEntry(
                    date=case.date,
                    action="use_incoming",
                    incoming=IncomingData(steps=case.incoming.steps, proof_ref=case.incoming.proof_ref),
                )
                for _, case in rows
            ],
            league_id=self._league_id,
            proxy_member_id=self._proxy_member_id,
        )
        try:
            response = await self._gateway.resolve_conflicts(request)
        except Exception as e:  # noqa: BLE001
            error = classify_error(e)
            logger.warning("Resolve request for %d rows failed: %s", len(rows), error)
            return {index: self._failed(case, error) for index, case in rows}

        results: dict[int, ResolutionResult] = {}
        for position, (index, case) in enumerate(rows):
            row = response.results[position] if position < len(response.results) else None
            if row is None:
                results[index] = self._failed(case, ServiceRejection("No result returned for this row"))
            elif not row.success:
                results[index] = self._failed(case, ServiceRejection(row.message or "Replacement failed"))
            else:
                logger.info("Conflict %s: replaced record %s", case.date, case.existing.id)
                results[index] = ResolutionResult(
                    case.date, "use_incoming", True, row.message or "Replaced existing submission",
                    record_id=row.record_id or case.existing.id, item_id=case.item_id,
                )
        return results

    @staticmethod
    def _failed(case: ConflictCase, error: StepBatchError) -> ResolutionResult:
        logger.warning("Conflict %s: overwrite failed: %s", case.date, error)
        return ResolutionResult(
            case.date, "use_incoming", False, str(error), item_id=case.item_id, error=error,
        )
