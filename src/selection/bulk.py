# src/selection/bulk.py — v1
"""Bulk delete / date-edit / re-verify over the current selection.

The selection is resolved to concrete ids when the operation runs. Deletes
and date edits are issued as one request per id so a failing id never blocks
the others, with at most BULK_MAX_CONCURRENCY requests in flight. Re-verify
is a single capped request with per-id results. Limits are enforced before
any mutation request and are never truncated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import TYPE_CHECKING, Awaitable, Callable

from stepbatch.core.dates import is_valid_submission_date
from stepbatch.core.errors import LimitExceeded, ServiceRejection, classify_error
from stepbatch.core.models import BulkOutcome
from stepbatch.logging.context import set_batch_context

if TYPE_CHECKING:
    from stepbatch.api.base_gateway import BaseGateway
    from stepbatch.config.settings import Settings
    from stepbatch.selection.manager import SelectionManager

logger = logging.getLogger(__name__)


class BulkActions:
    """Executes bulk mutations for a SelectionManager."""

    def __init__(
        self,
        gateway: BaseGateway,
        settings: Settings,
        selection: SelectionManager,
        today: date | None = None,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._selection = selection
        self._today = today

    async def delete(self) -> BulkOutcome:
        set_batch_context("bulk", operation="delete")
        ids = await self._resolve("delete", self._settings.bulk_max_ids)

        async def _delete(record_id: str) -> None:
            response = await self._gateway.delete_records([record_id])
            if not response.success:
                raise ServiceRejection("Delete was not applied")

        return await self._per_id("delete", ids, _delete)

    async def edit_date(self, new_date: str, reason: str = "Bulk date edit") -> BulkOutcome:
        """Move every selected record to ``new_date``.

        Raises:
            ValueError: ``new_date`` is malformed or in the future.
            LimitExceeded: Too many records selected.
        """
        if not is_valid_submission_date(new_date, self._today):
            raise ValueError(f"Date must be YYYY-MM-DD and not in the future, got {new_date!r}")
        set_batch_context("bulk", operation="edit_date")
        ids = await self._resolve("edit", self._settings.bulk_max_ids)

        async def _patch(record_id: str) -> None:
            await self._gateway.patch_record_date(record_id, new_date, reason)

        return await self._per_id("edit_date", ids, _patch)

    async def reverify(self) -> BulkOutcome:
        """Re-run verification on the selection in one capped request.

        Raises:
            LimitExceeded: More records selected than the re-verify limit.
        """
        set_batch_context("bulk", operation="reverify")
        ids = await self._resolve("re-verify", self._settings.effective_reverify_limit)
        outcome = BulkOutcome(operation="reverify", requested=len(ids))
        if not ids:
            return outcome

        try:
            response = await self._gateway.reverify(ids)
        except Exception as e:  # noqa: BLE001
            error = classify_error(e)
            logger.warning("Bulk re-verify of %d records failed: %s", len(ids), error)
            outcome.failed = {record_id: str(error) for record_id in ids}
        else:
            if response.results:
                for result in response.results:
                    if result.success:
                        outcome.succeeded.append(result.id)
                    else:
                        outcome.failed[result.id] = result.error or "Re-verification failed"
            elif response.success:
                outcome.succeeded = list(ids)
            else:
                outcome.failed = {record_id: "Re-verification failed" for record_id in ids}

        self._selection.clear()
        self._log(outcome)
        return outcome

    # --- Internals ---

    async def _resolve(self, operation: str, limit: int) -> list[str]:
        ids = await self._selection.resolve_ids(self._gateway)
        if len(ids) > limit:
            logger.warning("Refusing to %s %d records (limit %d)", operation, len(ids), limit)
            raise LimitExceeded(operation, limit, len(ids))
        return ids

    async def _per_id(
        self,
        operation: str,
        ids: list[str],
        call: Callable[[str], Awaitable[None]],
    ) -> BulkOutcome:
        outcome = BulkOutcome(operation=operation, requested=len(ids))  # type: ignore[arg-type]
        semaphore = asyncio.Semaphore(self._settings.bulk_max_concurrency)

        async def _limited(record_id: str) -> None:
            async with semaphore:
                await call(record_id)

        results = await asyncio.gather(*(_limited(record_id) for record_id in ids), return_exceptions=True)
        for record_id, result in zip(ids, results):
            if isinstance(result, Exception):
                outcome.failed[record_id] = str(classify_error(result))
            else:
                outcome.succeeded.append(record_id)
        self._selection.clear()
        self._log(outcome)
        return outcome

    @staticmethod
    def _log(outcome: BulkOutcome) -> None:
        logger.info(
            "Bulk %s: %d/%d succeeded",
            outcome.operation, outcome.success_count, outcome.requested,
        )
        for record_id, message in outcome.failed.items():
            logger.warning("Bulk %s failed for %s: %s", outcome.operation, record_id, message)
