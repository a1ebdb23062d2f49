# src/selection/manager.py — v1
"""Cross-page selection over committed records.

A selection is either ExplicitIds (ids ticked on the loaded page) or
AllMatching (every record matching the active filter, loaded or not). The
latter only exists after an explicit escalation and is turned into concrete
ids by resolve_ids() at the moment a bulk operation runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from stepbatch.api.models import RecordPage, RecordSummary
from stepbatch.core.models import RecordFilter

if TYPE_CHECKING:
    from stepbatch.api.base_gateway import BaseGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExplicitIds:
    ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AllMatching:
    record_filter: RecordFilter


Selection = Union[ExplicitIds, AllMatching]


class SelectionManager:
    """Page-scoped selection with escalation to "all matching".

    Args:
        record_filter: Initial filter of the listing.
        page_size: Records per page.
    """

    def __init__(self, record_filter: RecordFilter, page_size: int = 10) -> None:
        self._filter = record_filter
        self._page_size = page_size
        self._page_index = 0
        self._page: list[RecordSummary] = []
        self._total = 0
        self._selection: Selection = ExplicitIds()

    # --- State ---

    @property
    def selection(self) -> Selection:
        return self._selection

    @property
    def record_filter(self) -> RecordFilter:
        return self._filter

    @property
    def all_matching(self) -> bool:
        return isinstance(self._selection, AllMatching)

    @property
    def explicit_ids(self) -> frozenset[str]:
        if isinstance(self._selection, ExplicitIds):
            return self._selection.ids
        return frozenset()

    @property
    def page_ids(self) -> list[str]:
        return [record.id for record in self._page]

    @property
    def page_index(self) -> int:
        return self._page_index

    @property
    def total(self) -> int:
        return self._total

    @property
    def selected_count(self) -> int:
        """Number of records the next bulk operation would touch."""
        if self.all_matching:
            return self._total
        return len(self.explicit_ids)

    # --- Loading ---

    async def load_page(self, gateway: BaseGateway, page_index: int = 0) -> RecordPage:
        """Fetch one page for the active filter.

        Moving to another page clears an explicit selection; an all-matching
        selection persists.
        """
        if not self._filter.is_resolvable:
            page = RecordPage()
        else:
            page = await gateway.list_records(
                self._filter, limit=self._page_size, offset=page_index * self._page_size,
            )
        if page_index != self._page_index and not self.all_matching:
            self._selection = ExplicitIds()
        self._page_index = page_index
        self._page = list(page.items)
        self._total = page.total
        logger.debug("Loaded page %d: %d of %d records", page_index, len(self._page), self._total)
        return page

    def set_filter(self, record_filter: RecordFilter) -> None:
        """Switch the active filter.

        An explicit selection is cleared. An all-matching selection keeps its
        intent and follows the new filter.
        """
        self._filter = record_filter
        self._page_index = 0
        if isinstance(self._selection, AllMatching):
            self._selection = AllMatching(record_filter)
        else:
            self._selection = ExplicitIds()

    # --- Selection changes ---

    def toggle(self, record_id: str) -> None:
        """Tick or untick one record; leaves all-matching mode."""
        ids = set(self.page_ids) if self.all_matching else set(self.explicit_ids)
        if record_id in ids:
            ids.discard(record_id)
        else:
            ids.add(record_id)
        self._selection = ExplicitIds(frozenset(ids))

    def toggle_page(self) -> None:
        """Select every record on the page, or clear when all are selected."""
        page = set(self.page_ids)
        if self.all_matching or (page and page <= self.explicit_ids):
            self._selection = ExplicitIds()
        else:
            self._selection = ExplicitIds(frozenset(self.explicit_ids | page))

    def can_escalate(self) -> bool:
        """Every loaded record is selected and more exist beyond the page."""
        page = set(self.page_ids)
        return (
            not self.all_matching
            and bool(page)
            and page <= self.explicit_ids
            and self._total > len(page)
        )

    def escalate(self) -> None:
        """Promote the page selection to every record matching the filter.

        Raises:
            ValueError: The page is not fully selected or nothing lies beyond it.
        """
        if not self.can_escalate():
            raise ValueError("Select every record on the page before selecting all matching")
        self._selection = AllMatching(self._filter)
        logger.info("Selection escalated to all %d matching records", self._total)

    def clear(self) -> None:
        self._selection = ExplicitIds()

    # --- Resolution ---

    async def resolve_ids(self, gateway: BaseGateway) -> list[str]:
        """Concrete ids of the current selection.

        All-matching selections are re-read from the listing endpoint, page
        by page, at call time. An unresolvable filter yields no ids.
        """
        if isinstance(self._selection, ExplicitIds):
            return sorted(self._selection.ids)

        record_filter = self._selection.record_filter
        if not record_filter.is_resolvable:
            logger.info("Filter cannot be resolved (proxy view without a proxy member)")
            return []

        ids: list[str] = []
        offset = 0
        batch = max(self._page_size, 100)
        while True:
            page = await gateway.list_records(record_filter, limit=batch, offset=offset)
            ids.extend(record.id for record in page.items)
            offset += len(page.items)
            if not page.items or offset >= page.total:
                break
        logger.debug("Resolved all-matching selection to %d ids", len(ids))
        return ids
