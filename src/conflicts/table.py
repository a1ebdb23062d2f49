# src/conflicts/table.py — v1
"""Bulk conflict table: per-row selector, checked rows, bulk apply.

Rows are keyed by the batch item that produced the conflict, so two items
extracted to the same date are two rows. A case without an item id is keyed
by its date. The date is a display column. Each row starts at its own
recommendation.
"""

from __future__ import annotations

from stepbatch.conflicts.resolver import Recommendation, recommend
from stepbatch.core.models import ConflictAction, ConflictCase

_ACTIONS: tuple[ConflictAction, ...] = ("keep_existing", "use_incoming", "skip")


def _row_key(case: ConflictCase) -> str:
    return case.item_id or case.date


class ConflictTable:
    """Resolution choices for many same-batch conflicts.

    Raises:
        ValueError: Two cases map to the same row key.
    """

    def __init__(self, cases: list[ConflictCase]) -> None:
        self._cases: dict[str, ConflictCase] = {}
        for case in cases:
            key = _row_key(case)
            if key in self._cases:
                raise ValueError(f"Duplicate conflict row {key}")
            if case.resolution is None:
                case.resolution = recommend(case).action
            self._cases[key] = case
        self._checked: set[str] = set()

    @property
    def keys(self) -> list[str]:
        return list(self._cases)

    @property
    def rows(self) -> list[tuple[str, ConflictCase]]:
        return list(self._cases.items())

    @property
    def cases(self) -> list[ConflictCase]:
        return list(self._cases.values())

    @property
    def checked(self) -> frozenset[str]:
        return frozenset(self._checked)

    @property
    def all_checked(self) -> bool:
        return bool(self._cases) and len(self._checked) == len(self._cases)

    def recommendation(self, key: str) -> Recommendation:
        return recommend(self._case(key))

    def action(self, key: str) -> ConflictAction:
        case = self._case(key)
        return case.resolution or recommend(case).action

    # --- Row selection ---

    def toggle_row(self, key: str) -> None:
        self._case(key)
        if key in self._checked:
            self._checked.discard(key)
        else:
            self._checked.add(key)

    def toggle_all(self) -> None:
        """Check every row, or uncheck all when every row is already checked."""
        if self.all_checked:
            self._checked.clear()
        else:
            self._checked = set(self._cases)

    # --- Actions ---

    def set_action(self, key: str, action: ConflictAction) -> None:
        if action not in _ACTIONS:
            raise ValueError(f"Unknown conflict action: {action!r}")
        self._case(key).resolution = action

    def apply_bulk(self, action: ConflictAction) -> int:
        """Overwrite the action of every checked row. Returns rows changed."""
        for key in self._checked:
            self.set_action(key, action)
        return len(self._checked)

    def summary(self) -> dict[ConflictAction, int]:
        counts: dict[ConflictAction, int] = {action: 0 for action in _ACTIONS}
        for key in self._cases:
            counts[self.action(key)] += 1
        return counts

    def resolutions(self) -> list[ConflictCase]:
        """Rows in table order with their chosen actions."""
        return self.cases

    def _case(self, key: str) -> ConflictCase:
        try:
            return self._cases[key]
        except KeyError:
            raise KeyError(f"No conflict row {key}") from None
