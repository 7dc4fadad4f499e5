"""Diff desired mutations against the board snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from boardsync.domain.models import BoardItem, DesiredMutation, Item, MutationField
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode
from boardsync.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ChangePlan:
    """Mutations to dispatch, in per-item field order, and the ones dropped."""

    mutations: List[DesiredMutation] = field(default_factory=list)
    elided: List[MutationOutcome] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.mutations)


class ChangePlanner:
    """Drop no-ops and duplicates, then order what is left.

    Mutations are grouped by the item's first appearance in the evaluator's
    output and ordered Membership, Status, Sprint, Assignees within an item.
    For duplicates on ``(item, field)`` the earlier emission wins.
    """

    def __init__(self, *, skip_unchanged: bool = True) -> None:
        self.skip_unchanged = skip_unchanged

    @staticmethod
    def order(mutations: Iterable[DesiredMutation]) -> List[DesiredMutation]:
        first_seen: Dict[str, int] = {}
        indexed = []
        for position, mutation in enumerate(mutations):
            first_seen.setdefault(mutation.content_id, position)
            indexed.append((first_seen[mutation.content_id], mutation.field.rank, position, mutation))
        return [entry[-1] for entry in sorted(indexed, key=lambda entry: entry[:3])]

    def plan(
        self,
        mutations: Iterable[DesiredMutation],
        board: Mapping[str, BoardItem],
        items: Optional[Mapping[str, Item]] = None,
    ) -> ChangePlan:
        items = items or {}
        result = ChangePlan()
        seen: Set[Tuple[str, MutationField]] = set()

        for mutation in self.order(mutations):
            if mutation.key in seen:
                result.elided.append(
                    MutationOutcome.for_mutation(
                        mutation,
                        OutcomeStatus.SKIPPED,
                        ReasonCode.SUPERSEDED,
                        detail=f"{mutation.describe()} duplicates an earlier mutation",
                    )
                )
                continue
            seen.add(mutation.key)

            board_item = board.get(mutation.content_id)
            if board_item is not None and mutation.project_item_id is None:
                mutation = replace(mutation, project_item_id=board_item.project_item_id)

            kept = self._diff(mutation, board_item, items.get(mutation.content_id))
            if kept is None:
                result.elided.append(
                    MutationOutcome.for_mutation(
                        mutation, OutcomeStatus.UNCHANGED, ReasonCode.ALREADY_CURRENT
                    )
                )
                continue
            result.mutations.append(kept)

        logger.info(
            "Planned %d mutations (%d elided)",
            len(result.mutations),
            len(result.elided),
            extra={"metadata": {"skip_unchanged": self.skip_unchanged}},
        )
        return result

    def _diff(
        self,
        mutation: DesiredMutation,
        board_item: Optional[BoardItem],
        item: Optional[Item],
    ) -> Optional[DesiredMutation]:
        """Return the mutation to dispatch, possibly narrowed, or ``None`` for a no-op."""

        if mutation.field is MutationField.MEMBERSHIP:
            return None if board_item is not None else mutation
        if not self.skip_unchanged:
            return mutation

        if mutation.field is MutationField.STATUS:
            current = board_item.column if board_item else None
            return None if current == mutation.value else mutation
        if mutation.field is MutationField.SPRINT:
            current = board_item.sprint if board_item else None
            return None if current == mutation.value else mutation

        present = set(board_item.assignees) if board_item else set()
        if item is not None:
            present |= item.assignees
        missing = frozenset(mutation.value) - present
        if not missing:
            return None
        if missing != mutation.value:
            return replace(mutation, value=missing)
        return mutation


__all__ = ["ChangePlan", "ChangePlanner"]
