"""Re-read the board after dispatch and confirm that applied writes landed.

The platform is eventually consistent, so a write that reported success may
not be visible straight away. Changed items are re-read with exponential
backoff until every applied mutation is reflected or the attempts run out;
whatever still differs is reported as an ``unverified`` error.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from boardsync.domain.models import BoardItem, DesiredMutation, ItemRef, MutationField
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode
from boardsync.logging import get_logger
from boardsync.rules.store import VerificationSettings
from boardsync.snapshot import BoardSnapshotLoader

logger = get_logger(__name__)


def mismatch(mutation: DesiredMutation, board_item: Optional[BoardItem]) -> Optional[str]:
    """Describe how ``board_item`` differs from ``mutation``, or ``None`` when it matches."""

    if board_item is None:
        # Assignees of items outside the board cannot be read back from it.
        if mutation.field is MutationField.ASSIGNEES:
            return None
        return "item is not on the board"
    if mutation.field is MutationField.MEMBERSHIP:
        return None
    if mutation.field is MutationField.STATUS:
        column = board_item.column or ""
        if column.lower() != str(mutation.value).lower():
            return f"column is {board_item.column!r}, expected {mutation.value!r}"
        return None
    if mutation.field is MutationField.SPRINT:
        if board_item.sprint != mutation.value:
            return f"sprint is {board_item.sprint!r}, expected {mutation.value!r}"
        return None
    missing = frozenset(mutation.value) - board_item.assignees
    if missing:
        return "missing assignees " + ", ".join(sorted(missing))
    return None


class StateVerifier:
    """Confirms changed mutations against a fresh read of the board."""

    def __init__(
        self,
        loader: BoardSnapshotLoader,
        settings: Optional[VerificationSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.loader = loader
        self.settings = settings or VerificationSettings()
        self._sleep = sleep

    def verify(
        self,
        board_id: str,
        plan: Iterable[DesiredMutation],
        outcomes: Iterable[MutationOutcome],
    ) -> List[MutationOutcome]:
        """Return one ``error`` outcome per changed mutation the board does not show.

        Raises :class:`boardsync.errors.SnapshotError` when the board cannot be
        re-read.
        """

        by_key: Dict[Tuple[ItemRef, MutationField], DesiredMutation] = {
            (mutation.item, mutation.field): mutation for mutation in plan
        }
        applied = [
            by_key[(outcome.item, outcome.field)]
            for outcome in outcomes
            if outcome.status is OutcomeStatus.CHANGED and (outcome.item, outcome.field) in by_key
        ]
        if not applied:
            return []

        attempts = 0

        def check() -> List[Tuple[DesiredMutation, str]]:
            nonlocal attempts
            attempts += 1
            members = self.loader.members(board_id)
            return self._mismatches(applied, members)

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=1, max=self.settings.max_delay),
            retry=retry_if_result(bool),
            sleep=self._sleep,
            before_sleep=lambda state: logger.info(
                "%d writes not visible yet, re-reading the board in %.0fs",
                len(state.outcome.result()),
                state.next_action.sleep,
            ),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        remaining = retrying(check)

        logger.info(
            "Verified %d applied mutations (%d unverified)",
            len(applied),
            len(remaining),
            extra={"metadata": {"attempts": attempts}},
        )
        failures = []
        for mutation, detail in remaining:
            logger.error(
                "%s not reflected on the board: %s",
                mutation.describe(),
                detail,
                extra={"metadata": {"reason": ReasonCode.UNVERIFIED.value}},
            )
            failures.append(
                MutationOutcome.for_mutation(
                    mutation,
                    OutcomeStatus.ERROR,
                    ReasonCode.UNVERIFIED,
                    detail=f"{mutation.describe()}: {detail}",
                    attempts=attempts,
                )
            )
        return failures

    @staticmethod
    def _mismatches(
        applied: Iterable[DesiredMutation], members: Mapping[str, BoardItem]
    ) -> List[Tuple[DesiredMutation, str]]:
        found = []
        for mutation in applied:
            detail = mismatch(mutation, members.get(mutation.content_id))
            if detail is not None:
                found.append((mutation, detail))
        return found


__all__ = ["StateVerifier", "mismatch"]
