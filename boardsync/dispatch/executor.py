"""Apply planned mutations to the board in bounded, concurrent batches."""

from __future__ import annotations

import concurrent.futures
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from boardsync.context import Context
from boardsync.dispatch.rate_limit import RateLimitManager
from boardsync.domain.models import DesiredMutation, MutationField
from boardsync.domain.outcomes import (
    MutationOutcome,
    OutcomeStatus,
    ReasonCode,
    reason_for_status,
    success_reason,
)
from boardsync.errors import NotModifiedError, PlatformError
from boardsync.logging import get_logger, log_exceptions
from boardsync.platform.base import BoardPlatform
from boardsync.status_tracker import StatusTracker

# Fields stored on the board item; they need the item admitted first.
BOARD_FIELDS = frozenset({MutationField.STATUS, MutationField.SPRINT})


def batched(mutations: Sequence[DesiredMutation], size: int) -> List[List[DesiredMutation]]:
    size = max(int(size), 1)
    return [list(mutations[start : start + size]) for start in range(0, len(mutations), size)]


def group_by_item(batch: Sequence[DesiredMutation]) -> List[List[DesiredMutation]]:
    groups: Dict[str, List[DesiredMutation]] = {}
    for mutation in batch:
        groups.setdefault(mutation.content_id, []).append(mutation)
    return list(groups.values())


class DispatchExecutor:
    """Run mutation batches through a thread pool.

    Each item's mutations inside a batch form a chain applied in order by a
    single worker, so an admission always completes before the fields that
    depend on it. Chains for different items run concurrently. Project item
    ids returned by admissions are shared across batches.
    """

    def __init__(
        self,
        platform: BoardPlatform,
        context: Context,
        *,
        limiter: RateLimitManager,
        tracker: Optional[StatusTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: Optional[int] = None,
    ) -> None:
        technical = context.technical
        self.platform = platform
        self.context = context
        self.limiter = limiter
        self.tracker = tracker or StatusTracker()
        self.batch_size = technical.batch_size
        self.batch_delay = technical.batch_delay_seconds
        self.max_workers = max_workers or technical.max_workers or technical.batch_size
        self._sleep = sleep
        self._lock = threading.Lock()
        self._admitted: Dict[str, str] = {}
        self._failed_admissions: Dict[str, ReasonCode] = {}
        self.log = get_logger(__name__, metadata={"board": context.board_id})

    def dispatch(
        self,
        mutations: Sequence[DesiredMutation],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[MutationOutcome]:
        batches = batched(mutations, self.batch_size)
        outcomes: List[MutationOutcome] = []
        if not batches:
            return outcomes

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for index, batch in enumerate(batches):
                if cancel_event is not None and cancel_event.is_set():
                    remaining = [mutation for pending in batches[index:] for mutation in pending]
                    outcomes.extend(self._cancel(remaining))
                    break
                self.log.debug(
                    "Dispatching batch %d/%d (%d mutations)",
                    index + 1,
                    len(batches),
                    len(batch),
                )
                futures = [pool.submit(self._apply_chain, chain) for chain in group_by_item(batch)]
                for future in futures:
                    outcomes.extend(future.result())
                more = index + 1 < len(batches)
                if more and not (cancel_event is not None and cancel_event.is_set()):
                    if self.batch_delay > 0:
                        self._sleep(self.batch_delay)
        return outcomes

    def _cancel(self, remaining: Sequence[DesiredMutation]) -> List[MutationOutcome]:
        self.log.warning(
            "Cancellation requested; %d mutations not applied",
            len(remaining),
            extra={"metadata": {"reason": ReasonCode.CANCELLED.value}},
        )
        outcomes = [
            MutationOutcome.for_mutation(mutation, OutcomeStatus.SKIPPED, ReasonCode.CANCELLED)
            for mutation in remaining
        ]
        self.tracker.record_many(outcomes)
        return outcomes

    def _apply_chain(self, chain: Sequence[DesiredMutation]) -> List[MutationOutcome]:
        outcomes = []
        worker_log = self.log.bind(item=str(chain[0].item))
        with log_exceptions(worker_log, message="Dispatch worker failed"):
            for mutation in chain:
                outcome = self._apply(mutation)
                self.tracker.record(outcome)
                outcomes.append(outcome)
        return outcomes

    def _project_item_id(self, mutation: DesiredMutation) -> Optional[str]:
        if mutation.project_item_id:
            return mutation.project_item_id
        with self._lock:
            return self._admitted.get(mutation.content_id)

    def _apply(self, mutation: DesiredMutation) -> MutationOutcome:
        project_item_id = None
        if mutation.field in BOARD_FIELDS:
            with self._lock:
                blocked = self._failed_admissions.get(mutation.content_id)
            if blocked is not None:
                return MutationOutcome.for_mutation(
                    mutation,
                    OutcomeStatus.SKIPPED,
                    blocked,
                    detail=f"{mutation.describe()} skipped: admission failed",
                )
            project_item_id = self._project_item_id(mutation)
            if project_item_id is None:
                return MutationOutcome.for_mutation(
                    mutation, OutcomeStatus.SKIPPED, ReasonCode.NOT_ADMITTED
                )

        try:
            result = self.limiter.execute(
                lambda: self._perform(mutation, project_item_id),
                description=mutation.describe(),
            )
        except NotModifiedError as exc:
            return MutationOutcome.for_mutation(
                mutation,
                OutcomeStatus.UNCHANGED,
                ReasonCode.ALREADY_CURRENT,
                attempts=exc.attempts,
            )
        except PlatformError as exc:
            reason = reason_for_status(exc.status)
            if mutation.field is MutationField.MEMBERSHIP:
                with self._lock:
                    self._failed_admissions[mutation.content_id] = reason
            self.log.error(
                "%s failed: %s",
                mutation.describe(),
                exc,
                extra={
                    "metadata": {
                        "item": str(mutation.item),
                        "reason": reason.value,
                        "status": exc.status,
                        "attempts": exc.attempts,
                    }
                },
            )
            return MutationOutcome.for_mutation(
                mutation,
                OutcomeStatus.ERROR,
                reason,
                detail=f"{mutation.describe()}: {exc}",
                attempts=exc.attempts,
                error_code=exc.status,
            )

        if mutation.field is MutationField.MEMBERSHIP:
            with self._lock:
                self._admitted[mutation.content_id] = result.value
        self.log.info(
            "%s",
            mutation.describe(),
            extra={
                "metadata": {
                    "item": str(mutation.item),
                    "reason": success_reason(mutation).value,
                    "attempts": result.attempts,
                }
            },
        )
        return MutationOutcome.for_mutation(
            mutation,
            OutcomeStatus.CHANGED,
            success_reason(mutation),
            attempts=result.attempts,
        )

    def _perform(self, mutation: DesiredMutation, project_item_id: Optional[str]):
        board_id = self.context.board_id
        fields = self.context.fields

        if mutation.field is MutationField.MEMBERSHIP:
            return self.platform.admit_to_board(board_id, mutation.content_id)
        if mutation.field is MutationField.STATUS:
            option_id = fields.option_for(mutation.value)
            if option_id is None:
                raise PlatformError(404, f"board has no {mutation.value!r} column", code="NOT_FOUND")
            return self.platform.set_single_select_field(
                board_id, project_item_id, fields.status_field_id, option_id
            )
        if mutation.field is MutationField.SPRINT:
            if fields.sprint_field_id is None:
                raise PlatformError(404, "board has no sprint field", code="NOT_FOUND")
            return self.platform.set_iteration_field(
                board_id, project_item_id, fields.sprint_field_id, mutation.value
            )
        return self.platform.add_assignees(
            mutation.item.repository, mutation.item.number, sorted(mutation.value)
        )


__all__ = ["DispatchExecutor", "batched", "group_by_item"]
