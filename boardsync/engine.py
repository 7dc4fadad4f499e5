"""One reconciliation pass, end to end."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from boardsync.collector import ActivityCollector, CollectionResult
from boardsync.context import Context
from boardsync.dispatch.executor import DispatchExecutor
from boardsync.dispatch.rate_limit import RateLimitManager
from boardsync.domain.models import DesiredMutation, Scope
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode
from boardsync.errors import SnapshotError
from boardsync.evaluator import RuleEvaluator
from boardsync.logging import get_logger, log_action
from boardsync.planner import ChangePlan, ChangePlanner
from boardsync.platform.base import BoardPlatform
from boardsync.rules.store import RuleSet, RuleStore
from boardsync.scope import ScopeResolver
from boardsync.snapshot import BoardSnapshot, BoardSnapshotLoader
from boardsync.sprint_calendar import SprintCalendar, today_in
from boardsync.status_tracker import StatusReport, StatusTracker, format_report
from boardsync.verifier import StateVerifier

logger = get_logger(__name__)

MONITORED_USER_OVERRIDE = "BOARDSYNC_MONITORED_USER"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@log_action("load-rules")
def prepare_pass(
    rules_path: Path | str,
    environment: Optional[Mapping[str, str]] = None,
    *,
    rule_store: Optional[RuleStore] = None,
) -> Tuple[RuleSet, Scope]:
    """Load the rule document and resolve its scope; no platform calls."""

    environment = environment or {}
    rule_set = (rule_store or RuleStore()).load(rules_path)
    resolver = ScopeResolver(
        environment,
        monitored_user_override=environment.get(MONITORED_USER_OVERRIDE),
    )
    return rule_set, resolver.resolve(rule_set)


@dataclass
class PassResult:
    plan: List[DesiredMutation]
    elided: List[MutationOutcome]
    outcomes: List[MutationOutcome]
    report: StatusReport
    dry_run: bool = False
    cancelled: bool = False
    skipped: List[MutationOutcome] = field(default_factory=list)
    unverified: List[MutationOutcome] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return self.report.counts

    @property
    def exit_code(self) -> int:
        return 1 if self.report.counts.get("errors") else 0

    def summary(self) -> str:
        return format_report(self.report)


class ReconciliationPass:
    """Load rules, read the board, evaluate, plan and dispatch.

    Not reentrant: callers must not run two passes against the same board at
    once. ``environment`` is the mapping the monitored-user tokens resolve
    against; the pass never reads ``os.environ`` itself.
    """

    def __init__(
        self,
        platform: BoardPlatform,
        environment: Optional[Mapping[str, str]] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rule_store: Optional[RuleStore] = None,
    ) -> None:
        self.platform = platform
        self.environment = dict(environment or {})
        self.clock = clock
        self.sleep = sleep
        self.rule_store = rule_store or RuleStore()

    def prepare(self, rules_path: Path | str) -> Tuple[RuleSet, Scope]:
        return prepare_pass(rules_path, self.environment, rule_store=self.rule_store)

    def _limiter(self, rule_set: RuleSet) -> RateLimitManager:
        return RateLimitManager(
            self.platform.rate_limit_remaining,
            retry=rule_set.technical.retry,
            limits=rule_set.technical.rate_limit,
            sleep=self.sleep,
            clock=lambda: self.clock().timestamp(),
        )

    @log_action("load-snapshot")
    def _snapshot(self, rule_set: RuleSet, limiter: RateLimitManager) -> BoardSnapshot:
        return BoardSnapshotLoader(self.platform, limiter).load(rule_set.board_id)

    @log_action("collect")
    def _collect(self, context: Context, limiter: RateLimitManager) -> CollectionResult:
        return ActivityCollector(self.platform, limiter).collect(
            context.scope,
            window_hours=context.technical.update_window_hours,
            now=self.clock(),
        )

    def build_context(self, rule_set: RuleSet, scope: Scope, snapshot: BoardSnapshot) -> Context:
        today = today_in(rule_set.technical.timezone, now=self.clock)
        current = SprintCalendar.from_iterations(snapshot.fields.iterations).current(today)
        return Context(
            board_id=rule_set.board_id,
            scope=scope,
            rules=rule_set,
            fields=snapshot.fields,
            today=today,
            current_iteration=current,
            clock=self.clock,
        )

    def run(
        self,
        rules_path: Path | str,
        *,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        top: int = 5,
    ) -> PassResult:
        tracker = StatusTracker()
        rule_set, scope = self.prepare(rules_path)
        log = get_logger(__name__, metadata={"board": rule_set.board_id, "dry_run": dry_run})
        log.info("Pass started for %s", scope.organization)
        self.platform.bind_organization(scope.organization)
        limiter = self._limiter(rule_set)
        snapshot = self._snapshot(rule_set, limiter)
        context = self.build_context(rule_set, scope, snapshot)

        collection = self._collect(context, limiter)
        for source in collection.failed_sources:
            tracker.warn(source, ReasonCode.FETCH_FAILED, "dropped from this pass")

        evaluation = RuleEvaluator(context).evaluate(
            collection.items.values(), snapshot.items, collection.linked
        )
        tracker.record_many(evaluation.skipped)

        plan = ChangePlanner(skip_unchanged=rule_set.technical.skip_unchanged).plan(
            evaluation.mutations,
            snapshot.items,
            {**collection.linked, **collection.items},
        )
        tracker.record_many(plan.elided)

        unverified: List[MutationOutcome] = []
        if dry_run:
            outcomes = self._dry_run(plan)
            tracker.record_many(outcomes)
        else:
            outcomes = self._dispatch(context, limiter, tracker, plan, cancel_event)

        cancelled = any(outcome.reason is ReasonCode.CANCELLED for outcome in outcomes)
        if not dry_run and not cancelled and context.technical.verification.enabled:
            unverified = self._verify(context, limiter, tracker, plan, outcomes)

        report = tracker.report(top=top)
        log.info(
            "Pass finished: %s",
            ", ".join(f"{key}={value}" for key, value in report.counts.items()),
            extra={"metadata": {"counts": report.counts, "cancelled": cancelled}},
        )
        return PassResult(
            plan=list(plan.mutations),
            elided=list(plan.elided),
            outcomes=outcomes,
            report=report,
            dry_run=dry_run,
            cancelled=cancelled,
            skipped=list(evaluation.skipped),
            unverified=unverified,
        )

    @log_action("dispatch")
    def _dispatch(
        self,
        context: Context,
        limiter: RateLimitManager,
        tracker: StatusTracker,
        plan: ChangePlan,
        cancel_event: Optional[threading.Event],
    ) -> List[MutationOutcome]:
        executor = DispatchExecutor(
            self.platform, context, limiter=limiter, tracker=tracker, sleep=self.sleep
        )
        return executor.dispatch(plan.mutations, cancel_event=cancel_event)

    @log_action("verify")
    def _verify(
        self,
        context: Context,
        limiter: RateLimitManager,
        tracker: StatusTracker,
        plan: ChangePlan,
        outcomes: List[MutationOutcome],
    ) -> List[MutationOutcome]:
        verifier = StateVerifier(
            BoardSnapshotLoader(self.platform, limiter),
            context.technical.verification,
            sleep=self.sleep,
        )
        try:
            failures = verifier.verify(context.board_id, plan.mutations, outcomes)
        except SnapshotError as exc:
            tracker.warn("verification", ReasonCode.FETCH_FAILED, str(exc))
            return []
        for failure in failures:
            tracker.amend(failure)
        return failures

    @staticmethod
    def _dry_run(plan: ChangePlan) -> List[MutationOutcome]:
        outcomes = []
        for mutation in plan.mutations:
            logger.info("[dry-run] %s", mutation.describe(), extra={"metadata": mutation.to_dict()})
            outcomes.append(
                MutationOutcome.for_mutation(mutation, OutcomeStatus.SKIPPED, ReasonCode.DRY_RUN)
            )
        return outcomes


__all__ = ["PassResult", "ReconciliationPass", "prepare_pass"]
