"""Walk the rule sections for each item and emit the mutations they ask for.

Evaluation is pure: it reads the board snapshot and the collected items and
never talks to the platform. Every item keeps a *working view* (membership,
column, sprint and assignees) that is updated as mutations are emitted, so a
sprint rule sees the column a column rule just chose and linked issues inherit
the pull request's desired-or-actual column.

Primary items are evaluated first, in collection order, against every section
except ``linked_issues``. Issues closed by those pull requests are evaluated
afterwards against ``linked_issues`` only, through ``LinkedIssue`` rules. A
column inherited from a pull request replaces the column the issue's own
rules chose earlier in the same pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from boardsync.context import Context
from boardsync.domain.models import (
    NO_COLUMN,
    BoardItem,
    DesiredMutation,
    Item,
    ItemKind,
    ItemRef,
    MutationField,
)
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode
from boardsync.logging import get_logger
from boardsync.rules.store import CURRENT_SPRINT, SECTION_ORDER, Rule

logger = get_logger(__name__)

PRIMARY_SECTIONS = tuple(section for section in SECTION_ORDER if section != "linked_issues")
BOARD_FIELDS = frozenset({MutationField.STATUS, MutationField.SPRINT})


@dataclass
class WorkingView:
    """What the board will look like for one item once emitted mutations land."""

    content_id: str
    in_project: bool = False
    column: Optional[str] = None
    sprint: Optional[str] = None
    assignees: Set[str] = field(default_factory=set)
    project_item_id: Optional[str] = None

    @classmethod
    def for_item(cls, item: Item, board_item: Optional[BoardItem]) -> "WorkingView":
        if board_item is None:
            return cls(content_id=item.content_id, assignees=set(item.assignees))
        return cls(
            content_id=item.content_id,
            in_project=True,
            column=board_item.column,
            sprint=board_item.sprint,
            assignees=set(board_item.assignees) | set(item.assignees),
            project_item_id=board_item.project_item_id,
        )


@dataclass
class Evaluation:
    """Mutations in emission order plus the outcomes of rules that were skipped."""

    mutations: List[DesiredMutation] = field(default_factory=list)
    skipped: List[MutationOutcome] = field(default_factory=list)

    def for_item(self, content_id: str) -> List[DesiredMutation]:
        return [mutation for mutation in self.mutations if mutation.content_id == content_id]


@dataclass
class _ItemPass:
    """Emission bookkeeping for one evaluation of one item."""

    item: Item
    ref: ItemRef
    view: WorkingView
    emitted: Dict[MutationField, int] = field(default_factory=dict)
    origin_column: Optional[str] = None

    @classmethod
    def start(cls, item: Item, view: WorkingView) -> "_ItemPass":
        return cls(item=item, ref=item.ref, view=view, origin_column=view.column)


def sprint_binding(sprint: Optional[str], current_iteration_id: Optional[str]) -> Optional[str]:
    if sprint is not None and sprint == current_iteration_id:
        return CURRENT_SPRINT
    return sprint


class RuleEvaluator:
    """Turn items plus the rule set into an ordered list of desired mutations."""

    def __init__(self, context: Context) -> None:
        self.context = context
        self.rules = context.rules

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------
    def bindings(self, item: Item, view: WorkingView) -> Dict[str, Any]:
        scope = self.context.scope
        return {
            "item.author": item.author,
            "item.assignees": frozenset(view.assignees),
            "item.column": view.column,
            "item.sprint": sprint_binding(view.sprint, self.context.current_iteration_id),
            "item.repository": item.repository,
            "item.state": item.state.value,
            "item.merged": item.merged,
            "item.closed": item.closed,
            "item.inProject": view.in_project,
            "monitored.user": scope.monitored_user,
            "monitored.repos": scope.monitored_repos,
        }

    @staticmethod
    def pr_bindings(pull_request: Item, view: WorkingView) -> Dict[str, Any]:
        return {
            "item.pr.column": view.column,
            "item.pr.assignees": frozenset(view.assignees),
            "item.pr.closed": pull_request.closed,
            "item.pr.merged": pull_request.merged,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def evaluate(
        self,
        items: Iterable[Item],
        board: Mapping[str, BoardItem],
        linked: Optional[Mapping[str, Item]] = None,
    ) -> Evaluation:
        evaluation = Evaluation()
        views: Dict[str, WorkingView] = {}
        passes: Dict[str, _ItemPass] = {}
        candidates: Dict[str, Item] = {}

        for item in items:
            candidates[item.content_id] = item
            view = views.setdefault(
                item.content_id, WorkingView.for_item(item, board.get(item.content_id))
            )
            passes[item.content_id] = self.evaluate_item(item, view, evaluation)

        for pull_request in candidates.values():
            if pull_request.kind is not ItemKind.PULL_REQUEST:
                continue
            for ref in pull_request.closing_issue_refs or ():
                issue = candidates.get(ref) or (linked or {}).get(ref)
                if issue is None:
                    logger.debug("Linked issue %s of %s was not loaded", ref, pull_request.label())
                    continue
                view = views.setdefault(ref, WorkingView.for_item(issue, board.get(ref)))
                state = passes.setdefault(ref, _ItemPass.start(issue, view))
                self.evaluate_linked_issue(
                    state, pull_request, views[pull_request.content_id], evaluation
                )

        logger.debug(
            "Evaluated %d items into %d mutations",
            len(candidates),
            len(evaluation.mutations),
            extra={"metadata": {"skipped": len(evaluation.skipped)}},
        )
        return evaluation

    def evaluate_item(self, item: Item, view: WorkingView, evaluation: Evaluation) -> _ItemPass:
        state = _ItemPass.start(item, view)
        for section in PRIMARY_SECTIONS:
            for rule in self.rules.rules(section):
                if not rule.applies_to(item.kind):
                    continue
                bindings = self.bindings(item, view)
                if not self._fires(rule, bindings, state):
                    continue
                for action in rule.actions:
                    self._apply_action(rule, action, bindings, state, evaluation)
        return state

    def evaluate_linked_issue(
        self,
        state: _ItemPass,
        pull_request: Item,
        pr_view: WorkingView,
        evaluation: Evaluation,
    ) -> None:
        """Apply ``linked_issues`` rules to the issue tracked by ``state``.

        Outcomes are recorded under the issue itself, so an issue that is also
        a candidate is reported once.
        """

        issue, view = state.item, state.view
        pr_context = self.pr_bindings(pull_request, pr_view)
        closed_unmerged = pull_request.closed and not pull_request.merged

        for rule in self.rules.rules("linked_issues"):
            if not rule.applies_to(ItemKind.LINKED_ISSUE):
                continue
            bindings = {**self.bindings(issue, view), **pr_context}
            if not self._fires(rule, bindings, state):
                continue
            for action in rule.actions:
                if closed_unmerged and action != "add_to_board":
                    logger.debug(
                        "%s keeps its column: %s was closed without merging",
                        issue.label(),
                        pull_request.label(),
                    )
                    continue
                if action == "inherit_column":
                    self._inherit_column(rule, bindings, pr_view, state, evaluation)
                elif action == "inherit_assignees":
                    additions = frozenset(pr_view.assignees - view.assignees)
                    if additions:
                        self._emit(
                            rule,
                            MutationField.ASSIGNEES,
                            additions,
                            state,
                            evaluation,
                            reason=ReasonCode.INHERITED_FROM_PR.value,
                        )
                else:
                    self._apply_action(rule, action, bindings, state, evaluation)

    # ------------------------------------------------------------------
    # Rule mechanics
    # ------------------------------------------------------------------
    def _fires(self, rule: Rule, bindings: Mapping[str, Any], state: _ItemPass) -> bool:
        if not rule.condition.holds(bindings):
            return False
        if rule.skip_if is not None and rule.skip_if.holds(bindings):
            logger.debug("Rule %r skipped for %s by skip_if", rule.name, state.ref)
            return False
        return True

    def transition_allowed(self, rule: Rule, current: Optional[str], target: str, bindings) -> bool:
        return any(
            transition.matches(current, target)
            and all(condition.holds(bindings) for condition in transition.conditions)
            for transition in rule.transitions
        )

    def _apply_action(
        self,
        rule: Rule,
        action: str,
        bindings: Mapping[str, Any],
        state: _ItemPass,
        evaluation: Evaluation,
    ) -> None:
        if action == "add_to_board":
            self._emit(rule, MutationField.MEMBERSHIP, True, state, evaluation)
        elif action == "set_column":
            target = str(rule.value)
            if (state.view.column or NO_COLUMN) == target:
                logger.debug("Rule %r leaves %s in %s", rule.name, state.ref, target)
                return
            if not self.transition_allowed(rule, state.view.column, target, bindings):
                self._skip(
                    rule,
                    MutationField.STATUS,
                    state,
                    evaluation,
                    ReasonCode.TRANSITION_DISALLOWED,
                    f"{state.view.column or NO_COLUMN} -> {target} is not a valid transition",
                )
                return
            self._emit(rule, MutationField.STATUS, target, state, evaluation)
        elif action == "set_sprint":
            iteration_id = self.context.current_iteration_id
            if iteration_id is None:
                self._skip(
                    rule,
                    MutationField.SPRINT,
                    state,
                    evaluation,
                    ReasonCode.NO_CURRENT_SPRINT,
                    "no iteration contains today",
                )
                return
            self._emit(rule, MutationField.SPRINT, iteration_id, state, evaluation)
        elif action == "add_assignee":
            logins = self._assignee_logins(rule, bindings)
            if logins:
                self._emit(rule, MutationField.ASSIGNEES, logins, state, evaluation)
        else:  # pragma: no cover - the rule store rejects unknown actions
            raise ValueError(f"Unsupported action {action!r}")

    def _inherit_column(
        self,
        rule: Rule,
        bindings: Mapping[str, Any],
        pr_view: WorkingView,
        state: _ItemPass,
        evaluation: Evaluation,
    ) -> None:
        target = pr_view.column
        if not target or state.view.column == target:
            return
        displaced = self._own_status(state, evaluation)
        current = state.origin_column if displaced is not None else state.view.column
        if rule.transitions and not self.transition_allowed(rule, current, target, bindings):
            self._skip(
                rule,
                MutationField.STATUS,
                state,
                evaluation,
                ReasonCode.TRANSITION_DISALLOWED,
                f"{current or NO_COLUMN} -> {target} is not a valid transition",
            )
            return
        if displaced is not None:
            earlier = evaluation.mutations[displaced]
            evaluation.skipped.append(
                MutationOutcome.for_mutation(
                    earlier,
                    OutcomeStatus.SKIPPED,
                    ReasonCode.SUPERSEDED,
                    detail=f"rule {rule.name!r} inherits {target} from the pull request",
                )
            )
            evaluation.mutations[displaced] = self._mutation(
                rule,
                MutationField.STATUS,
                target,
                state,
                reason=ReasonCode.INHERITED_FROM_PR.value,
            )
            state.view.column = target
            return
        self._emit(
            rule,
            MutationField.STATUS,
            target,
            state,
            evaluation,
            reason=ReasonCode.INHERITED_FROM_PR.value,
        )

    @staticmethod
    def _own_status(state: _ItemPass, evaluation: Evaluation) -> Optional[int]:
        """Index of a Status the issue's own rules emitted this pass, if any."""

        index = state.emitted.get(MutationField.STATUS)
        if index is None:
            return None
        if evaluation.mutations[index].reason == ReasonCode.INHERITED_FROM_PR.value:
            return None
        return index

    @staticmethod
    def _assignee_logins(rule: Rule, bindings: Mapping[str, Any]) -> FrozenSet[str]:
        if rule.value_expression is None:
            return frozenset({str(rule.value)})
        resolved = rule.value_expression.evaluate(bindings)
        if not resolved:
            return frozenset()
        if isinstance(resolved, str):
            return frozenset({resolved})
        return frozenset(str(login) for login in resolved if login)

    def _skip(
        self,
        rule: Rule,
        mutation_field: MutationField,
        state: _ItemPass,
        evaluation: Evaluation,
        reason: ReasonCode,
        detail: str,
    ) -> None:
        logger.debug("Rule %r skipped for %s: %s", rule.name, state.ref, detail)
        evaluation.skipped.append(
            MutationOutcome(
                item=state.ref,
                status=OutcomeStatus.SKIPPED,
                reason=reason,
                field=mutation_field,
                rule=rule.name,
                detail=detail,
            )
        )

    @staticmethod
    def _mutation(
        rule: Rule,
        mutation_field: MutationField,
        value: Any,
        state: _ItemPass,
        *,
        reason: str = "",
    ) -> DesiredMutation:
        return DesiredMutation(
            content_id=state.view.content_id,
            field=mutation_field,
            value=value,
            rationale=f"{rule.section}/{rule.name}",
            item=state.ref,
            rule=rule.name,
            project_item_id=state.view.project_item_id,
            reason=reason,
        )

    def _emit(
        self,
        rule: Rule,
        mutation_field: MutationField,
        value: Any,
        state: _ItemPass,
        evaluation: Evaluation,
        *,
        reason: str = "",
    ) -> None:
        view = state.view
        if mutation_field in BOARD_FIELDS and not view.in_project:
            self._skip(
                rule,
                mutation_field,
                state,
                evaluation,
                ReasonCode.NOT_ADMITTED,
                f"{state.ref} is not on the board",
            )
            return

        previous = state.emitted.get(mutation_field)
        if previous is not None:
            if mutation_field is not MutationField.ASSIGNEES:
                earlier = evaluation.mutations[previous]
                self._skip(
                    rule,
                    mutation_field,
                    state,
                    evaluation,
                    ReasonCode.SUPERSEDED,
                    f"rule {earlier.rule!r} already set {mutation_field.value}",
                )
                return
            # Assignee additions from several rules accumulate.
            earlier = evaluation.mutations[previous]
            evaluation.mutations[previous] = replace(earlier, value=earlier.value | value)
            view.assignees.update(value)
            return

        state.emitted[mutation_field] = len(evaluation.mutations)
        evaluation.mutations.append(self._mutation(rule, mutation_field, value, state, reason=reason))

        if mutation_field is MutationField.MEMBERSHIP:
            view.in_project = True
        elif mutation_field is MutationField.STATUS:
            view.column = value
        elif mutation_field is MutationField.SPRINT:
            view.sprint = value
        else:
            view.assignees.update(value)


__all__ = ["Evaluation", "RuleEvaluator", "WorkingView", "sprint_binding"]
