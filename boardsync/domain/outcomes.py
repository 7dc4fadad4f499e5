"""Outcome records produced while reconciling the board."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from boardsync.domain.models import DesiredMutation, ItemRef, MutationField


class OutcomeStatus(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    ERROR = "error"


class ReasonCode(str, Enum):
    """Stable reason codes attached to every outcome, warning and error."""

    ADMITTED = "admitted"
    STATUS_SET = "status-set"
    SPRINT_SET = "sprint-set"
    ASSIGNEE_ADDED = "assignee-added"
    INHERITED_FROM_PR = "inherited-from-pr"
    ALREADY_CURRENT = "already-current"
    TRANSITION_DISALLOWED = "transition-disallowed"
    SUPERSEDED = "superseded"
    NO_CURRENT_SPRINT = "no-current-sprint"
    RATE_LIMITED = "rate-limited"
    NOT_FOUND = "not-found"
    UNAUTHORIZED = "unauthorized"
    SERVER_ERROR = "server-error"
    FETCH_FAILED = "fetch-failed"
    CANCELLED = "cancelled"
    NOT_ADMITTED = "not-admitted"
    DRY_RUN = "dry-run"
    UNVERIFIED = "unverified"


_SUCCESS_REASONS = {
    MutationField.MEMBERSHIP: ReasonCode.ADMITTED,
    MutationField.STATUS: ReasonCode.STATUS_SET,
    MutationField.SPRINT: ReasonCode.SPRINT_SET,
    MutationField.ASSIGNEES: ReasonCode.ASSIGNEE_ADDED,
}


def success_reason(mutation: DesiredMutation) -> ReasonCode:
    """Reason code recorded when ``mutation`` is applied."""

    if mutation.reason == ReasonCode.INHERITED_FROM_PR.value:
        return ReasonCode.INHERITED_FROM_PR
    return _SUCCESS_REASONS[mutation.field]


def reason_for_status(status: int) -> ReasonCode:
    """Map a terminal transport status to its reason code."""

    if status == 401:
        return ReasonCode.UNAUTHORIZED
    if status == 404:
        return ReasonCode.NOT_FOUND
    if status in (403, 429):
        return ReasonCode.RATE_LIMITED
    return ReasonCode.SERVER_ERROR


@dataclass(frozen=True)
class MutationOutcome:
    """Exactly one of these is recorded for each planned or skipped mutation."""

    item: ItemRef
    status: OutcomeStatus
    reason: ReasonCode
    field: Optional[MutationField] = None
    rule: str = ""
    detail: str = ""
    attempts: int = 0
    error_code: Optional[int] = None

    @classmethod
    def for_mutation(
        cls,
        mutation: DesiredMutation,
        status: OutcomeStatus,
        reason: ReasonCode,
        *,
        detail: str = "",
        attempts: int = 0,
        error_code: Optional[int] = None,
    ) -> "MutationOutcome":
        return cls(
            item=mutation.item,
            status=status,
            reason=reason,
            field=mutation.field,
            rule=mutation.rule,
            detail=detail or mutation.describe(),
            attempts=attempts,
            error_code=error_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item": str(self.item),
            "status": self.status.value,
            "reason": self.reason.value,
            "field": self.field.value if self.field else None,
            "rule": self.rule,
            "detail": self.detail,
            "attempts": self.attempts,
            "error_code": self.error_code,
        }


__all__ = [
    "MutationOutcome",
    "OutcomeStatus",
    "ReasonCode",
    "reason_for_status",
    "success_reason",
]
