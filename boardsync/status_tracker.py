"""Thread-safe accumulation of per-item outcomes and the end-of-run report."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from boardsync.domain.models import ItemRef
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode

# Highest precedence first.
STATUS_PRECEDENCE = (
    OutcomeStatus.ERROR,
    OutcomeStatus.CHANGED,
    OutcomeStatus.UNCHANGED,
    OutcomeStatus.SKIPPED,
)

_COUNT_KEYS = {
    OutcomeStatus.CHANGED: "changed",
    OutcomeStatus.UNCHANGED: "unchanged",
    OutcomeStatus.SKIPPED: "skipped",
    OutcomeStatus.ERROR: "errors",
}


@dataclass(frozen=True)
class SourceWarning:
    source: str
    reason: ReasonCode
    detail: str = ""


@dataclass
class ItemSummary:
    item: ItemRef
    status: OutcomeStatus
    reasons: List[str]

    def to_dict(self) -> Dict[str, object]:
        return {"item": str(self.item), "status": self.status.value, "reasons": self.reasons}


@dataclass
class StatusReport:
    counts: Dict[str, int]
    top: Dict[str, List[ItemSummary]]
    warnings: List[SourceWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "counts": dict(self.counts),
            "top": {
                category: [summary.to_dict() for summary in summaries]
                for category, summaries in self.top.items()
            },
            "warnings": [
                {"source": w.source, "reason": w.reason.value, "detail": w.detail}
                for w in self.warnings
            ],
        }


def aggregate_status(outcomes: Iterable[MutationOutcome]) -> Optional[OutcomeStatus]:
    statuses = {outcome.status for outcome in outcomes}
    for status in STATUS_PRECEDENCE:
        if status in statuses:
            return status
    return None


class StatusTracker:
    """Collects outcomes keyed by ``(kind, number, repository)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: Dict[ItemRef, List[MutationOutcome]] = {}
        self._warnings: List[SourceWarning] = []

    def record(self, outcome: MutationOutcome) -> None:
        with self._lock:
            self._outcomes.setdefault(outcome.item, []).append(outcome)

    def record_many(self, outcomes: Iterable[MutationOutcome]) -> None:
        for outcome in outcomes:
            self.record(outcome)

    def amend(self, outcome: MutationOutcome) -> None:
        """Replace the ``changed`` outcome recorded for the same item and field."""

        with self._lock:
            entries = self._outcomes.setdefault(outcome.item, [])
            for index, existing in enumerate(entries):
                if existing.field is outcome.field and existing.status is OutcomeStatus.CHANGED:
                    entries[index] = outcome
                    return
            entries.append(outcome)

    def warn(self, source: str, reason: ReasonCode, detail: str = "") -> None:
        with self._lock:
            self._warnings.append(SourceWarning(source=source, reason=reason, detail=detail))

    def outcomes(self, item: Optional[ItemRef] = None) -> List[MutationOutcome]:
        with self._lock:
            if item is not None:
                return list(self._outcomes.get(item, ()))
            return [outcome for entries in self._outcomes.values() for outcome in entries]

    def status_of(self, item: ItemRef) -> Optional[OutcomeStatus]:
        return aggregate_status(self.outcomes(item))

    def reasons(self, item: ItemRef) -> List[str]:
        seen: Dict[str, None] = {}
        for outcome in self.outcomes(item):
            seen.setdefault(outcome.reason.value, None)
        return list(seen)

    def _summaries(self) -> List[ItemSummary]:
        with self._lock:
            snapshot = {item: list(entries) for item, entries in self._outcomes.items()}
        summaries = []
        for item, entries in snapshot.items():
            status = aggregate_status(entries)
            if status is None:
                continue
            reasons: Dict[str, None] = {}
            for outcome in entries:
                reasons.setdefault(outcome.reason.value, None)
            summaries.append(ItemSummary(item=item, status=status, reasons=list(reasons)))
        return summaries

    def counts(self) -> Dict[str, int]:
        counts = {"total": 0, "changed": 0, "unchanged": 0, "skipped": 0, "errors": 0}
        for summary in self._summaries():
            counts["total"] += 1
            counts[_COUNT_KEYS[summary.status]] += 1
        return counts

    def report(self, top: int = 5) -> StatusReport:
        summaries = self._summaries()
        grouped: Dict[str, List[ItemSummary]] = {key: [] for key in _COUNT_KEYS.values()}
        for summary in summaries:
            grouped[_COUNT_KEYS[summary.status]].append(summary)
        with self._lock:
            warnings = list(self._warnings)
        return StatusReport(
            counts=self.counts(),
            top={key: entries[:top] for key, entries in grouped.items()},
            warnings=warnings,
        )


def format_report(report: StatusReport) -> str:
    counts = report.counts
    lines = [
        "Board sync: {total} items, {changed} changed, {unchanged} unchanged, "
        "{skipped} skipped, {errors} errors".format(**counts)
    ]
    for category, summaries in report.top.items():
        if not summaries:
            continue
        lines.append(f"{category}:")
        for summary in summaries:
            lines.append(f"  {summary.item} ({', '.join(summary.reasons)})")
    for warning in report.warnings:
        lines.append(f"warning: {warning.source} [{warning.reason.value}] {warning.detail}".rstrip())
    return "\n".join(lines)


__all__ = [
    "ItemSummary",
    "SourceWarning",
    "StatusReport",
    "StatusTracker",
    "aggregate_status",
    "format_report",
]
