"""Explicit per-pass context handed to every reconciliation stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Mapping, Optional, Tuple

from boardsync.domain.models import Iteration, Scope
from boardsync.rules.store import RuleSet


@dataclass(frozen=True)
class FieldCatalog:
    """Board field ids discovered once per pass by name."""

    status_field_id: str
    column_options: Mapping[str, str]
    sprint_field_id: Optional[str] = None
    iterations: Tuple[Iteration, ...] = ()

    def option_for(self, column: str) -> Optional[str]:
        return self.column_options.get(column)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Context:
    board_id: str
    scope: Scope
    rules: RuleSet
    fields: FieldCatalog
    today: date
    current_iteration: Optional[Iteration] = None
    clock: Callable[[], datetime] = field(default=_utcnow, compare=False)

    @property
    def current_iteration_id(self) -> Optional[str]:
        return self.current_iteration.id if self.current_iteration else None

    @property
    def technical(self):
        return self.rules.technical


__all__ = ["Context", "FieldCatalog"]
