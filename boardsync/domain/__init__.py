"""Domain models for board reconciliation."""

from .models import (
    NO_COLUMN,
    BoardField,
    BoardItem,
    BoardPage,
    Column,
    DesiredMutation,
    Item,
    ItemKind,
    ItemRef,
    ItemState,
    Iteration,
    MutationField,
    RateLimitStatus,
    Scope,
    dedupe_items,
)
from .outcomes import MutationOutcome, OutcomeStatus, ReasonCode

__all__ = [
    "NO_COLUMN",
    "BoardField",
    "BoardItem",
    "BoardPage",
    "Column",
    "DesiredMutation",
    "Item",
    "ItemKind",
    "ItemRef",
    "ItemState",
    "Iteration",
    "MutationField",
    "MutationOutcome",
    "OutcomeStatus",
    "RateLimitStatus",
    "ReasonCode",
    "Scope",
    "dedupe_items",
]
