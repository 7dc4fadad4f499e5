"""Board domain objects shared by every reconciliation stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple


class ItemKind(str, Enum):
    """Kinds of content a rule can target."""

    PULL_REQUEST = "PullRequest"
    ISSUE = "Issue"
    LINKED_ISSUE = "LinkedIssue"

    @classmethod
    def from_string(cls, raw: str) -> "ItemKind":
        for kind in cls:
            if raw in {kind.value, kind.name}:
                return kind
        raise ValueError(f"Unknown item kind: {raw!r}")


class ItemState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class Column(str, Enum):
    """Status options the board exposes."""

    PARKED = "Parked"
    NEW = "New"
    BACKLOG = "Backlog"
    NEXT = "Next"
    ACTIVE = "Active"
    WAITING = "Waiting"
    DONE = "Done"

    @classmethod
    def names(cls) -> Tuple[str, ...]:
        return tuple(column.value for column in cls)


# Pseudo-column used in transition tables for items without a Status value.
NO_COLUMN = "None"


class MutationField(str, Enum):
    """Board fields a mutation can write, in the order they must be applied."""

    MEMBERSHIP = "Membership"
    STATUS = "Status"
    SPRINT = "Sprint"
    ASSIGNEES = "Assignees"

    @property
    def rank(self) -> int:
        return _FIELD_ORDER.index(self)


_FIELD_ORDER = (
    MutationField.MEMBERSHIP,
    MutationField.STATUS,
    MutationField.SPRINT,
    MutationField.ASSIGNEES,
)


@dataclass(frozen=True)
class Item:
    """An issue or pull request that may belong on the board."""

    content_id: str
    number: int
    repository: str
    kind: ItemKind
    author: Optional[str] = None
    assignees: FrozenSet[str] = frozenset()
    state: ItemState = ItemState.OPEN
    is_draft: bool = False
    updated_at: datetime = field(default_factory=lambda: datetime.min.replace(tzinfo=timezone.utc))
    closing_issue_refs: Optional[Tuple[str, ...]] = None

    @property
    def merged(self) -> bool:
        return self.state is ItemState.MERGED

    @property
    def closed(self) -> bool:
        return self.state in (ItemState.CLOSED, ItemState.MERGED)

    @property
    def ref(self) -> "ItemRef":
        return ItemRef(kind=self.kind.value, number=self.number, repository=self.repository)

    def label(self) -> str:
        return f"{self.kind.value} #{self.number} [{self.repository}]"


@dataclass(frozen=True)
class ItemRef:
    """Key the status tracker files outcomes under."""

    kind: str
    number: int
    repository: str

    def __str__(self) -> str:
        return f"{self.kind} #{self.number} [{self.repository}]"


@dataclass(frozen=True)
class BoardItem:
    """An item's projection onto the board."""

    project_item_id: str
    content_id: str
    column: Optional[str] = None
    sprint: Optional[str] = None
    assignees: FrozenSet[str] = frozenset()
    number: Optional[int] = None
    repository: Optional[str] = None
    kind: Optional[ItemKind] = None


@dataclass(frozen=True)
class BoardPage:
    """One page of board members and the cursor of the next page, if any."""

    items: Tuple[BoardItem, ...]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class Iteration:
    """A sprint window ``[start_date, start_date + duration_days)``."""

    id: str
    title: str
    start_date: date
    duration_days: int

    @property
    def end_date(self) -> date:
        return self.start_date + timedelta(days=self.duration_days)

    def contains(self, day: date) -> bool:
        return self.start_date <= day < self.end_date


@dataclass(frozen=True)
class BoardField:
    """Field metadata discovered on the board."""

    id: str
    name: str
    data_type: str = "TEXT"
    options: Mapping[str, str] = field(default_factory=dict)
    iterations: Tuple[Iteration, ...] = ()


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    reset: float  # epoch seconds
    limit: Optional[int] = None


@dataclass(frozen=True)
class Scope:
    """Monitored organization, repositories and users for a pass."""

    organization: str
    monitored_repos: FrozenSet[str]
    monitored_users: Tuple[str, ...]

    @property
    def monitored_user(self) -> Optional[str]:
        return self.monitored_users[0] if self.monitored_users else None


@dataclass(frozen=True)
class DesiredMutation:
    """A planned write against the board."""

    content_id: str
    field: MutationField
    value: Any
    rationale: str
    item: ItemRef
    rule: str = ""
    project_item_id: Optional[str] = None
    reason: str = ""

    @property
    def key(self) -> Tuple[str, MutationField]:
        return (self.content_id, self.field)

    def describe(self) -> str:
        value = self.value
        if isinstance(value, (set, frozenset, tuple, list)):
            value = ",".join(sorted(value))
        if self.field is MutationField.MEMBERSHIP:
            return f"Admit {self.item}"
        return f"Set{self.field.value}={value} on {self.item}"

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, (set, frozenset)):
            value = sorted(value)
        return {
            "content_id": self.content_id,
            "project_item_id": self.project_item_id,
            "field": self.field.value,
            "value": value,
            "rationale": self.rationale,
            "rule": self.rule,
            "item": str(self.item),
        }


def dedupe_items(items: Iterable[Item]) -> Dict[str, Item]:
    """Keep one copy per content id; the most recently updated copy wins."""

    merged: Dict[str, Item] = {}
    for item in items:
        current = merged.get(item.content_id)
        if current is None or item.updated_at > current.updated_at:
            merged[item.content_id] = item
    return merged


__all__ = [
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
    "NO_COLUMN",
    "RateLimitStatus",
    "Scope",
    "dedupe_items",
]
