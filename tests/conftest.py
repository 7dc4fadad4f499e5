"""Pytest configuration and shared fixtures for board-sync tests."""

from __future__ import annotations

import copy
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT_STR = str(PROJECT_ROOT)

if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)

from boardsync.context import Context  # noqa: E402
from boardsync.domain.models import Item, ItemKind, ItemState, Iteration, Scope  # noqa: E402
from boardsync.platform.memory import InMemoryPlatform  # noqa: E402
from boardsync.rules.store import RuleStore  # noqa: E402
from boardsync.snapshot import build_field_catalog  # noqa: E402

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
CURRENT_SPRINT_ID = "it-42"
PREVIOUS_SPRINT_ID = "it-41"


def _sample_document() -> dict:
    document = yaml.safe_load((PROJECT_ROOT / "config" / "rules.yml").read_text(encoding="utf-8"))
    document["project"]["id"] = "board-1"
    document["automation"]["repository_scope"]["organization"] = "org"
    document["automation"]["repository_scope"]["repositories"] = ["r1", "r2"]
    document["technical"]["timezone"] = "UTC"
    document["technical"]["batch_delay_seconds"] = 0
    return document


@pytest.fixture
def sample_document() -> dict:
    """The shipped rule document, pointed at ``org/r1`` and ``org/r2`` in UTC."""

    return copy.deepcopy(_sample_document())


@pytest.fixture
def write_rules(tmp_path):
    def _write(document: dict, name: str = "rules.yml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def clock():
    return lambda: NOW


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_item():
    counter = iter(range(1, 10_000))

    def _make(
        content_id: str,
        *,
        kind: ItemKind = ItemKind.PULL_REQUEST,
        repository: str = "org/r1",
        author: str = "alice",
        assignees=(),
        state: ItemState = ItemState.OPEN,
        age_hours: float = 1,
        closing_issue_refs=None,
        number=None,
    ) -> Item:
        return Item(
            content_id=content_id,
            number=number if number is not None else next(counter),
            repository=repository,
            kind=kind,
            author=author,
            assignees=frozenset(assignees),
            state=state,
            updated_at=NOW - timedelta(hours=age_hours),
            closing_issue_refs=tuple(closing_issue_refs) if closing_issue_refs is not None else None,
        )

    return _make


@pytest.fixture
def platform() -> InMemoryPlatform:
    board = InMemoryPlatform()
    board.add_iteration(PREVIOUS_SPRINT_ID, date(2026, 9, 21))
    board.add_iteration(CURRENT_SPRINT_ID, date(2026, 10, 5))
    return board


@pytest.fixture
def make_context(sample_document, platform):
    """Build a :class:`Context` straight from a rule document."""

    def _make(document=None, *, current=True, monitored_user="alice") -> Context:
        rule_set = RuleStore().from_mapping(document or sample_document)
        fields = build_field_catalog(platform.list_board_fields(rule_set.board_id))
        iteration = Iteration(CURRENT_SPRINT_ID, f"Sprint {CURRENT_SPRINT_ID}", date(2026, 10, 5), 14)
        return Context(
            board_id=rule_set.board_id,
            scope=Scope(
                organization=rule_set.organization,
                monitored_repos=frozenset({"org/r1", "org/r2"}),
                monitored_users=(monitored_user,),
            ),
            rules=rule_set,
            fields=fields,
            today=NOW.date(),
            current_iteration=iteration if current else None,
            clock=lambda: NOW,
        )

    return _make
