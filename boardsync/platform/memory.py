"""Deterministic in-process board used for dry runs and tests."""

from __future__ import annotations

import itertools
import threading
import time
from collections import defaultdict, deque
from dataclasses import replace
from datetime import date, datetime
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from boardsync.domain.models import (
    BoardField,
    BoardItem,
    BoardPage,
    Column,
    Item,
    Iteration,
    RateLimitStatus,
)
from boardsync.errors import NotModifiedError, PlatformError
from boardsync.platform.base import BoardPlatform

STATUS_FIELD_ID = "field-status"
SPRINT_FIELD_ID = "field-sprint"


def _option_id(column: str) -> str:
    return f"opt-{column.lower()}"


class InMemoryPlatform(BoardPlatform):
    """A board that lives in a few dictionaries.

    Failures can be scripted per operation with :meth:`fail`; each scripted
    status is consumed by one call, so ``fail("admit_to_board", 429)`` makes
    the next admission hit a rate limit and the one after succeed.
    """

    def __init__(
        self,
        *,
        iterations: Iterable[Iteration] = (),
        page_size: int = 50,
        rate_limit: Optional[RateLimitStatus] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.page_size = page_size
        self.items: Dict[str, Item] = {}
        self.board: Dict[str, BoardItem] = {}
        self.closing_refs: Dict[str, List[str]] = {}
        self.iterations: List[Iteration] = list(iterations)
        self.rate_limit = rate_limit or RateLimitStatus(remaining=5000, reset=time.time() + 3600)
        self.calls: List[Tuple[str, Tuple[object, ...]]] = []
        self._failures: Dict[str, Deque[int]] = defaultdict(deque)
        self.status_field_name = "Status"
        self.sprint_field_name = "Sprint"
        self.bound_fields: Optional[Tuple[str, Optional[str]]] = None

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------
    def add_item(self, item: Item, closing_refs: Sequence[str] = ()) -> Item:
        with self._lock:
            self.items[item.content_id] = item
            if closing_refs:
                self.closing_refs[item.content_id] = list(closing_refs)
        return item

    def place_on_board(
        self,
        content_id: str,
        *,
        column: Optional[str] = None,
        sprint: Optional[str] = None,
        assignees: Iterable[str] = (),
    ) -> BoardItem:
        with self._lock:
            item = self.items.get(content_id)
            board_item = BoardItem(
                project_item_id=f"PVTI_{next(self._ids)}",
                content_id=content_id,
                column=column,
                sprint=sprint,
                assignees=frozenset(assignees) or (item.assignees if item else frozenset()),
                number=item.number if item else None,
                repository=item.repository if item else None,
                kind=item.kind if item else None,
            )
            self.board[content_id] = board_item
        return board_item

    def add_iteration(self, iteration_id: str, start: date, duration_days: int = 14) -> Iteration:
        iteration = Iteration(
            id=iteration_id,
            title=f"Sprint {iteration_id}",
            start_date=start,
            duration_days=duration_days,
        )
        self.iterations.append(iteration)
        return iteration

    def fail(self, operation: str, *statuses: int) -> None:
        """Queue error statuses for the next calls to ``operation``."""

        with self._lock:
            self._failures[operation].extend(statuses)

    def calls_to(self, operation: str) -> List[Tuple[object, ...]]:
        return [args for name, args in self.calls if name == operation]

    def board_item(self, content_id: str) -> Optional[BoardItem]:
        return self.board.get(content_id)

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------
    def _record(self, operation: str, *args: object) -> None:
        with self._lock:
            self.calls.append((operation, args))
            queue = self._failures.get(operation)
            status = queue.popleft() if queue else None
        if status is None:
            return
        if status == 304:
            raise NotModifiedError()
        raise PlatformError(status, f"scripted failure for {operation}")

    def _by_project_item(self, project_item_id: str) -> BoardItem:
        for board_item in self.board.values():
            if board_item.project_item_id == project_item_id:
                return board_item
        raise PlatformError(404, f"project item {project_item_id} not found", code="NOT_FOUND")

    def list_board_members(self, board_id: str, cursor: Optional[str] = None) -> BoardPage:
        self._record("list_board_members", board_id, cursor)
        with self._lock:
            members = list(self.board.values())
        start = int(cursor or 0)
        end = start + self.page_size
        next_cursor = str(end) if end < len(members) else None
        return BoardPage(items=tuple(members[start:end]), next_cursor=next_cursor)

    def list_board_fields(self, board_id: str) -> List[BoardField]:
        self._record("list_board_fields", board_id)
        fields = [
            BoardField(
                id=STATUS_FIELD_ID,
                name=self.status_field_name,
                data_type="SINGLE_SELECT",
                options={column: _option_id(column) for column in Column.names()},
            )
        ]
        if self.sprint_field_name:
            fields.append(
                BoardField(
                    id=SPRINT_FIELD_ID,
                    name=self.sprint_field_name,
                    data_type="ITERATION",
                    iterations=tuple(self.iterations),
                )
            )
        return fields

    def admit_to_board(self, board_id: str, content_id: str) -> str:
        self._record("admit_to_board", board_id, content_id)
        if content_id not in self.items:
            raise PlatformError(404, f"content {content_id} not found", code="NOT_FOUND")
        with self._lock:
            existing = self.board.get(content_id)
            if existing is not None:
                return existing.project_item_id
        return self.place_on_board(content_id).project_item_id

    def set_single_select_field(
        self, board_id: str, project_item_id: str, field_id: str, option_id: str
    ) -> None:
        self._record("set_single_select_field", board_id, project_item_id, field_id, option_id)
        names: Mapping[str, str] = {_option_id(column): column for column in Column.names()}
        if option_id not in names:
            raise PlatformError(422, f"unknown option {option_id}")
        with self._lock:
            board_item = self._by_project_item(project_item_id)
            self.board[board_item.content_id] = replace(board_item, column=names[option_id])

    def set_iteration_field(
        self, board_id: str, project_item_id: str, field_id: str, iteration_id: str
    ) -> None:
        self._record("set_iteration_field", board_id, project_item_id, field_id, iteration_id)
        with self._lock:
            board_item = self._by_project_item(project_item_id)
            self.board[board_item.content_id] = replace(board_item, sprint=iteration_id)

    def add_assignees(self, repository: str, number: int, logins: Sequence[str]) -> None:
        self._record("add_assignees", repository, number, tuple(logins))
        with self._lock:
            matches = [
                item
                for item in self.items.values()
                if item.repository == repository and item.number == number
            ]
            if not matches:
                raise PlatformError(404, f"{repository}#{number} not found", code="NOT_FOUND")
            for item in matches:
                updated = replace(item, assignees=item.assignees | frozenset(logins))
                self.items[item.content_id] = updated
                board_item = self.board.get(item.content_id)
                if board_item is not None:
                    self.board[item.content_id] = replace(
                        board_item, assignees=board_item.assignees | frozenset(logins)
                    )

    def list_updated_items(self, repository: str, since: datetime) -> List[Item]:
        self._record("list_updated_items", repository, since)
        with self._lock:
            return [
                item
                for item in self.items.values()
                if item.repository == repository and item.updated_at >= since
            ]

    def list_assigned_items(self, login: str, since: datetime) -> List[Item]:
        self._record("list_assigned_items", login, since)
        with self._lock:
            return [
                item
                for item in self.items.values()
                if (login in item.assignees or item.author == login) and item.updated_at >= since
            ]

    def list_closing_issue_references(self, pr_content_id: str) -> List[str]:
        self._record("list_closing_issue_references", pr_content_id)
        return list(self.closing_refs.get(pr_content_id, ()))

    def get_item(self, content_id: str) -> Item:
        self._record("get_item", content_id)
        item = self.items.get(content_id)
        if item is None:
            raise PlatformError(404, f"content {content_id} not found", code="NOT_FOUND")
        return item

    def rate_limit_remaining(self) -> RateLimitStatus:
        self._record("rate_limit_remaining")
        return self.rate_limit

    def bind_fields(self, status_field_id: str, sprint_field_id: Optional[str]) -> None:
        self.bound_fields = (status_field_id, sprint_field_id)


__all__ = ["InMemoryPlatform", "SPRINT_FIELD_ID", "STATUS_FIELD_ID"]
