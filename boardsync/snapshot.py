"""Load the complete board membership and field metadata for one pass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

from boardsync.context import FieldCatalog
from boardsync.dispatch.rate_limit import RateLimitManager
from boardsync.domain.models import BoardField, BoardItem, Column
from boardsync.errors import PlatformError, SnapshotError
from boardsync.logging import get_logger
from boardsync.platform.base import BoardPlatform

logger = get_logger(__name__)

T = TypeVar("T")

STATUS_FIELD_NAME = "Status"
SPRINT_FIELD_NAME = "Sprint"


@dataclass(frozen=True)
class BoardSnapshot:
    """Board members indexed by content id plus the discovered field catalog."""

    items: Mapping[str, BoardItem]
    fields: FieldCatalog

    def get(self, content_id: str) -> Optional[BoardItem]:
        return self.items.get(content_id)

    def __contains__(self, content_id: object) -> bool:
        return content_id in self.items

    def __len__(self) -> int:
        return len(self.items)


def _find_field(fields: Iterable[BoardField], name: str, data_type: str) -> Optional[BoardField]:
    candidates = list(fields)
    for board_field in candidates:
        if board_field.name.lower() == name.lower():
            return board_field
    for board_field in candidates:
        if board_field.data_type == data_type:
            return board_field
    return None


def build_field_catalog(fields: Iterable[BoardField]) -> FieldCatalog:
    """Resolve the Status and Sprint fields by name; Status is mandatory."""

    fields = list(fields)
    status = _find_field(fields, STATUS_FIELD_NAME, "SINGLE_SELECT")
    if status is None:
        raise SnapshotError(f"Board has no {STATUS_FIELD_NAME!r} field")
    missing = [column for column in Column.names() if column not in status.options]
    if missing:
        logger.warning(
            "Status field lacks options for %s",
            ", ".join(missing),
            extra={"metadata": {"reason": "not-found", "field": status.name}},
        )
    sprint = _find_field(fields, SPRINT_FIELD_NAME, "ITERATION")
    if sprint is None:
        logger.warning(
            "Board has no %s field; treating the sprint calendar as empty",
            SPRINT_FIELD_NAME,
            extra={"metadata": {"reason": "no-current-sprint"}},
        )
    return FieldCatalog(
        status_field_id=status.id,
        column_options=dict(status.options),
        sprint_field_id=sprint.id if sprint else None,
        iterations=tuple(sprint.iterations) if sprint else (),
    )


class BoardSnapshotLoader:
    """Reads every page of board members; any failure aborts the pass."""

    def __init__(self, platform: BoardPlatform, limiter: Optional[RateLimitManager] = None) -> None:
        self.platform = platform
        self.limiter = limiter

    def _call(self, operation: Callable[[], T], description: str) -> T:
        if self.limiter is None:
            return operation()
        return self.limiter.execute(operation, description=description).value

    def load(self, board_id: str) -> BoardSnapshot:
        try:
            fields = self._call(
                lambda: self.platform.list_board_fields(board_id), "list board fields"
            )
            catalog = build_field_catalog(fields)
            self.platform.bind_fields(catalog.status_field_id, catalog.sprint_field_id)
            members = self._members(board_id)
        except PlatformError as exc:
            raise self._unreadable(board_id, exc) from exc

        logger.info(
            "Loaded %d board items",
            len(members),
            extra={"metadata": {"board": board_id, "iterations": len(catalog.iterations)}},
        )
        return BoardSnapshot(items=members, fields=catalog)

    def members(self, board_id: str) -> Dict[str, BoardItem]:
        """Re-read board membership without the field catalog."""

        try:
            return self._members(board_id)
        except PlatformError as exc:
            raise self._unreadable(board_id, exc) from exc

    @staticmethod
    def _unreadable(board_id: str, exc: PlatformError) -> SnapshotError:
        logger.error(
            "Board snapshot for %s could not be read: %s",
            board_id,
            exc,
            extra={"metadata": {"status": exc.status}},
        )
        return SnapshotError(f"Board snapshot for {board_id} could not be read: {exc}")

    def _members(self, board_id: str) -> Dict[str, BoardItem]:
        members: Dict[str, BoardItem] = {}
        cursor: Optional[str] = None
        seen_cursors: List[str] = []
        while True:
            page = self._call(
                lambda: self.platform.list_board_members(board_id, cursor),
                "list board members",
            )
            for board_item in page.items:
                members[board_item.content_id] = board_item
            if not page.next_cursor:
                return members
            if page.next_cursor in seen_cursors:
                raise SnapshotError(f"Board pagination repeated cursor {page.next_cursor!r}")
            seen_cursors.append(page.next_cursor)
            cursor = page.next_cursor


__all__ = ["BoardSnapshot", "BoardSnapshotLoader", "build_field_catalog"]
