"""Gather recently active issues and pull requests from every monitored source."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from boardsync.dispatch.rate_limit import RateLimitManager
from boardsync.domain.models import Item, ItemKind, Scope, dedupe_items
from boardsync.errors import CollectionError, PlatformError
from boardsync.logging import get_logger
from boardsync.platform.base import BoardPlatform

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CollectionResult:
    """Candidates keyed by content id plus any linked issues hydrated for them."""

    items: Dict[str, Item] = field(default_factory=dict)
    linked: Dict[str, Item] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)
    succeeded_sources: List[str] = field(default_factory=list)

    def linked_issue(self, content_id: str) -> Optional[Item]:
        return self.items.get(content_id) or self.linked.get(content_id)

    def pull_requests(self) -> List[Item]:
        return [item for item in self.items.values() if item.kind is ItemKind.PULL_REQUEST]


class ActivityCollector:
    """Query monitored repositories and users, then merge what they returned.

    A failing source is dropped from the pass with a ``fetch-failed`` warning.
    Only when every source fails does collection raise :class:`CollectionError`.
    """

    def __init__(self, platform: BoardPlatform, limiter: Optional[RateLimitManager] = None) -> None:
        self.platform = platform
        self.limiter = limiter

    def _call(self, operation: Callable[[], T], description: str) -> T:
        if self.limiter is None:
            return operation()
        return self.limiter.execute(operation, description=description).value

    def _sources(self, scope: Scope, since: datetime) -> List[Tuple[str, Callable[[], List[Item]]]]:
        sources: List[Tuple[str, Callable[[], List[Item]]]] = []
        for repository in sorted(scope.monitored_repos):
            sources.append(
                (
                    f"repository:{repository}",
                    lambda repository=repository: self.platform.list_updated_items(repository, since),
                )
            )
        for login in scope.monitored_users:
            sources.append(
                (
                    f"user:{login}",
                    lambda login=login: self.platform.list_assigned_items(login, since),
                )
            )
        return sources

    def collect(self, scope: Scope, *, window_hours: int, now: datetime) -> CollectionResult:
        since = now - timedelta(hours=window_hours)
        result = CollectionResult()
        gathered: List[Item] = []
        for label, fetch in self._sources(scope, since):
            try:
                items = self._call(fetch, f"fetch {label}")
            except PlatformError as exc:
                result.failed_sources.append(label)
                logger.warning(
                    "Dropping %s from this pass: %s",
                    label,
                    exc,
                    extra={"metadata": {"reason": "fetch-failed", "status": exc.status}},
                )
                continue
            result.succeeded_sources.append(label)
            gathered.extend(item for item in items if item.updated_at >= since)

        if not result.succeeded_sources and result.failed_sources:
            raise CollectionError(
                "Every activity source failed", failures=result.failed_sources
            )

        merged = dedupe_items(gathered)
        result.items = dict(sorted(merged.items(), key=lambda pair: _order_key(pair[1])))
        self._attach_closing_refs(result)
        self._hydrate_linked(result)
        logger.info(
            "Collected %d candidate items since %s",
            len(result.items),
            since.isoformat(),
            extra={
                "metadata": {
                    "sources": len(result.succeeded_sources),
                    "failed": len(result.failed_sources),
                    "linked": len(result.linked),
                }
            },
        )
        return result

    def _attach_closing_refs(self, result: CollectionResult) -> None:
        for pull_request in result.pull_requests():
            if pull_request.closing_issue_refs is not None:
                continue
            try:
                refs = self._call(
                    lambda: self.platform.list_closing_issue_references(pull_request.content_id),
                    f"closing references of {pull_request.label()}",
                )
            except PlatformError as exc:
                logger.warning(
                    "Could not read issues closed by %s: %s",
                    pull_request.label(),
                    exc,
                    extra={"metadata": {"reason": "fetch-failed", "status": exc.status}},
                )
                refs = []
            result.items[pull_request.content_id] = replace(
                pull_request, closing_issue_refs=tuple(refs)
            )

    def _hydrate_linked(self, result: CollectionResult) -> None:
        wanted = _unique(
            ref
            for pull_request in result.pull_requests()
            for ref in pull_request.closing_issue_refs or ()
            if ref not in result.items
        )
        for content_id in wanted:
            try:
                result.linked[content_id] = self._call(
                    lambda: self.platform.get_item(content_id), f"linked issue {content_id}"
                )
            except PlatformError as exc:
                logger.warning(
                    "Could not load linked issue %s: %s",
                    content_id,
                    exc,
                    extra={"metadata": {"reason": "fetch-failed", "status": exc.status}},
                )


def _order_key(item: Item) -> Tuple[str, int, str]:
    return (item.repository, item.number, item.kind.value)


def _unique(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


__all__ = ["ActivityCollector", "CollectionResult"]
