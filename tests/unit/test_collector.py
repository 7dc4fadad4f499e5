import logging
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from boardsync.collector import ActivityCollector
from boardsync.domain.models import ItemKind, ItemState, Scope
from boardsync.errors import CollectionError

NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
SCOPE = Scope(
    organization="org",
    monitored_repos=frozenset({"org/r1", "org/r2"}),
    monitored_users=("alice",),
)


def _collect(platform, scope=SCOPE, window_hours=48):
    return ActivityCollector(platform).collect(scope, window_hours=window_hours, now=NOW)


def test_collects_items_inside_the_window(platform, make_item):
    platform.add_item(make_item("P1", age_hours=2))
    platform.add_item(make_item("I1", kind=ItemKind.ISSUE, author="bob", repository="org/r2"))
    platform.add_item(make_item("OLD", age_hours=72))

    result = _collect(platform)

    assert list(result.items) == ["P1", "I1"]
    assert result.succeeded_sources == ["repository:org/r1", "repository:org/r2", "user:alice"]
    assert result.failed_sources == []


def test_items_from_several_sources_are_merged(platform, make_item):
    # Authored by alice in an unmonitored repository, and seen through org/r1.
    platform.add_item(make_item("P1"))
    platform.add_item(make_item("P2", repository="other/x"))

    result = _collect(platform)

    assert sorted(result.items) == ["P1", "P2"]
    assert len(platform.calls_to("list_updated_items")) == 2
    assert len(platform.calls_to("list_assigned_items")) == 1


def test_items_are_ordered_by_repository_and_number(platform, make_item):
    platform.add_item(make_item("B", repository="org/r2", number=1))
    platform.add_item(make_item("A2", number=7))
    platform.add_item(make_item("A1", number=3))

    assert list(_collect(platform).items) == ["A1", "A2", "B"]


def test_failed_source_is_dropped_with_a_warning(platform, make_item, caplog):
    platform.add_item(make_item("P1", repository="org/r2", author="bob"))
    platform.fail("list_updated_items", 500)
    logger = logging.getLogger("boardsync")
    logger.propagate = True
    try:
        with caplog.at_level(logging.WARNING, logger="boardsync"):
            result = _collect(platform)
    finally:
        logger.propagate = False

    assert result.failed_sources == ["repository:org/r1"]
    assert list(result.items) == ["P1"]
    assert any("repository:org/r1" in record.getMessage() for record in caplog.records)


def test_every_source_failing_aborts(platform):
    platform.fail("list_updated_items", 500, 500)
    platform.fail("list_assigned_items", 401)

    with pytest.raises(CollectionError) as excinfo:
        _collect(platform)

    assert excinfo.value.failures == (
        "repository:org/r1",
        "repository:org/r2",
        "user:alice",
    )


def test_closing_references_are_attached(platform, make_item):
    platform.add_item(make_item("P1"), closing_refs=["I1"])
    platform.add_item(make_item("I1", kind=ItemKind.ISSUE, author="bob"))

    result = _collect(platform)

    assert result.items["P1"].closing_issue_refs == ("I1",)
    assert result.linked == {}
    assert result.linked_issue("I1").content_id == "I1"


def test_stale_linked_issue_is_hydrated(platform, make_item):
    platform.add_item(
        make_item("P1", author="carol", state=ItemState.MERGED, closing_issue_refs=["I1"])
    )
    platform.add_item(make_item("I1", kind=ItemKind.ISSUE, author="bob", age_hours=500))

    result = _collect(platform)

    assert "I1" not in result.items
    assert result.linked["I1"].content_id == "I1"
    assert platform.calls_to("get_item") == [("I1",)]
    assert platform.calls_to("list_closing_issue_references") == []


def test_unreadable_linked_issue_is_skipped(platform, make_item):
    platform.add_item(make_item("P1", closing_issue_refs=["ghost"]))

    result = _collect(platform)

    assert result.linked == {}
    assert list(result.items) == ["P1"]


def test_closing_reference_failure_leaves_no_links(platform, make_item):
    platform.add_item(make_item("P1"), closing_refs=["I1"])
    platform.fail("list_closing_issue_references", 502)

    result = _collect(platform)

    assert result.items["P1"].closing_issue_refs == ()


def test_newest_copy_wins(platform, make_item):
    stale = make_item("P1", age_hours=10)
    fresh = replace(stale, assignees=frozenset({"dave"}), updated_at=NOW)

    platform.add_item(stale)
    fetch_assigned = platform.list_assigned_items

    def newer(login, since):
        fetch_assigned(login, since)
        return [fresh]

    platform.list_assigned_items = newer

    result = _collect(platform)

    assert result.items["P1"].assignees == frozenset({"dave"})
