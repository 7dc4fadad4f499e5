"""End-to-end reconciliation passes against the in-memory board."""

import threading
from datetime import date

import pytest

from boardsync.domain.models import ItemKind, ItemState, MutationField
from boardsync.domain.outcomes import OutcomeStatus, ReasonCode
from boardsync.engine import ReconciliationPass
from boardsync.errors import CollectionError, ConfigurationError, SnapshotError
from boardsync.platform.memory import InMemoryPlatform

ENVIRONMENT = {"GITHUB_AUTHOR": "alice"}


@pytest.fixture
def run_pass(sample_document, write_rules, clock, recording_sleep):
    rules_path = write_rules(sample_document)

    def _run(platform, *, environment=ENVIRONMENT, **kwargs):
        engine = ReconciliationPass(platform, environment, clock=clock, sleep=recording_sleep)
        return engine.run(rules_path, **kwargs)

    return _run


def test_new_pull_request_is_admitted_and_placed(platform, make_item, run_pass):
    item = platform.add_item(make_item("P1"))

    result = run_pass(platform)

    assert [(m.field, m.value) for m in result.plan] == [
        (MutationField.MEMBERSHIP, True),
        (MutationField.STATUS, "Active"),
        (MutationField.SPRINT, "it-42"),
        (MutationField.ASSIGNEES, frozenset({"alice"})),
    ]
    assert [o.status for o in result.outcomes] == [OutcomeStatus.CHANGED] * 4
    board_item = platform.board_item("P1")
    assert (board_item.column, board_item.sprint) == ("Active", "it-42")
    assert platform.items["P1"].assignees == frozenset({"alice"})
    assert platform.calls_to("add_assignees") == [(item.repository, item.number, ("alice",))]
    assert result.counts["changed"] == 1
    assert result.exit_code == 0


def test_second_pass_changes_nothing(platform, make_item, run_pass):
    platform.add_item(make_item("P1"))
    run_pass(platform)
    writes_before = len(platform.calls)

    result = run_pass(platform)

    assert result.plan == []
    assert result.counts["changed"] == 0
    writes = [
        name
        for name, _ in platform.calls[writes_before:]
        if name in {"admit_to_board", "set_single_select_field", "set_iteration_field", "add_assignees"}
    ]
    assert writes == []


def test_pull_request_already_in_place_plans_nothing(platform, make_item, run_pass):
    platform.add_item(make_item("P1", assignees={"alice"}))
    platform.place_on_board("P1", column="Active", sprint="it-42")

    result = run_pass(platform)

    assert result.plan == []
    assert result.exit_code == 0


def test_issue_follows_its_merged_pull_request(platform, make_item, run_pass):
    platform.add_item(make_item("P", author="carol", state=ItemState.MERGED), closing_refs=["I"])
    platform.add_item(make_item("I", kind=ItemKind.ISSUE, author="bob", age_hours=500))
    platform.place_on_board("P", column="Active", sprint="it-42")
    platform.place_on_board("I", column="Active", sprint="it-41")

    result = run_pass(platform)

    issue = platform.board_item("I")
    assert (issue.column, issue.sprint) == ("Done", "it-42")
    assert platform.board_item("P").column == "Done"
    issue_outcomes = [o for o in result.outcomes if o.item.number == platform.items["I"].number]
    assert [o.reason for o in issue_outcomes] == [
        ReasonCode.INHERITED_FROM_PR,
        ReasonCode.SPRINT_SET,
    ]


def test_recently_updated_issue_follows_its_merged_pull_request(platform, make_item, run_pass):
    platform.add_item(make_item("P", author="carol", state=ItemState.MERGED), closing_refs=["I"])
    platform.add_item(make_item("I", kind=ItemKind.ISSUE, author="bob"))

    first = run_pass(platform)

    issue = platform.board_item("I")
    assert (issue.column, issue.sprint) == ("Done", "it-42")
    assert first.counts["total"] == 2
    assert first.counts["changed"] == 2

    second = run_pass(platform)

    assert second.plan == []
    assert second.counts["changed"] == 0


def test_issue_of_closed_unmerged_pull_request_is_left_alone(platform, make_item, run_pass):
    platform.add_item(make_item("P", author="carol", state=ItemState.CLOSED), closing_refs=["I"])
    platform.add_item(make_item("I", kind=ItemKind.ISSUE, author="bob", age_hours=500))
    platform.place_on_board("P", column="Active", sprint="it-42")
    platform.place_on_board("I", column="Active", sprint="it-41")

    result = run_pass(platform)

    assert [m for m in result.plan if m.content_id == "I"] == []
    issue = platform.board_item("I")
    assert (issue.column, issue.sprint) == ("Active", "it-41")


def test_rate_limited_admission_is_retried(platform, make_item, run_pass, recording_sleep):
    platform.add_item(make_item("P1"))
    platform.fail("admit_to_board", 429)

    result = run_pass(platform)

    admission = result.outcomes[0]
    assert admission.field is MutationField.MEMBERSHIP
    assert admission.status is OutcomeStatus.CHANGED
    assert admission.attempts == 2
    assert recording_sleep.calls == [1]


def test_missing_current_sprint_skips_only_the_sprint(make_item, run_pass):
    platform = InMemoryPlatform()
    platform.add_iteration("it-40", date(2026, 9, 7))
    platform.add_item(make_item("P1"))

    result = run_pass(platform)

    assert [m.field for m in result.plan] == [
        MutationField.MEMBERSHIP,
        MutationField.STATUS,
        MutationField.ASSIGNEES,
    ]
    assert [o.reason for o in result.skipped] == [ReasonCode.NO_CURRENT_SPRINT]
    assert platform.board_item("P1").sprint is None
    assert result.exit_code == 0


def test_failed_write_sets_exit_code(platform, make_item, run_pass):
    platform.add_item(make_item("P1"))
    platform.fail("set_single_select_field", 404)

    result = run_pass(platform)

    assert result.counts["errors"] == 1
    assert result.exit_code == 1
    assert platform.board_item("P1").sprint == "it-42"


def test_dry_run_writes_nothing(platform, make_item, run_pass):
    platform.add_item(make_item("P1"))

    result = run_pass(platform, dry_run=True)

    assert len(result.plan) == 4
    assert {o.reason for o in result.outcomes} == {ReasonCode.DRY_RUN}
    assert platform.board == {}
    assert platform.calls_to("admit_to_board") == []
    assert result.dry_run


def test_cancelled_pass_reports_pending_mutations(platform, make_item, run_pass):
    platform.add_item(make_item("P1"))
    event = threading.Event()
    event.set()

    result = run_pass(platform, cancel_event=event)

    assert result.cancelled
    assert {o.reason for o in result.outcomes} == {ReasonCode.CANCELLED}
    assert platform.board == {}


def test_failed_source_is_reported_as_warning(platform, make_item, run_pass):
    platform.add_item(make_item("P1", repository="org/r2"))
    platform.fail("list_updated_items", 401)

    result = run_pass(platform)

    assert [(w.source, w.reason) for w in result.report.warnings] == [
        ("repository:org/r1", ReasonCode.FETCH_FAILED)
    ]
    assert platform.board_item("P1") is not None


def test_every_source_failing_aborts_the_pass(platform, run_pass):
    platform.fail("list_updated_items", 401, 401)
    platform.fail("list_assigned_items", 401)

    with pytest.raises(CollectionError):
        run_pass(platform)


def test_unreadable_board_aborts_the_pass(platform, run_pass):
    platform.fail("list_board_fields", 401)

    with pytest.raises(SnapshotError):
        run_pass(platform)


def test_unresolved_monitored_user_aborts_before_any_call(platform, run_pass):
    with pytest.raises(ConfigurationError):
        run_pass(platform, environment={})

    assert platform.calls == []


class SilentStatusPlatform(InMemoryPlatform):
    """Accepts column writes without ever showing them on the board."""

    def set_single_select_field(self, board_id, project_item_id, field_id, option_id):
        self._record("set_single_select_field", board_id, project_item_id, field_id, option_id)


def _silent_board():
    board = SilentStatusPlatform()
    board.add_iteration("it-41", date(2026, 9, 21))
    board.add_iteration("it-42", date(2026, 10, 5))
    return board


def test_write_missing_from_the_board_is_unverified(make_item, run_pass, recording_sleep):
    board = _silent_board()
    board.add_item(make_item("P1"))

    result = run_pass(board)

    assert [(o.field, o.reason) for o in result.unverified] == [
        (MutationField.STATUS, ReasonCode.UNVERIFIED)
    ]
    assert result.unverified[0].attempts == 3
    assert recording_sleep.calls[-2:] == [1, 2]
    assert result.counts["errors"] == 1
    assert result.exit_code == 1


def test_verification_can_be_switched_off(
    make_item, sample_document, write_rules, clock, recording_sleep
):
    sample_document["technical"]["verification"]["enabled"] = False
    board = _silent_board()
    board.add_item(make_item("P1"))
    engine = ReconciliationPass(board, ENVIRONMENT, clock=clock, sleep=recording_sleep)

    result = engine.run(write_rules(sample_document, name="unverified.yml"))

    assert result.unverified == []
    assert result.exit_code == 0
    assert len(board.calls_to("list_board_members")) == 1


def test_dry_run_reads_the_board_once(platform, make_item, run_pass):
    platform.add_item(make_item("P1"))

    run_pass(platform, dry_run=True)

    assert len(platform.calls_to("list_board_members")) == 1
