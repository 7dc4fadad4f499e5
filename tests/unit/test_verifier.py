import pytest

from boardsync.domain.models import BoardItem, DesiredMutation, MutationField
from boardsync.domain.outcomes import MutationOutcome, OutcomeStatus, ReasonCode
from boardsync.errors import SnapshotError
from boardsync.rules.store import VerificationSettings
from boardsync.snapshot import BoardSnapshotLoader
from boardsync.verifier import StateVerifier, mismatch


def _applied(item, field, value, status=OutcomeStatus.CHANGED):
    mutation = DesiredMutation(
        content_id=item.content_id,
        field=field,
        value=value,
        rationale="columns/PullRequest No Column",
        item=item.ref,
    )
    return mutation, MutationOutcome.for_mutation(mutation, status, ReasonCode.STATUS_SET)


def _verify(platform, recording_sleep, applied, **settings):
    verifier = StateVerifier(
        BoardSnapshotLoader(platform),
        VerificationSettings(**settings) if settings else None,
        sleep=recording_sleep,
    )
    mutations = [mutation for mutation, _ in applied]
    outcomes = [outcome for _, outcome in applied]
    return verifier.verify("board-1", mutations, outcomes)


def test_visible_writes_pass_on_the_first_read(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1", assignees={"alice"}))
    platform.place_on_board("P1", column="Active", sprint="it-42")

    failures = _verify(
        platform,
        recording_sleep,
        [
            _applied(item, MutationField.MEMBERSHIP, True),
            _applied(item, MutationField.STATUS, "active"),
            _applied(item, MutationField.SPRINT, "it-42"),
            _applied(item, MutationField.ASSIGNEES, frozenset({"alice"})),
        ],
    )

    assert failures == []
    assert len(platform.calls_to("list_board_members")) == 1
    assert recording_sleep.calls == []


def test_late_write_is_found_on_a_later_read(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1"))
    platform.place_on_board("P1", column="New")
    read_members = platform.list_board_members
    reads = []

    def settling(board_id, cursor=None):
        reads.append(cursor)
        if len(reads) == 2:
            platform.place_on_board("P1", column="Active")
        return read_members(board_id, cursor)

    platform.list_board_members = settling

    failures = _verify(platform, recording_sleep, [_applied(item, MutationField.STATUS, "Active")])

    assert failures == []
    assert len(reads) == 2
    assert recording_sleep.calls == [1]


def test_write_that_never_shows_is_an_error(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1"))
    platform.place_on_board("P1", column="New")

    failures = _verify(platform, recording_sleep, [_applied(item, MutationField.STATUS, "Active")])

    assert len(failures) == 1
    failure = failures[0]
    assert (failure.status, failure.reason) == (OutcomeStatus.ERROR, ReasonCode.UNVERIFIED)
    assert failure.field is MutationField.STATUS
    assert failure.item == item.ref
    assert failure.attempts == 3
    assert "column is 'New'" in failure.detail
    assert recording_sleep.calls == [1, 2]


def test_backoff_is_capped(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1"))
    platform.place_on_board("P1", sprint="it-41")

    failures = _verify(
        platform,
        recording_sleep,
        [_applied(item, MutationField.SPRINT, "it-42")],
        max_attempts=5,
        max_delay=3,
    )

    assert [failure.attempts for failure in failures] == [5]
    assert recording_sleep.calls == [1, 2, 3, 3]


def test_only_changed_outcomes_are_checked(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1"))

    failures = _verify(
        platform,
        recording_sleep,
        [_applied(item, MutationField.STATUS, "Active", status=OutcomeStatus.ERROR)],
    )

    assert failures == []
    assert platform.calls_to("list_board_members") == []


def test_unreadable_board_is_raised(platform, make_item, recording_sleep):
    item = platform.add_item(make_item("P1"))
    platform.fail("list_board_members", 401)

    with pytest.raises(SnapshotError):
        _verify(platform, recording_sleep, [_applied(item, MutationField.MEMBERSHIP, True)])


def test_mismatch_descriptions(make_item):
    item = make_item("P1")
    board_item = BoardItem(
        project_item_id="PVTI_1", content_id="P1", column="Next", assignees=frozenset({"bob"})
    )
    assignees, _ = _applied(item, MutationField.ASSIGNEES, frozenset({"alice", "bob"}))
    admission, _ = _applied(item, MutationField.MEMBERSHIP, True)

    assert mismatch(assignees, board_item) == "missing assignees alice"
    assert mismatch(assignees, None) is None
    assert mismatch(admission, None) == "item is not on the board"
    assert mismatch(admission, board_item) is None
