import pytest

from boardsync.errors import ConfigurationError, ExpressionError
from boardsync.rules.expressions import ALL_IDENTIFIERS, parse_expression


def _bindings(**overrides):
    bindings = {
        "item.author": "alice",
        "item.assignees": frozenset({"bob"}),
        "item.column": None,
        "item.sprint": None,
        "item.repository": "org/r1",
        "item.state": "OPEN",
        "item.merged": False,
        "item.closed": False,
        "item.inProject": False,
        "monitored.user": "alice",
        "monitored.repos": frozenset({"org/r1"}),
    }
    bindings.update(overrides)
    return bindings


def test_strict_equality_against_identifier():
    expression = parse_expression("item.author === monitored.user")

    assert expression.holds(_bindings())
    assert not expression.holds(_bindings(**{"item.author": "carol"}))


def test_loose_operators_are_aliases():
    assert parse_expression("item.sprint != null").holds(_bindings(**{"item.sprint": "it-1"}))
    assert not parse_expression("item.sprint != null").holds(_bindings())
    assert parse_expression("item.column == 'Active'").holds(_bindings(**{"item.column": "Active"}))


def test_includes_on_collections_and_strings():
    assert parse_expression("monitored.repos.includes(item.repository)").holds(_bindings())
    assert parse_expression("item.assignees.includes('bob')").holds(_bindings())
    assert not parse_expression("item.assignees.includes(monitored.user)").holds(_bindings())
    assert parse_expression("item.repository.includes('r1')").holds(_bindings())


def test_includes_on_missing_value_is_false():
    assert not parse_expression("item.column.includes('A')").holds(_bindings())


def test_negation_and_precedence():
    expression = parse_expression("!item.column && item.state === 'OPEN' || item.merged")

    assert expression.holds(_bindings())
    assert not expression.holds(_bindings(**{"item.column": "New"}))
    assert expression.holds(_bindings(**{"item.column": "New", "item.merged": True}))


def test_parentheses_group():
    expression = parse_expression("!item.inProject && (!item.pr.closed || item.pr.merged)", allowed=ALL_IDENTIFIERS)

    assert expression.holds(_bindings(**{"item.pr.closed": True, "item.pr.merged": True}))
    assert not expression.holds(_bindings(**{"item.pr.closed": True, "item.pr.merged": False}))


def test_collection_equality_ignores_order():
    expression = parse_expression("item.assignees === item.pr.assignees", allowed=ALL_IDENTIFIERS)

    bindings = _bindings(
        **{"item.assignees": frozenset({"a", "b"}), "item.pr.assignees": frozenset({"b", "a"})}
    )
    assert expression.holds(bindings)


def test_empty_string_is_falsy():
    assert not parse_expression("item.column").holds(_bindings(**{"item.column": ""}))


def test_identifiers_are_reported():
    expression = parse_expression("item.author === monitored.user && item.merged")

    assert expression.identifiers == ("item.author", "item.merged", "monitored.user")


@pytest.mark.parametrize(
    "source",
    [
        "",
        "item.author ===",
        "item.author = 'alice'",
        "item.labels.length > 1",
        "item.author.toLowerCase()",
        "__import__('os')",
        "(item.merged",
    ],
)
def test_rejects_expressions_outside_the_grammar(source):
    with pytest.raises(ExpressionError):
        parse_expression(source)


def test_linked_identifiers_need_the_linked_vocabulary():
    with pytest.raises(ExpressionError) as excinfo:
        parse_expression("item.pr.merged")

    assert "item.pr.merged" in str(excinfo.value)
    assert isinstance(excinfo.value, ConfigurationError)


def test_error_reports_offset():
    with pytest.raises(ExpressionError) as excinfo:
        parse_expression("item.merged && ")

    assert excinfo.value.position == len("item.merged && ")
