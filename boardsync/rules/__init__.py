"""Rule document loading and the condition grammar."""

from boardsync.rules.expressions import Expression, parse_expression
from boardsync.rules.store import (
    CURRENT_SPRINT,
    SECTION_ORDER,
    Rule,
    RuleSet,
    RuleStore,
    TechnicalSettings,
    Transition,
    load_rule_set,
)

__all__ = [
    "CURRENT_SPRINT",
    "Expression",
    "Rule",
    "RuleSet",
    "RuleStore",
    "SECTION_ORDER",
    "TechnicalSettings",
    "Transition",
    "load_rule_set",
    "parse_expression",
]
