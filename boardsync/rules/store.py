"""Load and validate the rule document into an immutable :class:`RuleSet`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import jsonschema
import yaml

from boardsync.domain.models import NO_COLUMN, ItemKind
from boardsync.errors import ConfigurationError, ExpressionError, Violation
from boardsync.logging import get_logger
from boardsync.rules.expressions import (
    ALL_IDENTIFIERS,
    ITEM_IDENTIFIERS,
    Expression,
    parse_expression,
)
from boardsync.rules.schema import COLUMN_NAMES, RULE_DOCUMENT_SCHEMA

logger = get_logger(__name__)

SECTION_ORDER: Tuple[str, ...] = (
    "board_items",
    "columns",
    "sprints",
    "linked_issues",
    "assignees",
)

SECTION_ACTIONS: Mapping[str, FrozenSet[str]] = {
    "board_items": frozenset({"add_to_board"}),
    "columns": frozenset({"set_column"}),
    "sprints": frozenset({"set_sprint"}),
    "linked_issues": frozenset(
        {"inherit_column", "inherit_assignees", "set_sprint", "add_to_board"}
    ),
    "assignees": frozenset({"add_assignee"}),
}

CURRENT_SPRINT = "current"
ENV_AUTHOR_TOKEN = "GITHUB_AUTHOR"


@dataclass(frozen=True)
class Transition:
    """Allowed ``source -> target`` column move, guarded by extra conditions."""

    sources: FrozenSet[str]
    target: str
    conditions: Tuple[Expression, ...] = ()

    def matches(self, source: Optional[str], target: str) -> bool:
        return (source or NO_COLUMN) in self.sources and self.target == target


@dataclass(frozen=True)
class Rule:
    """One declarative rule from the document."""

    name: str
    section: str
    types: FrozenSet[ItemKind]
    condition: Expression
    actions: Tuple[str, ...]
    value: Optional[str] = None
    value_expression: Optional[Expression] = None
    skip_if: Optional[Expression] = None
    transitions: Tuple[Transition, ...] = ()
    description: str = ""

    def applies_to(self, kind: ItemKind) -> bool:
        return kind in self.types


@dataclass(frozen=True)
class MonitoredUserToken:
    """A monitored user entry before it is resolved against the environment."""

    name: str
    source: str = "static"  # static | env
    description: str = ""


@dataclass(frozen=True)
class RetrySettings:
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 10.0


@dataclass(frozen=True)
class RateLimitSettings:
    min_remaining: int = 100
    refresh_seconds: float = 30.0


@dataclass(frozen=True)
class VerificationSettings:
    enabled: bool = True
    max_attempts: int = 3
    max_delay: float = 5.0


@dataclass(frozen=True)
class TechnicalSettings:
    batch_size: int = 10
    batch_delay_seconds: int = 1
    update_window_hours: int = 48
    skip_unchanged: bool = True
    dedup_by_id: bool = True
    timezone: str = "UTC"
    max_workers: Optional[int] = None
    retry: RetrySettings = field(default_factory=RetrySettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)


@dataclass(frozen=True)
class RuleSet:
    """Immutable, validated view of the rule document for one pass."""

    board_id: str
    organization: str
    repositories: Tuple[str, ...]
    monitored_users: Tuple[MonitoredUserToken, ...]
    sections: Mapping[str, Tuple[Rule, ...]]
    technical: TechnicalSettings
    version: Optional[str] = None
    source: Optional[str] = None

    def rules(self, section: str) -> Tuple[Rule, ...]:
        return self.sections.get(section, ())

    def counts(self) -> Dict[str, int]:
        return {section: len(self.rules(section)) for section in SECTION_ORDER}

    def uses_current_sprint(self) -> bool:
        return any(
            "set_sprint" in rule.actions
            for section in SECTION_ORDER
            for rule in self.rules(section)
        )


def _format_path(path: Sequence[Any]) -> str:
    parts: List[str] = []
    for element in path:
        if isinstance(element, int):
            parts.append(f"[{element}]")
        else:
            parts.append(f".{element}" if parts else str(element))
    return "".join(parts) or "<document>"


class _RuleBuilder:
    """Collects every semantic violation instead of stopping at the first."""

    def __init__(self) -> None:
        self.violations: List[Violation] = []

    def _violation(self, path: str, message: str) -> None:
        self.violations.append(Violation(path, message))

    def _expression(self, path: str, source: str, allowed: FrozenSet[str]) -> Optional[Expression]:
        try:
            return parse_expression(source, allowed=allowed)
        except ExpressionError as exc:
            self._violation(path, str(exc))
            return None

    def build(self, section: str, raw: Mapping[str, Any], path: str) -> Optional[Rule]:
        name = str(raw["name"])
        trigger = raw["trigger"]
        raw_types = trigger["type"]
        type_names = [raw_types] if isinstance(raw_types, str) else list(raw_types)
        types = frozenset(ItemKind.from_string(value) for value in type_names)
        is_linked = section == "linked_issues"

        if is_linked and types != {ItemKind.LINKED_ISSUE}:
            self._violation(f"{path}.trigger.type", "linked_issues rules must target LinkedIssue")
        if not is_linked and ItemKind.LINKED_ISSUE in types:
            self._violation(
                f"{path}.trigger.type", "LinkedIssue is only valid in the linked_issues section"
            )

        allowed = ALL_IDENTIFIERS if is_linked else ITEM_IDENTIFIERS
        condition = self._expression(f"{path}.trigger.condition", trigger["condition"], allowed)
        skip_if = None
        if raw.get("skip_if") is not None:
            skip_if = self._expression(f"{path}.skip_if", raw["skip_if"], allowed)

        raw_actions = raw["action"]
        actions = (raw_actions,) if isinstance(raw_actions, str) else tuple(raw_actions)
        for action in actions:
            if action not in SECTION_ACTIONS[section]:
                self._violation(f"{path}.action", f"{action!r} is not allowed in {section}")

        value = raw.get("value")
        value_expression = None
        if "set_column" in actions and value not in COLUMN_NAMES:
            self._violation(f"{path}.value", f"set_column needs a column, got {value!r}")
        if "set_sprint" in actions and value != CURRENT_SPRINT:
            self._violation(f"{path}.value", f"set_sprint only supports {CURRENT_SPRINT!r}")
        if "add_assignee" in actions:
            if not value:
                self._violation(f"{path}.value", "add_assignee needs a login or identifier")
            elif value.startswith(("item.", "monitored.")):
                value_expression = self._expression(f"{path}.value", value, allowed)

        transitions = []
        for index, raw_transition in enumerate(raw.get("validTransitions") or ()):
            transition_path = f"{path}.validTransitions[{index}]"
            sources = raw_transition["from"]
            sources = [sources] if isinstance(sources, str) else list(sources)
            for column in [*sources, raw_transition["to"]]:
                if column != NO_COLUMN and column not in COLUMN_NAMES:
                    self._violation(transition_path, f"unknown column {column!r}")
            conditions = []
            for cond_index, source in enumerate(raw_transition["conditions"]):
                parsed = self._expression(
                    f"{transition_path}.conditions[{cond_index}]", source, allowed
                )
                if parsed is not None:
                    conditions.append(parsed)
            transitions.append(
                Transition(
                    sources=frozenset(sources),
                    target=raw_transition["to"],
                    conditions=tuple(conditions),
                )
            )

        if condition is None:
            return None
        return Rule(
            name=name,
            section=section,
            types=types,
            condition=condition,
            actions=actions,
            value=value,
            value_expression=value_expression,
            skip_if=skip_if,
            transitions=tuple(transitions),
            description=str(raw.get("description", "")),
        )


def _monitored_user(raw: Any) -> MonitoredUserToken:
    if isinstance(raw, str):
        source = "env" if raw == ENV_AUTHOR_TOKEN else "static"
        return MonitoredUserToken(name=raw, source=source)
    return MonitoredUserToken(
        name=str(raw["name"]),
        source=str(raw["type"]),
        description=str(raw.get("description", "")),
    )


def _technical(raw: Mapping[str, Any]) -> TechnicalSettings:
    optimization = raw["optimization"]
    retry = raw.get("retry") or {}
    rate_limit = raw.get("rate_limit") or {}
    verification = raw.get("verification") or {}
    return TechnicalSettings(
        batch_size=int(raw["batch_size"]),
        batch_delay_seconds=int(raw["batch_delay_seconds"]),
        update_window_hours=int(raw["update_window_hours"]),
        skip_unchanged=bool(optimization["skip_unchanged"]),
        dedup_by_id=bool(optimization["dedup_by_id"]),
        timezone=str(raw.get("timezone", "UTC")),
        max_workers=raw.get("max_workers"),
        retry=RetrySettings(
            max_retries=int(retry.get("max_retries", 3)),
            initial_retry_delay=float(retry.get("initial_retry_delay", 1)),
            max_retry_delay=float(retry.get("max_retry_delay", 10)),
        ),
        rate_limit=RateLimitSettings(
            min_remaining=int(rate_limit.get("min_remaining", 100)),
            refresh_seconds=float(rate_limit.get("refresh_seconds", 30)),
        ),
        verification=VerificationSettings(
            enabled=bool(verification.get("enabled", True)),
            max_attempts=int(verification.get("max_attempts", 3)),
            max_delay=float(verification.get("max_delay", 5)),
        ),
    )


class RuleStore:
    """Parses the rule document and exposes the validated :class:`RuleSet`."""

    validator_class = jsonschema.Draft7Validator

    def __init__(self) -> None:
        self._validator = self.validator_class(RULE_DOCUMENT_SCHEMA)

    def load(self, path: Path | str) -> RuleSet:
        rules_path = Path(path)
        try:
            text = rules_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Rule file not found: {rules_path}") from exc
        except OSError as exc:
            raise ConfigurationError(f"Rule file could not be read: {rules_path}: {exc}") from exc
        return self.loads(text, source=str(rules_path))

    def loads(self, text: str, *, source: Optional[str] = None) -> RuleSet:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Rule file is not valid YAML: {exc}") from exc
        return self.from_mapping(document, source=source)

    def validate(self, document: Any) -> List[Violation]:
        """Return every schema violation in ``document`` (empty when valid)."""

        errors = sorted(self._validator.iter_errors(document), key=lambda err: list(err.path))
        return [Violation(_format_path(err.path), err.message) for err in errors]

    def from_mapping(self, document: Any, *, source: Optional[str] = None) -> RuleSet:
        violations = self.validate(document)
        if violations:
            raise ConfigurationError("Invalid rule document", violations)

        automation = document["automation"]
        builder = _RuleBuilder()
        sections: Dict[str, List[Rule]] = {section: [] for section in SECTION_ORDER}
        for scope_name in ("user_scope", "repository_scope"):
            groups = automation[scope_name].get("rules") or {}
            for section in SECTION_ORDER:
                for index, raw_rule in enumerate(groups.get(section) or ()):
                    path = f"automation.{scope_name}.rules.{section}[{index}]"
                    rule = builder.build(section, raw_rule, path)
                    if rule is not None:
                        sections[section].append(rule)

        if builder.violations:
            raise ConfigurationError("Invalid rule document", builder.violations)

        repository_scope = automation["repository_scope"]
        rule_set = RuleSet(
            board_id=str(document["project"]["id"]),
            organization=str(repository_scope["organization"]),
            repositories=tuple(str(repo) for repo in repository_scope["repositories"]),
            monitored_users=tuple(
                _monitored_user(raw) for raw in automation["user_scope"]["monitored_users"]
            ),
            sections=MappingProxyType(
                {section: tuple(rules) for section, rules in sections.items()}
            ),
            technical=_technical(document["technical"]),
            version=document.get("version"),
            source=source,
        )
        logger.debug(
            "Loaded rule set for board %s",
            rule_set.board_id,
            extra={"metadata": {"counts": rule_set.counts(), "source": source}},
        )
        return rule_set


def load_rule_set(path: Path | str) -> RuleSet:
    """Load and validate the rule document at ``path``."""

    return RuleStore().load(path)


__all__ = [
    "CURRENT_SPRINT",
    "ENV_AUTHOR_TOKEN",
    "MonitoredUserToken",
    "RateLimitSettings",
    "RetrySettings",
    "Rule",
    "RuleSet",
    "RuleStore",
    "SECTION_ORDER",
    "TechnicalSettings",
    "Transition",
    "VerificationSettings",
    "load_rule_set",
]
