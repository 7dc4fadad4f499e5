"""JSON Schema for the board-sync rule document."""

from __future__ import annotations

from typing import Any, Dict

COLUMN_NAMES = ["Parked", "New", "Backlog", "Next", "Active", "Waiting", "Done"]
TRIGGER_TYPES = ["PullRequest", "Issue", "LinkedIssue"]
ACTIONS = [
    "add_to_board",
    "set_column",
    "set_sprint",
    "inherit_column",
    "inherit_assignees",
    "add_assignee",
]

_STRING_OR_LIST = {
    "oneOf": [
        {"type": "string"},
        {"type": "array", "items": {"type": "string"}, "minItems": 1},
    ]
}

RULE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "trigger", "action"],
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "trigger": {
            "type": "object",
            "required": ["type", "condition"],
            "additionalProperties": False,
            "properties": {
                "type": {
                    "oneOf": [
                        {"type": "string", "enum": TRIGGER_TYPES},
                        {
                            "type": "array",
                            "items": {"type": "string", "enum": TRIGGER_TYPES},
                            "minItems": 1,
                        },
                    ]
                },
                "condition": {"type": "string"},
            },
        },
        "action": {
            "oneOf": [
                {"type": "string", "enum": ACTIONS},
                {
                    "type": "array",
                    "items": {"type": "string", "enum": ACTIONS},
                    "minItems": 1,
                },
            ]
        },
        "value": {"type": "string"},
        "skip_if": {"type": "string"},
        "validTransitions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["from", "to", "conditions"],
                "additionalProperties": False,
                "properties": {
                    "from": _STRING_OR_LIST,
                    "to": {"type": "string"},
                    "conditions": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

RULE_GROUPS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        section: {"type": "array", "items": {"$ref": "#/definitions/rule"}}
        for section in ("board_items", "columns", "sprints", "linked_issues", "assignees")
    },
}

MONITORED_USER_SCHEMA: Dict[str, Any] = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "object",
            "required": ["name", "type"],
            "additionalProperties": False,
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "type": {"type": "string", "enum": ["static", "env"]},
                "description": {"type": "string"},
            },
        },
    ]
}

RULE_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["project", "automation", "technical"],
    "additionalProperties": False,
    "properties": {
        "version": {"type": "string"},
        "project": {
            "type": "object",
            "required": ["id"],
            "additionalProperties": False,
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "type": {"type": "string"},
                "name": {"type": "string"},
            },
        },
        "automation": {
            "type": "object",
            "required": ["user_scope", "repository_scope"],
            "additionalProperties": False,
            "properties": {
                "user_scope": {
                    "type": "object",
                    "required": ["monitored_users"],
                    "additionalProperties": False,
                    "properties": {
                        "monitored_users": {
                            "type": "array",
                            "items": MONITORED_USER_SCHEMA,
                            "minItems": 1,
                        },
                        "rules": {"$ref": "#/definitions/ruleGroups"},
                    },
                },
                "repository_scope": {
                    "type": "object",
                    "required": ["organization", "repositories"],
                    "additionalProperties": False,
                    "properties": {
                        "organization": {"type": "string", "minLength": 1},
                        "repositories": {"type": "array", "items": {"type": "string"}},
                        "rules": {"$ref": "#/definitions/ruleGroups"},
                    },
                },
            },
        },
        "technical": {
            "type": "object",
            "required": [
                "batch_size",
                "batch_delay_seconds",
                "update_window_hours",
                "optimization",
            ],
            "additionalProperties": False,
            "properties": {
                "batch_size": {"type": "integer", "minimum": 1},
                "batch_delay_seconds": {"type": "integer", "minimum": 0},
                "update_window_hours": {"type": "integer", "minimum": 1},
                "timezone": {"type": "string"},
                "max_workers": {"type": "integer", "minimum": 1},
                "optimization": {
                    "type": "object",
                    "required": ["skip_unchanged", "dedup_by_id"],
                    "additionalProperties": False,
                    "properties": {
                        "skip_unchanged": {"type": "boolean"},
                        "dedup_by_id": {"type": "boolean"},
                    },
                },
                "retry": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "max_retries": {"type": "integer", "minimum": 1},
                        "initial_retry_delay": {"type": "number", "minimum": 0},
                        "max_retry_delay": {"type": "number", "minimum": 0},
                    },
                },
                "rate_limit": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "min_remaining": {"type": "integer", "minimum": 0},
                        "refresh_seconds": {"type": "number", "minimum": 0},
                    },
                },
                "verification": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "max_attempts": {"type": "integer", "minimum": 1},
                        "max_delay": {"type": "number", "minimum": 0},
                    },
                },
            },
        },
    },
    "definitions": {
        "rule": RULE_SCHEMA,
        "ruleGroups": RULE_GROUPS_SCHEMA,
    },
}

__all__ = ["ACTIONS", "COLUMN_NAMES", "RULE_DOCUMENT_SCHEMA", "TRIGGER_TYPES"]
