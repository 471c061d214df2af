"""JSON schema for rule set documents.

The schema covers shape and enums only. Checks that need the whole document
(duplicate ids, required action fields per type, regex compilation) live in
core.validator.
"""

from __future__ import annotations

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

RULESET_SCHEMA = {
    "type": "object",
    "required": ["version", "rules"],
    "properties": {
        "version": {"type": "integer", "const": 1},
        "rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "name", "enabled", "match", "actions"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "name": {"type": "string", "minLength": 1},
                    "enabled": {"type": "boolean"},
                    "priority": {"type": "integer"},
                    "stop_on_match": {"type": "boolean"},
                    "cooldown_seconds": {"type": "integer", "minimum": 0},
                    "match": {
                        "type": "object",
                        "properties": {
                            "events": _STRING_LIST,
                            "chat": {
                                "type": "object",
                                "properties": {
                                    "type": {"type": "string", "enum": ["direct", "group", "any"]},
                                    "ids": _STRING_LIST,
                                },
                            },
                            "sender": {
                                "type": "object",
                                "properties": {
                                    "ids": _STRING_LIST,
                                    "numbers": _STRING_LIST,
                                },
                            },
                            "text": {
                                "type": "object",
                                "required": ["patterns"],
                                "properties": {
                                    "mode": {"type": "string", "enum": ["contains", "starts_with", "regex"]},
                                    "patterns": {
                                        "type": "array",
                                        "minItems": 1,
                                        "items": {"type": "string"},
                                    },
                                },
                            },
                        },
                    },
                    "actions": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["type"],
                            "properties": {
                                "type": {"type": "string", "enum": ["ha_service", "reply_whatsapp"]},
                                "service": {"type": "string"},
                                "target": {
                                    "type": "object",
                                    "properties": {
                                        "entity_id": {
                                            "oneOf": [
                                                {"type": "string"},
                                                _STRING_LIST,
                                            ]
                                        }
                                    },
                                },
                                "data": {"type": "object"},
                                "text": {"type": "string"},
                            },
                        },
                    },
                },
            },
        },
    },
}
