"""Rule set validation (core domain).

Validation never raises: every problem found in the candidate source becomes
a ValidationIssue so an editor can point at the offending rule.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, List

import yaml
from jsonschema import Draft7Validator

from core.models import ValidationIssue, ValidationResult
from core.rules_engine import raw_rules
from core.schema import RULESET_SCHEMA

LOGGER = logging.getLogger(__name__)

_VALIDATOR = Draft7Validator(RULESET_SCHEMA)


def format_path(parts: Iterable[Any]) -> str:
    """Render a jsonschema path deque as rules[0].actions[1].service."""

    rendered = ""
    for part in parts:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered += f".{part}" if rendered else str(part)
    return rendered or "/"


def _path_key(error) -> tuple:
    # Ints sort before strings at the same depth so mixed paths never compare.
    return tuple((0, part, "") if isinstance(part, int) else (1, 0, part) for part in error.absolute_path)


def _schema_issues(parsed: Any) -> List[ValidationIssue]:
    errors = sorted(_VALIDATOR.iter_errors(parsed), key=_path_key)
    return [ValidationIssue(path=format_path(error.absolute_path), message=error.message) for error in errors]


def _semantic_issues(parsed: Any) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    seen_ids: set[str] = set()

    for i, rule in enumerate(raw_rules(parsed)):
        if not isinstance(rule, dict):
            continue

        rule_id = rule.get("id")
        if isinstance(rule_id, str):
            if rule_id in seen_ids:
                issues.append(ValidationIssue(f"rules[{i}].id", f"Duplicate rule ID: {rule_id}"))
            seen_ids.add(rule_id)

        actions = rule.get("actions")
        for j, action in enumerate(actions if isinstance(actions, list) else []):
            if not isinstance(action, dict):
                continue
            if action.get("type") == "ha_service" and not action.get("service"):
                issues.append(
                    ValidationIssue(f"rules[{i}].actions[{j}].service", "ha_service action requires a service field")
                )
            if action.get("type") == "reply_whatsapp" and not action.get("text"):
                issues.append(
                    ValidationIssue(f"rules[{i}].actions[{j}].text", "reply_whatsapp action requires a text field")
                )

        match = rule.get("match")
        text = match.get("text") if isinstance(match, dict) else None
        if not isinstance(text, dict) or text.get("mode") != "regex":
            continue
        patterns = text.get("patterns")
        for k, pattern in enumerate(patterns if isinstance(patterns, list) else []):
            if not isinstance(pattern, str):
                continue
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as exc:
                issues.append(
                    ValidationIssue(f"rules[{i}].match.text.patterns[{k}]", f"Invalid regex {pattern!r}: {exc}")
                )

    return issues


def load_rules_source(source_text: str) -> Any:
    """Parse rule set source text. Raises yaml.YAMLError on bad syntax."""

    return yaml.safe_load(source_text)


def validate_rules(source_text: str) -> ValidationResult:
    """Validate rule set source text (YAML).

    Steps:
    1) Parse. A syntax error is fatal and reported alone, with its line.
    2) Schema conformance, one issue per violation.
    3) Semantic checks: duplicate ids, per-type action fields, regex syntax.
    """

    try:
        parsed = load_rules_source(source_text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        LOGGER.debug("Rule source failed to parse: %s", exc)
        return ValidationResult(
            valid=False,
            errors=[ValidationIssue(path="/", message=f"YAML syntax error: {exc}", line=line)],
            rule_count=0,
        )

    errors = _schema_issues(parsed) + _semantic_issues(parsed)
    rule_count = len(raw_rules(parsed))
    if errors:
        return ValidationResult(valid=False, errors=errors, rule_count=rule_count)

    normalized = yaml.safe_dump(parsed, sort_keys=True, indent=2, default_flow_style=False, allow_unicode=True)
    return ValidationResult(valid=True, errors=[], rule_count=rule_count, normalized_text=normalized)
