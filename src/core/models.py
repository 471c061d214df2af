"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to the webhook payloads or the SQLite rows.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.text import DEFAULT_EVENT


@dataclass(frozen=True)
class IncomingMessage:
    """One inbound event, already decoded from the webhook payload."""

    chat_id: str
    chat_type: str
    sender_id: str
    text: str
    event: str = DEFAULT_EVENT
    sender_name: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ServiceCallResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ActionOutcome:
    """Result of executing a single rule action."""

    type: str
    success: bool
    details: str
    duration_ms: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RuleFireRecord:
    """Persisted representation of a single rule fire (append-only)."""

    rule_id: str
    rule_name: str
    chat_id: str
    sender_id: str
    matched_text: str
    actions: Tuple[ActionOutcome, ...]
    success: bool
    event_type: str
    fired_at: datetime
    message_ref: Optional[int] = None
    error_summary: Optional[str] = None


@dataclass(frozen=True)
class EvaluatedRule:
    id: str
    name: str
    matched: bool
    reason: str
    skipped_cooldown: bool = False
    stopped_chain: bool = False


@dataclass(frozen=True)
class ExecutedAction:
    rule_id: str
    rule_name: str
    type: str
    details: str
    success: bool
    duration_ms: int
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    """Audit trail of one process_message call."""

    evaluated_rules: List[EvaluatedRule] = field(default_factory=list)
    executed_actions: List[ExecutedAction] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def matched_rules(self) -> List[EvaluatedRule]:
        return [rule for rule in self.evaluated_rules if rule.matched]


@dataclass(frozen=True)
class MatchedRule:
    id: str
    name: str
    reason: str


@dataclass(frozen=True)
class ActionPreview:
    rule_id: str
    type: str
    details: str


@dataclass
class TestResult:
    """Dry-run outcome: which rules would fire and what they would do."""

    __test__ = False

    matched_rules: List[MatchedRule] = field(default_factory=list)
    actions_preview: List[ActionPreview] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str
    line: Optional[int] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ValidationIssue]
    rule_count: int
    normalized_text: Optional[str] = None


@dataclass(frozen=True)
class StoredRuleSet:
    """The active rule set row as held by the rule store."""

    source_text: str
    parsed_json: Optional[str]
    version: int
    updated_at: Optional[str] = None
