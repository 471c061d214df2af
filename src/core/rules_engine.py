"""Rule compilation and matching logic (core domain)."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from core.models import IncomingMessage
from core.text import DEFAULT_EVENT, extract_phone, normalize_text

DEFAULT_PRIORITY = 100
CHAT_TYPES = ("direct", "group", "any")
TEXT_MODES = ("contains", "starts_with", "regex")


class RuleSetError(ValueError):
    """Raised when a parsed rule set cannot be turned into rules."""


@dataclass(frozen=True)
class ChatFilter:
    type: str = "any"
    ids: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class SenderFilter:
    ids: FrozenSet[str] = frozenset()
    numbers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TextFilter:
    mode: str = "contains"
    patterns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RuleMatch:
    """Match criteria; an empty instance is a catch-all for the default event."""

    events: FrozenSet[str] = frozenset({DEFAULT_EVENT})
    chat: ChatFilter = field(default_factory=ChatFilter)
    sender: SenderFilter = field(default_factory=SenderFilter)
    text: Optional[TextFilter] = None


@dataclass(frozen=True)
class HaServiceAction:
    service: str
    target: Optional[Mapping[str, Any]] = None
    data: Optional[Mapping[str, Any]] = None

    type = "ha_service"


@dataclass(frozen=True)
class ReplyWhatsAppAction:
    text: str

    type = "reply_whatsapp"


RuleAction = Union[HaServiceAction, ReplyWhatsAppAction]


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    enabled: bool
    priority: int
    stop_on_match: bool
    match: RuleMatch
    actions: Tuple[RuleAction, ...]
    cooldown_seconds: int = 0


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the active rules."""

    version: int
    rules: Tuple[Rule, ...]

    def ordered(self) -> List[Rule]:
        """Enabled rules by ascending priority; ties keep declaration order."""

        return sorted((rule for rule in self.rules if rule.enabled), key=lambda rule: rule.priority)


EMPTY_RULESET = RuleSet(version=1, rules=())


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one rule with a human-readable reason."""

    matches: bool
    reason: str


def _string_list(value: Any, path: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise RuleSetError(f"{path} must be a list of strings")
    return list(value)


def _build_action(raw: Mapping[str, Any], path: str) -> RuleAction:
    action_type = raw.get("type")
    if action_type == "ha_service":
        service = raw.get("service")
        if not isinstance(service, str) or not service:
            raise RuleSetError(f"{path}: ha_service action requires a service")
        return HaServiceAction(service=service, target=raw.get("target"), data=raw.get("data"))
    if action_type == "reply_whatsapp":
        text = raw.get("text")
        if not isinstance(text, str) or not text:
            raise RuleSetError(f"{path}: reply_whatsapp action requires a text")
        return ReplyWhatsAppAction(text=text)
    raise RuleSetError(f"{path}: unknown action type {action_type!r}")


def _build_match(raw: Optional[Mapping[str, Any]], path: str) -> RuleMatch:
    raw = raw or {}
    if not isinstance(raw, Mapping):
        raise RuleSetError(f"{path} must be a mapping")

    raw_events = raw.get("events")
    # An explicit empty list subscribes to nothing.
    events = [DEFAULT_EVENT] if raw_events is None else _string_list(raw_events, f"{path}.events")

    raw_chat = raw.get("chat") or {}
    chat_type = raw_chat.get("type", "any")
    if chat_type not in CHAT_TYPES:
        raise RuleSetError(f"{path}.chat.type must be one of {', '.join(CHAT_TYPES)}")
    chat = ChatFilter(type=chat_type, ids=frozenset(_string_list(raw_chat.get("ids"), f"{path}.chat.ids")))

    raw_sender = raw.get("sender") or {}
    sender = SenderFilter(
        ids=frozenset(_string_list(raw_sender.get("ids"), f"{path}.sender.ids")),
        numbers=tuple(_string_list(raw_sender.get("numbers"), f"{path}.sender.numbers")),
    )

    text = None
    raw_text = raw.get("text")
    if raw_text:
        mode = raw_text.get("mode", "contains")
        if mode not in TEXT_MODES:
            raise RuleSetError(f"{path}.text.mode must be one of {', '.join(TEXT_MODES)}")
        text = TextFilter(mode=mode, patterns=tuple(_string_list(raw_text.get("patterns"), f"{path}.text.patterns")))

    return RuleMatch(events=frozenset(events), chat=chat, sender=sender, text=text)


def build_rule(raw: Mapping[str, Any], index: int) -> Rule:
    """Build one rule from its parsed mapping, applying defaults."""

    path = f"rules[{index}]"
    if not isinstance(raw, Mapping):
        raise RuleSetError(f"{path} must be a mapping")
    try:
        rule_id = raw["id"]
    except KeyError as exc:
        raise RuleSetError(f"{path} is missing an id") from exc

    raw_actions = raw.get("actions") or []
    if not isinstance(raw_actions, list):
        raise RuleSetError(f"{path}.actions must be a list")

    priority = raw.get("priority")
    cooldown = raw.get("cooldown_seconds") or 0
    return Rule(
        id=str(rule_id),
        name=str(raw.get("name") or rule_id),
        enabled=bool(raw.get("enabled", True)),
        priority=DEFAULT_PRIORITY if priority is None else int(priority),
        stop_on_match=bool(raw.get("stop_on_match", True)),
        match=_build_match(raw.get("match"), f"{path}.match"),
        actions=tuple(_build_action(action, f"{path}.actions[{j}]") for j, action in enumerate(raw_actions)),
        cooldown_seconds=int(cooldown),
    )


def build_ruleset(parsed: Any) -> RuleSet:
    """Turn a parsed (JSON-shaped) rule set into an immutable snapshot.

    The input is expected to have passed validation already, but cached copies
    can be stale or corrupt, so shape problems raise RuleSetError instead of
    leaking KeyError/TypeError to the caller.
    """

    if not isinstance(parsed, Mapping):
        raise RuleSetError("rule set must be a mapping")
    raw_rules = parsed.get("rules") or []
    if not isinstance(raw_rules, list):
        raise RuleSetError("rules must be a list")
    try:
        rules = tuple(build_rule(raw, index) for index, raw in enumerate(raw_rules))
        version = int(parsed.get("version", 1))
    except RuleSetError:
        raise
    except (TypeError, ValueError, AttributeError) as exc:
        raise RuleSetError(str(exc)) from exc
    return RuleSet(version=version, rules=rules)


def _regex_hit(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        return False


def _text_hit(text_filter: TextFilter, text: str) -> Optional[str]:
    """Return the first pattern satisfied by text, or None."""

    if text_filter.mode == "regex":
        # Regex runs on the raw text so anchors and spacing keep their meaning.
        return next((p for p in text_filter.patterns if _regex_hit(p, text)), None)

    normalized = normalize_text(text)
    if text_filter.mode == "starts_with":
        return next((p for p in text_filter.patterns if normalized.startswith(normalize_text(p))), None)
    return next((p for p in text_filter.patterns if normalize_text(p) in normalized), None)


def match_rule(rule: Rule, message: IncomingMessage) -> MatchResult:
    """Match a single rule against a message.

    Stages run in a fixed order and the first failing stage ends evaluation:
    event, chat type, chat ids, sender ids, sender numbers, text. Sender ids
    and numbers are independent gates, so both must pass when both are set.
    """

    criteria = rule.match
    reasons: List[str] = []

    event = message.event or DEFAULT_EVENT
    if event not in criteria.events:
        return MatchResult(False, f"event {event} not in [{', '.join(sorted(criteria.events))}]")
    reasons.append(f"event={event}")

    if criteria.chat.type != "any":
        if criteria.chat.type != message.chat_type:
            return MatchResult(False, f"chatType {message.chat_type} != {criteria.chat.type}")
        reasons.append(f"chatType={message.chat_type}")

    if criteria.chat.ids:
        if message.chat_id not in criteria.chat.ids:
            return MatchResult(False, f"chatId {message.chat_id} not in allowed list")
        reasons.append(f"chatId={message.chat_id}")

    if criteria.sender.ids:
        if message.sender_id not in criteria.sender.ids:
            return MatchResult(False, f"senderId {message.sender_id} not in allowed list")
        reasons.append(f"senderId={message.sender_id}")

    if criteria.sender.numbers:
        sender_phone = extract_phone(message.sender_id)
        if not any(extract_phone(number) == sender_phone for number in criteria.sender.numbers):
            return MatchResult(False, f"senderPhone {sender_phone} not in allowed list")
        reasons.append(f"senderNumber={sender_phone}")

    text_filter = criteria.text
    if text_filter is not None and text_filter.patterns:
        hit = _text_hit(text_filter, message.text)
        if hit is None:
            return MatchResult(False, f"text did not match {text_filter.mode} patterns")
        reasons.append(f"text {text_filter.mode} {hit!r}")

    return MatchResult(True, ", ".join(reasons))


def match_rules(message: IncomingMessage, rules: Iterable[Rule]) -> List[Tuple[Rule, MatchResult]]:
    """Return matching rules in order, honoring stop_on_match.

    Pure simulation: no cooldowns, no side effects.
    """

    matches: List[Tuple[Rule, MatchResult]] = []
    for rule in rules:
        result = match_rule(rule, message)
        if not result.matches:
            continue
        matches.append((rule, result))
        if rule.stop_on_match:
            break
    return matches


def raw_rules(parsed: Any) -> List[Dict[str, Any]]:
    """Return the list of rule mappings from a parsed document, or []."""

    if isinstance(parsed, dict) and isinstance(parsed.get("rules"), list):
        return parsed["rules"]
    return []
