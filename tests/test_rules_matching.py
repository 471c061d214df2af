from __future__ import annotations

from typing import Optional

import pytest

from core.models import IncomingMessage
from core.rules_engine import (
    HaServiceAction,
    ReplyWhatsAppAction,
    RuleSetError,
    build_rule,
    build_ruleset,
    match_rule,
    match_rules,
)

ALICE = "31612345678@s.whatsapp.net"
GROUP = "120363123456789012@g.us"


def _message(
    text: str = "hello",
    *,
    chat_id: str = ALICE,
    chat_type: str = "direct",
    sender_id: Optional[str] = None,
    event: str = "MESSAGES_UPSERT",
) -> IncomingMessage:
    return IncomingMessage(
        chat_id=chat_id,
        chat_type=chat_type,
        sender_id=sender_id or chat_id,
        text=text,
        event=event,
    )


def _rule(match: Optional[dict] = None, **extra):
    raw = {
        "id": extra.pop("id", "r1"),
        "name": extra.pop("name", "Rule one"),
        "enabled": True,
        "match": match or {},
        "actions": [{"type": "reply_whatsapp", "text": "ok"}],
    }
    raw.update(extra)
    return build_rule(raw, 0)


def test_build_rule_applies_defaults() -> None:
    rule = _rule()

    assert rule.priority == 100
    assert rule.stop_on_match is True
    assert rule.cooldown_seconds == 0
    assert rule.match.events == frozenset({"MESSAGES_UPSERT"})
    assert rule.match.chat.type == "any"
    assert rule.match.text is None
    assert rule.actions == (ReplyWhatsAppAction(text="ok"),)


def test_build_rule_keeps_explicit_zero_priority() -> None:
    assert _rule(priority=0).priority == 0


def test_build_rule_reads_ha_service_action() -> None:
    raw = {
        "id": "lights",
        "name": "Lights",
        "enabled": True,
        "match": {},
        "actions": [
            {
                "type": "ha_service",
                "service": "script.turn_on",
                "target": {"entity_id": "script.goodnight"},
                "data": {"brightness": 10},
            }
        ],
    }

    rule = build_rule(raw, 0)

    assert rule.actions == (
        HaServiceAction(service="script.turn_on", target={"entity_id": "script.goodnight"}, data={"brightness": 10}),
    )


def test_build_ruleset_rejects_bad_shapes() -> None:
    with pytest.raises(RuleSetError):
        build_ruleset(["not", "a", "mapping"])
    with pytest.raises(RuleSetError):
        build_ruleset({"version": 1, "rules": [{"id": "x", "actions": [{"type": "beep"}]}]})
    with pytest.raises(RuleSetError):
        build_ruleset({"version": 1, "rules": [{"name": "no id"}]})


def test_ordered_sorts_by_priority_and_skips_disabled() -> None:
    ruleset = build_ruleset(
        {
            "version": 1,
            "rules": [
                {"id": "late", "name": "late", "enabled": True, "priority": 50, "match": {}, "actions": []},
                {"id": "off", "name": "off", "enabled": False, "priority": 1, "match": {}, "actions": []},
                {"id": "first", "name": "first", "enabled": True, "priority": 10, "match": {}, "actions": []},
                {"id": "tie", "name": "tie", "enabled": True, "priority": 50, "match": {}, "actions": []},
            ],
        }
    )

    assert [rule.id for rule in ruleset.ordered()] == ["first", "late", "tie"]


def test_empty_match_catches_default_event() -> None:
    result = match_rule(_rule(), _message("anything"))

    assert result.matches is True
    assert result.reason == "event=MESSAGES_UPSERT"


def test_event_mismatch_fails_first() -> None:
    result = match_rule(_rule(), _message(event="CONNECTION_UPDATE"))

    assert result.matches is False
    assert result.reason == "event CONNECTION_UPDATE not in [MESSAGES_UPSERT]"


def test_chat_type_filter() -> None:
    rule = _rule({"chat": {"type": "group"}})

    assert match_rule(rule, _message(chat_id=GROUP, chat_type="group", sender_id=ALICE)).matches is True
    result = match_rule(rule, _message())
    assert result.matches is False
    assert result.reason == "chatType direct != group"


def test_chat_ids_filter() -> None:
    rule = _rule({"chat": {"ids": [GROUP]}})

    assert match_rule(rule, _message(chat_id=GROUP, chat_type="group")).matches is True
    assert match_rule(rule, _message()).reason == f"chatId {ALICE} not in allowed list"


def test_sender_numbers_compare_digits_only() -> None:
    rule = _rule({"sender": {"numbers": ["+31 6 1234 5678"]}})

    result = match_rule(rule, _message(chat_id=GROUP, chat_type="group", sender_id=ALICE))

    assert result.matches is True
    assert "senderNumber=31612345678" in result.reason


def test_sender_ids_and_numbers_must_both_pass() -> None:
    rule = _rule({"sender": {"ids": ["someone-else@s.whatsapp.net"], "numbers": ["31612345678"]}})

    result = match_rule(rule, _message())

    assert result.matches is False
    assert result.reason.startswith("senderId ")


def test_contains_is_case_and_whitespace_insensitive() -> None:
    rule = _rule({"text": {"mode": "contains", "patterns": ["good   NIGHT"]}})

    result = match_rule(rule, _message("Well,  Good Night everyone"))

    assert result.matches is True
    assert result.reason == "event=MESSAGES_UPSERT, text contains 'good   NIGHT'"


def test_starts_with_uses_normalized_text() -> None:
    rule = _rule({"text": {"mode": "starts_with", "patterns": ["!lights"]}})

    assert match_rule(rule, _message("   !LIGHTS off")).matches is True
    assert match_rule(rule, _message("turn !lights off")).matches is False


def test_regex_runs_on_raw_text_ignoring_case() -> None:
    rule = _rule({"text": {"mode": "regex", "patterns": ["^temp\\s+\\d+$"]}})

    assert match_rule(rule, _message("TEMP 21")).matches is True
    assert match_rule(rule, _message(" temp 21")).matches is False


def test_invalid_regex_never_matches() -> None:
    rule = _rule({"text": {"mode": "regex", "patterns": ["(unclosed", "ok"]}})

    result = match_rule(rule, _message("ok then"))

    assert result.matches is True
    assert "'ok'" in result.reason


def test_text_mismatch_reason() -> None:
    rule = _rule({"text": {"patterns": ["door"]}})

    result = match_rule(rule, _message("window"))

    assert result.matches is False
    assert result.reason == "text did not match contains patterns"


def test_all_stages_are_listed_in_reason() -> None:
    rule = _rule(
        {
            "chat": {"type": "group", "ids": [GROUP]},
            "sender": {"ids": [ALICE], "numbers": ["31612345678"]},
            "text": {"patterns": ["alarm"]},
        }
    )

    result = match_rule(rule, _message("Alarm on", chat_id=GROUP, chat_type="group", sender_id=ALICE))

    assert result.reason == (
        f"event=MESSAGES_UPSERT, chatType=group, chatId={GROUP}, senderId={ALICE}, "
        "senderNumber=31612345678, text contains 'alarm'"
    )


def test_match_rules_honors_stop_on_match() -> None:
    first = _rule(id="a", priority=1)
    second = _rule(id="b", priority=2)
    passthrough = _rule(id="c", priority=0, stop_on_match=False)

    matched = match_rules(_message(), [passthrough, first, second])

    assert [rule.id for rule, _ in matched] == ["c", "a"]


def test_connection_rule_ignores_messages() -> None:
    rule = _rule({"events": ["CONNECTION_UPDATE"]})

    assert match_rule(rule, _message()).matches is False
    assert match_rule(rule, _message(event="CONNECTION_UPDATE")).matches is True


def test_sender_ids_are_exact() -> None:
    rule = _rule({"sender": {"ids": [ALICE]}})

    assert match_rule(rule, _message(chat_id=GROUP, chat_type="group", sender_id="31612345678")).matches is False


def test_goodnight_scenario() -> None:
    rule = _rule(
        {
            "chat": {"type": "direct"},
            "sender": {"numbers": ["31612345678"]},
            "text": {"mode": "contains", "patterns": ["goodnight"]},
        },
        id="gn",
    )

    assert match_rule(rule, _message("Say GOODNIGHT please")).matches is True
    assert match_rule(rule, _message("Say GOODNIGHT please", chat_type="group")).matches is False


def test_empty_events_list_subscribes_to_nothing() -> None:
    rule = _rule({"events": []})

    assert rule.match.events == frozenset()
    assert match_rule(rule, _message()).matches is False
    assert match_rule(rule, _message(event="CONNECTION_UPDATE")).matches is False
