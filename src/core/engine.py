"""Rule engine orchestration.

This module is integration-agnostic. It only relies on ports for storage and
the outbound calls, so the webhook server, the CLI and the tests all drive
the same code.

Per message the engine enforces a strict order:
1) Take the cached rule set snapshot (never re-read mid-call)
2) Enabled rules by ascending priority, ties in declaration order
3) Per rule: cooldown check, match, execute, log the fire, set cooldown
4) Stop after the first match unless the rule opts out of stop_on_match
"""

from __future__ import annotations

import json
import logging
import threading
from typing import List, Optional

from core.cooldown import Clock, CooldownTracker, utc_now
from core.executor import ActionExecutor, describe_action
from core.models import (
    ActionOutcome,
    ActionPreview,
    EvaluatedRule,
    ExecutedAction,
    ExecutionResult,
    IncomingMessage,
    MatchedRule,
    RuleFireRecord,
    TestResult,
    ValidationResult,
)
from core.ports import RuleStorePort
from core.rules_engine import EMPTY_RULESET, Rule, RuleSet, RuleSetError, build_ruleset, match_rule, match_rules
from core.text import DEFAULT_EVENT, snippet
from core.validator import load_rules_source, validate_rules

LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCE = "version: 1\nrules: []\n"
MATCHED_TEXT_CHARS = 500


class RuleEngine:
    """Loads the active rule set and runs inbound events through it."""

    def __init__(
        self,
        store: RuleStorePort,
        executor: ActionExecutor,
        cooldowns: Optional[CooldownTracker] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or utc_now
        self._cooldowns = cooldowns or CooldownTracker(store, self._clock)
        self._ruleset: RuleSet = EMPTY_RULESET
        self._swap_lock = threading.Lock()

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def init(self) -> None:
        self.reload_rules()

    def _swap(self, ruleset: RuleSet) -> None:
        # Readers grab the reference once per call, so replacing it is enough.
        with self._swap_lock:
            self._ruleset = ruleset

    def reload_rules(self) -> RuleSet:
        """Refresh the cache from the store.

        Storage errors propagate. A missing or corrupt cached document is
        treated as an empty rule set.
        """

        stored = self._store.get_active_ruleset()
        ruleset = EMPTY_RULESET
        if stored is not None and stored.parsed_json:
            try:
                ruleset = build_ruleset(json.loads(stored.parsed_json))
            except (ValueError, RuleSetError):
                LOGGER.exception("Failed to parse cached rules, falling back to an empty rule set")
        self._swap(ruleset)
        LOGGER.info("Loaded %s rules", len(ruleset.rules))
        return ruleset

    def validate(self, source_text: str) -> ValidationResult:
        return validate_rules(source_text)

    def save_rules(self, source_text: str) -> ValidationResult:
        """Validate and persist a new rule set; the cache is swapped on success."""

        validation = validate_rules(source_text)
        if not validation.valid:
            return validation

        parsed = load_rules_source(source_text)
        ruleset = build_ruleset(parsed)
        version = self._store.save_ruleset(source_text, json.dumps(parsed, default=str))
        self._swap(ruleset)
        LOGGER.info("Saved %s rules (store version %s)", len(ruleset.rules), version)
        return validation

    def get_rules_source(self) -> str:
        stored = self._store.get_active_ruleset()
        if stored is None or not stored.source_text:
            return DEFAULT_SOURCE
        return stored.source_text

    def test_message(self, message: IncomingMessage) -> TestResult:
        """Simulate matching only: no cooldowns, no actions, no fire records."""

        result = TestResult()
        for rule, match in match_rules(message, self._ruleset.ordered()):
            result.matched_rules.append(MatchedRule(id=rule.id, name=rule.name, reason=match.reason))
            for action in rule.actions:
                result.actions_preview.append(
                    ActionPreview(rule_id=rule.id, type=action.type, details=describe_action(action))
                )
        return result

    async def process_message(self, message: IncomingMessage, message_ref: Optional[int] = None) -> ExecutionResult:
        """Run one inbound event through the active rules."""

        result = ExecutionResult()

        def log(line: str) -> None:
            LOGGER.info(line)
            result.logs.append(line)

        ruleset = self._ruleset
        if not ruleset.rules:
            log("No rules loaded, skipping")
            return result

        ordered = ruleset.ordered()
        log(
            f"Processing event={message.event or DEFAULT_EVENT} chat={message.chat_id} "
            f'sender={message.sender_id} text="{snippet(message.text, 80)}"'
        )
        log(f"Evaluating {len(ordered)} enabled rules ({len(ruleset.rules)} total)")

        for rule in ordered:
            if self._cooldowns.is_on_cooldown(rule.id, message.chat_id):
                log(f'Rule "{rule.id}" ({rule.name}) skipped: cooldown active for {message.chat_id}')
                result.evaluated_rules.append(
                    EvaluatedRule(id=rule.id, name=rule.name, matched=False, reason="on cooldown", skipped_cooldown=True)
                )
                continue

            match = match_rule(rule, message)
            if not match.matches:
                log(f'Rule "{rule.id}" ({rule.name}) no match: {match.reason}')
                result.evaluated_rules.append(
                    EvaluatedRule(id=rule.id, name=rule.name, matched=False, reason=match.reason or "no match")
                )
                continue

            log(f'Rule "{rule.id}" ({rule.name}) MATCHED: {match.reason}')
            outcomes = await self._executor.execute(rule, message, log)
            self._store.append_rule_fire(self._fire_record(rule, message, message_ref, outcomes))

            result.evaluated_rules.append(
                EvaluatedRule(
                    id=rule.id,
                    name=rule.name,
                    matched=True,
                    reason=match.reason,
                    stopped_chain=rule.stop_on_match,
                )
            )
            result.executed_actions.extend(
                ExecutedAction(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    type=outcome.type,
                    details=outcome.details,
                    success=outcome.success,
                    duration_ms=outcome.duration_ms,
                    error=outcome.error,
                )
                for outcome in outcomes
            )

            if rule.cooldown_seconds > 0:
                self._cooldowns.set_cooldown(rule.id, message.chat_id, rule.cooldown_seconds)
                log(f"Cooldown set: {rule.cooldown_seconds}s for {message.chat_id}")

            if rule.stop_on_match:
                log("stop_on_match: no more rules evaluated")
                break

        log(
            f"Done. {len(result.executed_actions)} action(s) executed across "
            f"{len(result.matched_rules)} matched rule(s)"
        )
        return result

    def _fire_record(
        self,
        rule: Rule,
        message: IncomingMessage,
        message_ref: Optional[int],
        outcomes: List[ActionOutcome],
    ) -> RuleFireRecord:
        errors = [outcome.error or "unknown error" for outcome in outcomes if not outcome.success]
        return RuleFireRecord(
            rule_id=rule.id,
            rule_name=rule.name,
            chat_id=message.chat_id,
            sender_id=message.sender_id,
            matched_text=snippet(message.text, MATCHED_TEXT_CHARS),
            actions=tuple(outcomes),
            success=not errors,
            event_type=message.event or DEFAULT_EVENT,
            fired_at=self._clock(),
            message_ref=message_ref,
            error_summary="; ".join(errors) or None,
        )
