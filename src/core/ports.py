"""Ports (interfaces) used by the rule engine.

Ports define the minimal contracts for the rule store and the two outbound
collaborators so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from core.models import RuleFireRecord, ServiceCallResult, StoredRuleSet


class RuleStorePort(Protocol):
    """Storage operations required by the rule engine."""

    def get_active_ruleset(self) -> Optional[StoredRuleSet]:
        ...

    def save_ruleset(self, source_text: str, parsed_json: str) -> int:
        ...

    def purge_expired_cooldowns(self, now: datetime) -> int:
        ...

    def has_active_cooldown(self, rule_id: str, scope_key: str, now: datetime) -> bool:
        ...

    def upsert_cooldown(self, rule_id: str, scope_key: str, expires_at: datetime) -> None:
        ...

    def append_rule_fire(self, record: RuleFireRecord) -> None:
        ...


class HomeAssistantPort(Protocol):
    """Home Assistant service calls."""

    async def call_service(
        self,
        service: str,
        target: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> ServiceCallResult:
        ...


class MessageSenderPort(Protocol):
    """Outbound WhatsApp messages. Raises on delivery failure."""

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        ...
