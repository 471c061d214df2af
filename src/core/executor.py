"""Rule action execution.

Each action is dispatched to its collaborator and its outcome recorded on its
own: a failing action never stops the actions after it.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional

from core.models import ActionOutcome, IncomingMessage
from core.ports import HomeAssistantPort, MessageSenderPort
from core.rules_engine import HaServiceAction, ReplyWhatsAppAction, Rule, RuleAction
from core.text import snippet

LOGGER = logging.getLogger(__name__)

LogFn = Callable[[str], None]


def describe_action(action: RuleAction) -> str:
    """Short human-readable description used by logs and previews."""

    if isinstance(action, HaServiceAction):
        entity_id = (action.target or {}).get("entity_id")
        if isinstance(entity_id, (list, tuple)):
            entity_id = ", ".join(entity_id)
        return f"Call {action.service} on {entity_id or 'no target'}"
    if isinstance(action, ReplyWhatsAppAction):
        return f'Reply: "{snippet(action.text, 50, "...")}"'
    raise TypeError(f"Unsupported action: {action!r}")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ActionExecutor:
    """Runs a rule's actions in declared order against the collaborators."""

    def __init__(
        self,
        home_assistant: HomeAssistantPort,
        sender: MessageSenderPort,
        allowed_services: Iterable[str],
    ) -> None:
        self._home_assistant = home_assistant
        self._sender = sender
        self._allowed_services = frozenset(allowed_services)

    async def execute(
        self,
        rule: Rule,
        message: IncomingMessage,
        log: Optional[LogFn] = None,
    ) -> List[ActionOutcome]:
        log = log or LOGGER.info
        outcomes: List[ActionOutcome] = []
        for action in rule.actions:
            outcomes.append(await self._run(action, message, log))
        return outcomes

    async def _run(self, action: RuleAction, message: IncomingMessage, log: LogFn) -> ActionOutcome:
        details = describe_action(action)
        start = time.monotonic()
        try:
            if isinstance(action, HaServiceAction):
                return await self._call_service(action, details, log)
            return await self._reply(action, message, details, log)
        except Exception as exc:
            # Failures stay local to this action.
            duration_ms = _elapsed_ms(start)
            log(f"Action {action.type} FAILED after {duration_ms}ms: {exc}")
            return ActionOutcome(
                type=action.type,
                success=False,
                details=details,
                duration_ms=duration_ms,
                error=str(exc) or exc.__class__.__name__,
            )

    async def _call_service(self, action: HaServiceAction, details: str, log: LogFn) -> ActionOutcome:
        if action.service not in self._allowed_services:
            allowed = ", ".join(sorted(self._allowed_services)) or "none"
            error = f"Service '{action.service}' is not in the allowed list. Allowed: {allowed}"
            log(f"Blocked HA service {action.service}: not allowlisted")
            return ActionOutcome(
                type=action.type,
                success=False,
                details=f"{details} (blocked by allowlist)",
                duration_ms=0,
                error=error,
            )

        log(f"Calling HA service {action.service} (target={action.target}, data={action.data})")
        start = time.monotonic()
        result = await self._home_assistant.call_service(action.service, action.target, action.data)
        duration_ms = _elapsed_ms(start)
        log(f"HA service result: success={result.success} ({duration_ms}ms)")
        return ActionOutcome(
            type=action.type,
            success=result.success,
            details=details,
            duration_ms=duration_ms,
            error=result.error,
        )

    async def _reply(
        self,
        action: ReplyWhatsAppAction,
        message: IncomingMessage,
        details: str,
        log: LogFn,
    ) -> ActionOutcome:
        log(f'Sending WhatsApp reply to {message.chat_id}: "{snippet(action.text, 120)}"')
        start = time.monotonic()
        sent_id = await self._sender.send_text(message.chat_id, action.text)
        duration_ms = _elapsed_ms(start)
        log(f"WhatsApp reply sent: id={sent_id} ({duration_ms}ms)")
        return ActionOutcome(type=action.type, success=True, details=details, duration_ms=duration_ms)
