"""Inbound webhook processing.

The handler enforces a strict order for every payload:
1) Map the Evolution payload to an IncomingMessage (or drop it)
2) Record the message; a repeated provider message id is dropped
3) Run the rule engine
4) Mark the stored message processed

Storage errors propagate to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from adapters.evolution_mapper import build_message
from adapters.sqlite_storage import SQLiteStorage
from core.engine import RuleEngine
from core.models import ExecutionResult
from core.text import snippet

LOGGER = logging.getLogger(__name__)


class WebhookHandler:
    """Glue between the webhook transport and the rule engine."""

    def __init__(self, storage: SQLiteStorage, engine: RuleEngine) -> None:
        self._storage = storage
        self._engine = engine

    async def handle(self, payload: Mapping[str, Any]) -> Optional[ExecutionResult]:
        """Process one webhook payload; returns None when it was dropped."""

        LOGGER.info("Received event: %s", payload.get("event"))
        message = build_message(payload)
        if message is None:
            LOGGER.debug("Skipping payload without actionable content")
            return None

        row_id = self._storage.record_message(message, raw_payload=dict(payload))
        if row_id is None:
            LOGGER.info("Skipping duplicate message %s", message.message_id)
            return None

        LOGGER.info(
            'Message from %s in %s: "%s"',
            message.sender_name or message.sender_id,
            message.chat_id,
            snippet(message.text, 50, "..."),
        )
        result = await self._engine.process_message(message, message_ref=row_id)
        self._storage.mark_processed(row_id)
        return result
