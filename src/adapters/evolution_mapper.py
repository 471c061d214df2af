"""Evolution webhook-to-core message mapping adapter.

This keeps Evolution API payload details out of the core engine.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from core.models import IncomingMessage
from core.text import DEFAULT_EVENT, chat_type_for_jid, normalize_event

# Message kinds that carry user text, in lookup order.
_TEXT_PATHS = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
)


def _dig(data: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def extract_text(message: Mapping[str, Any]) -> str:
    """Return the first non-empty text or caption from a message body."""

    for path in _TEXT_PATHS:
        value = _dig(message, path)
        if isinstance(value, str) and value:
            return value
    return ""


def _map_upsert(data: Any) -> Optional[IncomingMessage]:
    if not isinstance(data, Mapping):
        return None
    key = data.get("key")
    body = data.get("message")
    if not isinstance(key, Mapping) or not isinstance(body, Mapping):
        return None
    # Our own replies come back through the webhook too.
    if key.get("fromMe"):
        return None

    text = extract_text(body)
    if not text:
        return None

    chat_id = key.get("remoteJid") or ""
    return IncomingMessage(
        chat_id=chat_id,
        chat_type=chat_type_for_jid(chat_id),
        sender_id=key.get("participant") or chat_id,
        sender_name=data.get("pushName") or None,
        text=text,
        message_id=key.get("id") or None,
        event=DEFAULT_EVENT,
    )


def _map_account_event(event: str, data: Any) -> IncomingMessage:
    data = data if isinstance(data, Mapping) else {}
    chat_id = str(data.get("remoteJid") or data.get("from") or "")
    return IncomingMessage(
        chat_id=chat_id,
        chat_type=chat_type_for_jid(chat_id),
        sender_id=str(data.get("from") or chat_id),
        text="",
        message_id=str(data["id"]) if data.get("id") else None,
        event=event,
    )


def build_message(payload: Mapping[str, Any]) -> Optional[IncomingMessage]:
    """Build an IncomingMessage from an Evolution webhook payload.

    Returns None for payloads the engine should not see: malformed messages,
    self-sent messages and messages without text.
    """

    event = normalize_event(payload.get("event"))
    if event == DEFAULT_EVENT:
        return _map_upsert(payload.get("data"))
    return _map_account_event(event, payload.get("data"))
