"""Text and identifier helpers (core domain).

These are pure functions shared by the matcher, the executor and the webhook
mapper. None of them can fail.
"""

from __future__ import annotations

import re
from typing import Optional

DEFAULT_EVENT = "MESSAGES_UPSERT"
GROUP_SUFFIX = "@g.us"

_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace runs to single spaces."""

    return _WHITESPACE.sub(" ", text.lower()).strip()


def extract_phone(id_or_number: str) -> str:
    """Return the bare digits of a JID or a human-formatted phone number.

    "31612345678@s.whatsapp.net" -> "31612345678"
    "+31 6 1234 5678"            -> "31612345678"
    """

    local_part = id_or_number.split("@", 1)[0]
    return _NON_DIGITS.sub("", local_part)


def chat_type_for_jid(jid: str) -> str:
    """Group chats carry the @g.us suffix; everything else is a direct chat."""

    return "group" if jid.endswith(GROUP_SUFFIX) else "direct"


def normalize_event(token: Optional[str]) -> str:
    """Map webhook event names ("messages.upsert") to engine tokens."""

    if not token:
        return DEFAULT_EVENT
    return token.strip().upper().replace(".", "_").replace("-", "_")


def snippet(text: str, limit: int, marker: str = "") -> str:
    """Clip text to limit characters, appending marker when clipped."""

    if len(text) <= limit:
        return text
    return f"{text[:limit]}{marker}"
