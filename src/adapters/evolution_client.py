"""Evolution API adapter for outbound WhatsApp messages."""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional


class EvolutionError(RuntimeError):
    """Raised when the Evolution API rejects or fails a request."""


class EvolutionClient:
    """MessageSenderPort implementation that posts to /message/sendText."""

    def __init__(self, base_url: str, api_key: str, instance_name: str, timeout: float = 30) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._instance_name = instance_name
        self._timeout = timeout

    def _endpoint(self) -> str:
        instance = urllib.parse.quote(self._instance_name, safe="")
        return f"{self._base_url}/message/sendText/{instance}"

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """Send text to chat_id and return the provider message id."""

        if not chat_id:
            raise EvolutionError("Cannot send a reply without a destination chat")

        payload = {"number": chat_id, "text": text}
        request = urllib.request.Request(self._endpoint(), data=json.dumps(payload).encode("utf-8"), method="POST")
        request.add_header("Content-Type", "application/json")
        request.add_header("apikey", self._api_key)
        # Blocking call, like the HA client.
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise EvolutionError(f"Evolution API error {e.code}: {body}") from e
        except (urllib.error.URLError, OSError) as e:
            raise EvolutionError(f"Evolution API unreachable: {getattr(e, 'reason', e)}") from e

        try:
            decoded = json.loads(body) if body else {}
        except ValueError:
            return None
        key = decoded.get("key") if isinstance(decoded, dict) else None
        return key.get("id") if isinstance(key, dict) else None
