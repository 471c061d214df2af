"""Home Assistant REST adapter.

Calls services through the REST API (POST /api/services/<domain>/<service>).
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Mapping, Optional

from core.models import ServiceCallResult

LOGGER = logging.getLogger(__name__)


class HomeAssistantClient:
    """HomeAssistantPort implementation backed by the HA REST API."""

    def __init__(self, base_url: str, token: str, timeout: float = 10) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _endpoint(self, service: str) -> Optional[str]:
        domain, sep, name = service.partition(".")
        if not sep or not domain or not name:
            return None
        return f"{self._base_url}/api/services/{domain}/{name}"

    async def call_service(
        self,
        service: str,
        target: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> ServiceCallResult:
        """Call a service; failures are reported in the result, not raised."""

        endpoint = self._endpoint(service)
        if endpoint is None:
            return ServiceCallResult(success=False, error=f"Invalid service identifier: {service!r}")

        payload: dict[str, Any] = dict(data or {})
        if target and target.get("entity_id"):
            payload["entity_id"] = target["entity_id"]

        request = urllib.request.Request(endpoint, data=json.dumps(payload).encode("utf-8"), method="POST")
        request.add_header("Authorization", f"Bearer {self._token}")
        request.add_header("Content-Type", "application/json")
        # Blocking call; the engine runs one event per thread.
        try:
            with urllib.request.urlopen(request, timeout=self._timeout):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            LOGGER.error("HA service %s failed: %s %s", service, e.code, body)
            return ServiceCallResult(success=False, error=_error_message(body) or f"HTTP {e.code}")
        except (urllib.error.URLError, OSError) as e:
            LOGGER.error("HA service %s failed: %s", service, e)
            return ServiceCallResult(success=False, error=str(getattr(e, "reason", e)))
        return ServiceCallResult(success=True)


def _error_message(body: str) -> Optional[str]:
    try:
        decoded = json.loads(body)
    except ValueError:
        return body.strip() or None
    if isinstance(decoded, dict) and decoded.get("message"):
        return str(decoded["message"])
    return body.strip() or None
