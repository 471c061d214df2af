"""Webhook HTTP server.

A small stdlib HTTP server: POST /webhook/evolution feeds the handler and
GET /health reports liveness. Each request runs on its own thread with its
own event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from adapters.webhook_handler import WebhookHandler

LOGGER = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/evolution"


class _Handler(BaseHTTPRequestHandler):
    webhook: Optional[WebhookHandler] = None

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
        LOGGER.debug("%s - %s", self.address_string(), format % args)

    def _json(self, code: int, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self) -> None:  # noqa: N802
        if urlparse(self.path).path == "/health":
            self._json(200, {"status": "ok"})
        else:
            self._json(404, {"error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        if urlparse(self.path).path != WEBHOOK_PATH:
            self._json(404, {"error": "not found"})
            return

        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            self._json(400, {"error": "invalid content length"})
            return
        body = self.rfile.read(length) if length > 0 else b"{}"
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            self._json(400, {"error": "invalid json"})
            return
        if not isinstance(payload, dict):
            self._json(400, {"error": "payload must be an object"})
            return

        # Evolution redelivers on non-2xx, so processing errors still get a 200.
        try:
            asyncio.run(self.webhook.handle(payload))  # type: ignore[union-attr]
        except Exception as exc:
            LOGGER.exception("Webhook processing error")
            self._json(200, {"received": True, "error": str(exc)})
            return
        self._json(200, {"received": True})


def build_server(host: str, port: int, webhook: WebhookHandler) -> ThreadingHTTPServer:
    """Bind the server; the caller decides how to run serve_forever."""

    handler = type("_BoundHandler", (_Handler,), {"webhook": webhook})
    return ThreadingHTTPServer((host, port), handler)
