from __future__ import annotations

import http.client
import json
import threading
import urllib.error
import urllib.request
from typing import Any, Mapping
from urllib.parse import urlparse

import pytest

from adapters.webhook_server import WEBHOOK_PATH, build_server


class FakeWebhook:
    def __init__(self, fail: bool = False) -> None:
        self.payloads: list[Mapping[str, Any]] = []
        self.fail = fail

    async def handle(self, payload: Mapping[str, Any]) -> None:
        self.payloads.append(payload)
        if self.fail:
            raise RuntimeError("database is locked")


@pytest.fixture
def serve():
    servers = []

    def _start(webhook: FakeWebhook) -> str:
        server = build_server("127.0.0.1", 0, webhook)  # type: ignore[arg-type]
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append(server)
        host, port = server.server_address[:2]
        return f"http://{host}:{port}"

    yield _start
    for server in servers:
        server.shutdown()
        server.server_close()


def _post(url: str, body: bytes) -> tuple[int, dict]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read())


def test_health(serve) -> None:
    base = serve(FakeWebhook())

    with urllib.request.urlopen(f"{base}/health", timeout=5) as response:
        assert json.loads(response.read()) == {"status": "ok"}


def test_webhook_is_acknowledged(serve) -> None:
    webhook = FakeWebhook()
    base = serve(webhook)

    status, body = _post(base + WEBHOOK_PATH, json.dumps({"event": "messages.upsert"}).encode("utf-8"))

    assert (status, body) == (200, {"received": True})
    assert webhook.payloads == [{"event": "messages.upsert"}]


def test_processing_errors_are_still_acknowledged(serve) -> None:
    base = serve(FakeWebhook(fail=True))

    status, body = _post(base + WEBHOOK_PATH, b'{"event": "messages.upsert"}')

    assert status == 200
    assert body == {"received": True, "error": "database is locked"}


def test_invalid_json_is_rejected(serve) -> None:
    webhook = FakeWebhook()
    base = serve(webhook)

    assert _post(base + WEBHOOK_PATH, b"{nope")[0] == 400
    assert _post(base + WEBHOOK_PATH, b"[1, 2]")[0] == 400
    assert webhook.payloads == []


def test_unknown_path(serve) -> None:
    assert _post(serve(FakeWebhook()) + "/webhook/other", b"{}")[0] == 404


def test_bad_content_length_gets_a_response(serve) -> None:
    webhook = FakeWebhook()
    target = urlparse(serve(webhook))
    conn = http.client.HTTPConnection(target.hostname, target.port, timeout=5)
    try:
        conn.putrequest("POST", WEBHOOK_PATH)
        conn.putheader("Content-Type", "application/json")
        conn.putheader("Content-Length", "lots")
        conn.endheaders()
        response = conn.getresponse()

        assert response.status == 400
        assert json.loads(response.read()) == {"error": "invalid content length"}
    finally:
        conn.close()
    assert webhook.payloads == []


def test_each_server_keeps_its_own_webhook(serve) -> None:
    first, second = FakeWebhook(), FakeWebhook()
    first_base = serve(first)
    second_base = serve(second)

    _post(first_base + WEBHOOK_PATH, b'{"event": "one"}')
    _post(second_base + WEBHOOK_PATH, b'{"event": "two"}')

    assert first.payloads == [{"event": "one"}]
    assert second.payloads == [{"event": "two"}]
