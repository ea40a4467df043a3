"""Shared fixtures: a local HTTP server standing in for upstream APIs."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, urlsplit

import pytest


class _UpstreamHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return

    def _send_json(self, status: int, payload: object) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("X-Upstream-Secret", "header-value-never-forwarded")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/user":
            self._send_json(200, {"id": 42, "name": "alice"})
        elif self.path.startswith("/items/"):
            self._send_json(200, {"item": self.path.rsplit("/", 1)[-1]})
        elif self.path.startswith("/echo-query"):
            self._send_json(200, {"query": dict(parse_qsl(urlsplit(self.path).query))})
        elif self.path == "/echo-headers":
            self._send_json(200, {"authorization": self.headers.get("Authorization")})
        elif self.path == "/fail":
            self._send_json(500, {"error": "boom"})
        elif self.path == "/text":
            body = b"hello"
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        elif self.path == "/slow":
            time.sleep(3)
            try:
                self._send_json(200, {"slow": True})
            except OSError:
                pass
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        try:
            payload = json.loads(raw or b"null")
        except json.JSONDecodeError:
            payload = raw.decode("utf-8")
        self._send_json(200, {"received": payload})


@pytest.fixture
def upstream() -> Iterator[str]:
    """Base URL of a throwaway HTTP server."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
    server.daemon_threads = True
    server.block_on_close = False
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()
