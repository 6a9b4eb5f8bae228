"""
Shared test fixtures and configuration.
"""

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import urlsplit

import pytest

from aiprovision.core.errors import TransferFailure
from aiprovision.core.execution.transfer import Transfer, TransferResult
from aiprovision.core.reliability.retry import RetryExecutor


# ── In-process HTTP file server ─────────────────────────────────────


class FileServer:
    """State behind the test HTTP server.

    ``files`` maps URL paths to bodies.  ``failures`` makes the next N
    GETs of a path answer 500; ``statuses`` pins a status for a path;
    ``redirects`` answers a path with a 302 to another path.
    Every request is recorded as ``(method, path, headers)`` with
    header names title-cased (urllib sends ``User-agent``).
    """

    def __init__(self):
        self.base_url = ""
        self.files: dict[str, bytes] = {}
        self.ranges = True
        self.failures: dict[str, int] = {}
        self.statuses: dict[str, int] = {}
        self.redirects: dict[str, str] = {}
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self.lock = threading.Lock()

    def url(self, path: str) -> str:
        return self.base_url + path

    def gets(self, path: str | None = None) -> list[tuple[str, str, dict[str, str]]]:
        return [
            r for r in self.requests
            if r[0] == "GET" and (path is None or urlsplit(r[1]).path == path)
        ]


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def do_GET(self):
        self._serve(head=False)

    def do_HEAD(self):
        self._serve(head=True)

    def _serve(self, head: bool) -> None:
        state: FileServer = self.server.state
        path = urlsplit(self.path).path

        with state.lock:
            state.requests.append((self.command, self.path, {k.title(): v for k, v in self.headers.items()}))
            failing = 0 if head else state.failures.get(path, 0)
            if failing:
                state.failures[path] = failing - 1

        location = state.redirects.get(path)
        if location:
            self.send_response(302)
            self.send_header("Location", state.url(location))
            self.send_header("Content-Length", "0")
            self.end_headers()
            return

        status = state.statuses.get(path)
        if status:
            self.send_error(status)
            return
        if failing:
            self.send_error(500)
            return

        data = state.files.get(path)
        if data is None:
            self.send_error(404)
            return

        rng = self.headers.get("Range")
        if rng and state.ranges:
            first, _, last = rng.removeprefix("bytes=").partition("-")
            start = int(first)
            if start >= len(data):
                self.send_response(416)
                self.send_header("Content-Range", f"bytes */{len(data)}")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            end = min(int(last) if last else len(data) - 1, len(data) - 1)
            body = data[start:end + 1]
            self.send_response(206)
            self.send_header("Content-Range", f"bytes {start}-{end}/{len(data)}")
        else:
            body = data
            self.send_response(200)

        self.send_header("Content-Length", str(len(body)))
        if state.ranges:
            self.send_header("Accept-Ranges", "bytes")
        self.end_headers()
        if not head:
            self.wfile.write(body)


@pytest.fixture
def file_server():
    """A live HTTP server on 127.0.0.1 serving ``state.files``."""
    state = FileServer()
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.state = state
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    state.base_url = f"http://127.0.0.1:{httpd.server_address[1]}"
    yield state
    httpd.shutdown()
    httpd.server_close()


# ── Fakes ───────────────────────────────────────────────────────────


class FakeTransfer(Transfer):
    """Transfer that writes ``payload`` without touching the network.

    ``failures`` maps URLs to the number of times they fail before
    succeeding; ``always_fail`` URLs never succeed.
    """

    def __init__(self, payload: bytes = b"payload", failures=None, always_fail=()):
        self.payload = payload
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail)
        self.calls: list[tuple[str, Path, dict[str, str]]] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    def fetch(self, url, dest, headers=None):
        with self._lock:
            self.calls.append((url, dest, dict(headers or {})))
            pending = self.failures.get(url, 0)
            if pending:
                self.failures[url] = pending - 1
        if pending or url in self.always_fail:
            raise TransferFailure(f"HTTP 500 for {url}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.payload)
        return TransferResult(path=dest, size_bytes=len(self.payload))

    def urls(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_transfer() -> FakeTransfer:
    return FakeTransfer()


@pytest.fixture
def executor() -> RetryExecutor:
    """Non-interactive executor that never sleeps."""
    return RetryExecutor(interactive=False, sleep=lambda s: None)
