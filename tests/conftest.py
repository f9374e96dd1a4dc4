"""Test configuration."""

import socket
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import requests
from fastapi.testclient import TestClient

from linkdeck import main
from linkdeck.storage import Storage


class FakeResponse:
    """Just enough of ``requests.Response`` for the probes and the executor."""

    def __init__(
        self,
        status_code: int = 200,
        body: str = "",
        headers: dict[str, str] | None = None,
        reason: str = "OK",
    ) -> None:
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {}
        self.text = body

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        yield self.text.encode("utf-8")

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> bool:
        return False


class FakeTransport:
    """Stands in for ``requests.request``; records every call."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.response = FakeResponse()
        self.responses: dict[str, FakeResponse] = {}
        self.error: Exception | None = None

    def __call__(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.responses.get(url, self.response)


@pytest.fixture
def transport(monkeypatch: pytest.MonkeyPatch) -> FakeTransport:
    """Replace outbound HTTP with a scripted fake."""
    fake = FakeTransport()
    monkeypatch.setattr(requests, "request", fake)
    monkeypatch.setattr(requests, "head", lambda url, **kw: fake("HEAD", url, **kw))
    return fake


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point DATA_DIR at a temporary directory."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def storage(data_dir: Path) -> Storage:
    """A fresh store backed by a temporary data file."""
    return Storage(data_dir / "data.json")


@pytest.fixture
def test_client(storage: Storage) -> Iterator[TestClient]:
    """Create a test client bound to the temporary store."""
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def trickling_server() -> Iterator[str]:
    """
    A real HTTP server on localhost that sends its headers at once, then a
    JSON body one byte every 0.1 s (about five seconds in total).
    """
    body = b'{"ok": "true", "note": "sent slowly, one byte at a time"}'
    head = (
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Type: application/json\r\n"
        b"Content-Length: %d\r\n"
        b"Connection: close\r\n\r\n" % len(body)
    )
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    listener.settimeout(5)
    port = listener.getsockname()[1]
    stop = threading.Event()

    def serve() -> None:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            try:
                conn.sendall(head)
                for byte in body:
                    if stop.wait(0.1):
                        return
                    conn.sendall(bytes([byte]))
            except OSError:
                return

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{port}/status"
    stop.set()
    listener.close()
    thread.join(timeout=2)
