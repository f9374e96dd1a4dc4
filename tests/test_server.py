"""Launcher tests."""

import pytest

import server


@pytest.fixture
def opened(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Run ``server.main`` without uvicorn and record browser launches."""
    urls: list[str] = []
    monkeypatch.setattr(server, "run_uvicorn", lambda: None)
    monkeypatch.setattr(server.time, "sleep", lambda seconds: None)
    monkeypatch.setattr(server.webbrowser, "open", urls.append)
    return urls


def test_browser_stays_closed_by_default(opened: list[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LINKDECK_OPEN_BROWSER", raising=False)
    server.main()
    assert opened == []


def test_browser_opens_when_asked(opened: list[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LINKDECK_OPEN_BROWSER", "1")
    server.main()
    assert opened == [f"http://{server.get_host()}:{server.get_port()}/api/health"]
