"""Health check engine tests."""

import ssl
import time

import pytest
import requests

from linkdeck import health
from linkdeck.health import check_bookmark, classify_response, ping, sweep
from linkdeck.models import Bookmark, BookmarkCreate, HealthCheckConfig
from linkdeck.storage import Storage

from .conftest import FakeResponse, FakeTransport


def _bookmark(url: str = "https://example.com", **config) -> Bookmark:
    return Bookmark(
        id="b1",
        name="Example",
        url=url,
        category_id="c1",
        health_check_enabled=True,
        health_check_config=HealthCheckConfig(**config) if config else None,
    )


def test_classify_status_only() -> None:
    config = HealthCheckConfig()
    assert classify_response(config, 200, None) == "online"
    assert classify_response(config, 503, None) == "offline"
    assert classify_response(HealthCheckConfig(expected_status=204), 200, None) == "offline"
    assert classify_response(HealthCheckConfig(expected_status=204), 204, None) == "online"


def test_classify_json_value() -> None:
    config = HealthCheckConfig(json_key="ok", json_value="true")
    assert classify_response(config, 200, '{"ok":"true"}') == "online"
    assert classify_response(config, 200, '{"ok":"false"}') == "offline"
    assert classify_response(config, 200, '{"ok": true}') == "online"
    assert classify_response(config, 200, "<html>") == "offline"
    assert classify_response(config, 500, '{"ok":"true"}') == "offline"


def test_classify_json_presence_is_flat() -> None:
    config = HealthCheckConfig(json_key="status")
    assert classify_response(config, 200, '{"status": null}') == "online"
    assert classify_response(config, 200, '{"other": 1}') == "offline"
    nested = HealthCheckConfig(json_key="data.ok")
    assert classify_response(nested, 200, '{"data": {"ok": 1}}') == "offline"


def test_head_probe_without_json_key(transport: FakeTransport) -> None:
    result = check_bookmark(_bookmark())
    assert result.health_status == "online"
    assert result.last_health_check.endswith("Z")
    assert result.ssl_expiry_days is None
    call = transport.calls[0]
    assert call["method"] == "HEAD"
    assert call["url"] == "https://example.com"
    assert call["timeout"] == 10


def test_get_probe_with_json_key_and_config_url(transport: FakeTransport) -> None:
    transport.response = FakeResponse(200, '{"healthy": "yes"}')
    bookmark = _bookmark(url="https://example.com/app", json_key="healthy", json_value="yes")
    bookmark.health_check_config.url = "https://example.com/healthz"

    result = check_bookmark(bookmark)
    assert result.health_status == "online"
    assert transport.calls[0]["method"] == "GET"
    assert transport.calls[0]["url"] == "https://example.com/healthz"


def test_status_mismatch_is_offline(transport: FakeTransport) -> None:
    transport.response = FakeResponse(404)
    assert check_bookmark(_bookmark()).health_status == "offline"


@pytest.mark.parametrize(
    "error",
    [
        requests.ConnectTimeout("slow"),
        requests.ReadTimeout("slower"),
        requests.ConnectionError("refused"),
        requests.TooManyRedirects("loop"),
    ],
)
def test_network_failures_become_offline(transport: FakeTransport, error: Exception) -> None:
    transport.error = error
    result = check_bookmark(_bookmark())
    assert result.health_status == "offline"
    assert result.last_health_check


def test_ssl_check_records_days_then_probes(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen = []
    monkeypatch.setattr(
        health, "ssl_days_until_expiry", lambda host, port: seen.append((host, port)) or 30
    )
    result = check_bookmark(_bookmark(url="https://secure.example.com:8443/", check_ssl=True))
    assert seen == [("secure.example.com", 8443)]
    assert result.health_status == "online"
    assert result.ssl_expiry_days == 30
    assert len(transport.calls) == 1


def test_expired_certificate_skips_http_probe(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(health, "ssl_days_until_expiry", lambda host, port: -3)
    result = check_bookmark(_bookmark(check_ssl=True))
    assert result.health_status == "offline"
    assert result.ssl_expiry_days == -3
    assert transport.calls == []


def test_expired_certificate_rejected_by_handshake(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    def refuse(host: str, port: int) -> int:
        error = ssl.SSLCertVerificationError("certificate has expired")
        error.verify_code = health.CERT_HAS_EXPIRED
        raise error

    monkeypatch.setattr(health, "ssl_days_until_expiry", refuse)
    result = check_bookmark(_bookmark(check_ssl=True))
    assert result.health_status == "offline"
    assert result.ssl_expiry_days == 0
    assert transport.calls == []


def test_tls_connection_failure_is_offline(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unreachable(host: str, port: int) -> int:
        raise TimeoutError("timed out")

    monkeypatch.setattr(health, "ssl_days_until_expiry", unreachable)
    result = check_bookmark(_bookmark(check_ssl=True))
    assert result.health_status == "offline"
    assert result.ssl_expiry_days is None
    assert transport.calls == []


def test_ssl_check_ignored_for_plain_http(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fail(host: str, port: int) -> int:
        raise AssertionError("should not be called")

    monkeypatch.setattr(health, "ssl_days_until_expiry", fail)
    result = check_bookmark(_bookmark(url="http://intranet.local", check_ssl=True))
    assert result.health_status == "online"
    assert result.ssl_expiry_days is None


def test_ping(transport: FakeTransport) -> None:
    transport.response = FakeResponse(204)
    assert ping("https://example.com") == {"status": "online", "statusCode": 204}
    transport.response = FakeResponse(301)
    assert ping("https://example.com") == {"status": "offline", "statusCode": 301}
    transport.error = requests.ConnectionError("down")
    assert ping("https://example.com") == {"status": "offline", "statusCode": 0}


def test_sweep_checks_enabled_bookmarks(transport: FakeTransport, storage: Storage) -> None:
    category_id = storage.get_categories()[0].id
    up = storage.create_bookmark(
        BookmarkCreate(name="up", url="https://up.example.com", category_id=category_id, health_check_enabled=True)
    )
    down = storage.create_bookmark(
        BookmarkCreate(name="down", url="https://down.example.com", category_id=category_id, health_check_enabled=True)
    )
    skipped = storage.create_bookmark(
        BookmarkCreate(name="off", url="https://off.example.com", category_id=category_id)
    )
    transport.responses["https://down.example.com"] = FakeResponse(500)

    updated = sweep(storage, workers=2)

    assert {b.id for b in updated} == {up.id, down.id}
    assert storage.get_bookmark(up.id).health_status == "online"
    assert storage.get_bookmark(down.id).health_status == "offline"
    assert storage.get_bookmark(skipped.id).health_status == "unknown"
    assert {c["url"] for c in transport.calls} == {"https://up.example.com", "https://down.example.com"}


def test_trickling_body_is_offline_at_deadline(
    trickling_server: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The body would match, but it arrives long after the check's time is up."""
    monkeypatch.setattr(health, "HEALTH_CHECK_TIMEOUT", 1)
    started = time.monotonic()
    result = check_bookmark(_bookmark(url=trickling_server, json_key="ok", json_value="true"))
    elapsed = time.monotonic() - started

    assert result.health_status == "offline"
    assert elapsed < 2.5


def test_slow_tls_handshake_is_offline_at_deadline(
    transport: FakeTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    def hang(host: str, port: int) -> int:
        time.sleep(3)
        return 90

    monkeypatch.setattr(health, "ssl_days_until_expiry", hang)
    monkeypatch.setattr(health, "SSL_CONNECT_TIMEOUT", 0.5)
    started = time.monotonic()
    result = check_bookmark(_bookmark(check_ssl=True))

    assert time.monotonic() - started < 1.5
    assert result.health_status == "offline"
    assert result.ssl_expiry_days is None
    assert transport.calls == []
