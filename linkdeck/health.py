import json
import logging
import math
import socket
import ssl
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import HEALTH_CHECK_TIMEOUT, PING_TIMEOUT, SSL_CONNECT_TIMEOUT
from .deadline import DeadlineExceeded, run_with_deadline
from .models import Bookmark, HealthCheckConfig, HealthResult, HealthStatus, utc_now_iso
from .url_utils import MISSING, lookup_key, stringify, tls_endpoint

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
CERT_HAS_EXPIRED = 10


def ssl_days_until_expiry(host: str, port: int = 443, timeout: float = SSL_CONNECT_TIMEOUT) -> int:
    """
    Open a TLS connection and return whole days (rounded up) until the peer
    certificate's notAfter. Raises on connection or handshake failure.
    """
    context = ssl.create_default_context()
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as tls:
            cert = tls.getpeercert()
    not_after = ssl.cert_time_to_seconds(cert["notAfter"])
    return math.ceil((not_after - time.time()) / SECONDS_PER_DAY)


def inspect_certificate(url: str) -> Tuple[bool, Optional[int]]:
    """
    Returns (usable, days_until_expiry). ``days`` is None when nothing could
    be learned about the certificate.
    """
    host, port = tls_endpoint(url)
    try:
        days = run_with_deadline(lambda: ssl_days_until_expiry(host, port), SSL_CONNECT_TIMEOUT)
    except ssl.SSLCertVerificationError as e:
        if e.verify_code == CERT_HAS_EXPIRED:
            logger.info("Certificate for %s has expired", host)
            return False, 0
        logger.info("Certificate for %s failed verification: %s", host, e)
        return False, None
    except (OSError, ValueError, KeyError) as e:
        logger.info("TLS check against %s:%s failed: %s", host, port, e)
        return False, None
    return days > 0, days


def classify_response(config: HealthCheckConfig, status_code: int, body: Optional[str]) -> HealthStatus:
    """
    Decide online/offline from a probe response. Only a flat key lookup is
    done here; nested paths belong to api call validation.
    """
    if status_code != config.expected_status:
        return "offline"
    if not config.json_key:
        return "online"
    try:
        data = json.loads(body or "")
    except ValueError:
        return "offline"
    value = lookup_key(data, config.json_key)
    if value is MISSING:
        return "offline"
    if config.json_value is not None and stringify(value) != config.json_value:
        return "offline"
    return "online"


def check_bookmark(bookmark: Bookmark) -> HealthResult:
    """
    Probe a bookmark. Every failure mode ends up as ``offline`` in the
    result; nothing is raised for network trouble.
    """
    config = bookmark.health_check_config or HealthCheckConfig()
    target = config.url or bookmark.url
    ssl_days: Optional[int] = None

    if config.check_ssl and tls_endpoint(target):
        usable, ssl_days = inspect_certificate(target)
        if not usable:
            return _result("offline", ssl_days)

    method = "GET" if config.json_key else "HEAD"
    timeout = HEALTH_CHECK_TIMEOUT
    try:
        status_code, body = run_with_deadline(
            lambda: _fetch(method, target, timeout, read_body=bool(config.json_key)), timeout
        )
    except DeadlineExceeded:
        logger.info("Health probe %s %s gave no answer within %ss", method, target, timeout)
        return _result("offline", ssl_days)
    except requests.RequestException as e:
        logger.info("Health probe %s %s failed: %s", method, target, e)
        return _result("offline", ssl_days)

    status = classify_response(config, status_code, body)
    logger.debug("Health probe %s %s -> %s (%s)", method, target, status_code, status)
    return _result(status, ssl_days)


def _fetch(method: str, url: str, timeout: float, read_body: bool) -> Tuple[int, Optional[str]]:
    response = requests.request(method, url, timeout=timeout, allow_redirects=True)
    return response.status_code, response.text if read_body else None


def _result(status: HealthStatus, ssl_days: Optional[int]) -> HealthResult:
    return HealthResult(
        health_status=status,
        last_health_check=utc_now_iso(),
        ssl_expiry_days=ssl_days,
    )


def ping(url: str) -> Dict[str, Any]:
    """One-off reachability probe, independent of any stored bookmark."""
    try:
        response = run_with_deadline(
            lambda: requests.head(url, timeout=PING_TIMEOUT, allow_redirects=True), PING_TIMEOUT
        )
    except (requests.RequestException, DeadlineExceeded):
        return {"status": "offline", "statusCode": 0}
    online = 200 <= response.status_code < 300
    return {"status": "online" if online else "offline", "statusCode": response.status_code}


def probe_all(bookmarks: List[Bookmark], workers: int) -> List[Tuple[str, HealthResult]]:
    """Probe ``bookmarks`` with at most ``workers`` checks in flight."""
    if not bookmarks:
        return []
    started = time.monotonic()
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(check_bookmark, bookmarks))
    logger.info(
        "Probed %d bookmarks in %.1fs with %d workers",
        len(bookmarks),
        time.monotonic() - started,
        workers,
    )
    return [(bookmark.id, result) for bookmark, result in zip(bookmarks, results)]


def record_results(storage, results: List[Tuple[str, HealthResult]]) -> List[Bookmark]:
    updated = []
    for bookmark_id, result in results:
        saved = storage.update_bookmark_health(
            bookmark_id,
            result.health_status,
            result.ssl_expiry_days,
            result.last_health_check,
        )
        # deleted while the probe was in flight
        if saved is not None:
            updated.append(saved)
    return updated


def sweep_targets(storage) -> List[Bookmark]:
    return [b for b in storage.get_bookmarks() if b.health_check_enabled]


def sweep(storage, workers: int) -> List[Bookmark]:
    """Check every health-enabled bookmark and store the results."""
    return record_results(storage, probe_all(sweep_targets(storage), workers))
