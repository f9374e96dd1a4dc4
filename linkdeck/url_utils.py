from typing import Any
from urllib.parse import urlparse

MISSING = object()

DEFAULT_PORTS = {"http": 80, "https": 443}


def is_absolute_url(url: str) -> bool:
    """
    True for URLs with a scheme and a host, e.g. ``https://example.com/x``.
    Relative paths, bare hostnames and ``mailto:``-style URIs are rejected.
    """
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    if not parsed.scheme or not parsed.netloc:
        return False
    try:
        # raises on a malformed port such as "host:abc"
        parsed.port
    except ValueError:
        return False
    return bool(parsed.hostname)


def tls_endpoint(url: str) -> tuple[str, int] | None:
    """
    Return (host, port) for an https URL, None for any other scheme.
    """
    parsed = urlparse(url.strip())
    if parsed.scheme.lower() != "https" or not parsed.hostname:
        return None
    return parsed.hostname, parsed.port or DEFAULT_PORTS["https"]


def lookup_key(data: Any, key: str) -> Any:
    """Flat, single-level key lookup. Returns MISSING when absent."""
    if isinstance(data, dict) and key in data:
        return data[key]
    return MISSING


def resolve_json_path(data: Any, path: str) -> Any:
    """
    Walk a dot-separated path through nested objects:
    ``resolve_json_path({"data": {"ok": 1}}, "data.ok") == 1``.
    Numeric segments index into lists. Returns MISSING when any segment
    cannot be followed.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def stringify(value: Any) -> str:
    """
    Render a decoded JSON value the way a browser's ``String(value)`` does,
    so that ``true`` compares equal to ``"true"`` and ``1.0`` to ``"1"``.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join("" if v is None else stringify(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)
