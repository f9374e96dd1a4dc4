import json
import logging
import time
from typing import Optional

import requests
from requests.structures import CaseInsensitiveDict
from urllib3.exceptions import ReadTimeoutError

from .config import API_CALL_TIMEOUT
from .deadline import DeadlineExceeded, run_with_deadline
from .models import ApiCall, ApiResponse, ResponseValidationConfig, ValidationResult, utc_now_iso
from .url_utils import MISSING, resolve_json_path, stringify

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def validate_response(config: ResponseValidationConfig, status: int, body: str) -> ValidationResult:
    if status != config.expected_status:
        return ValidationResult(
            passed=False, reason=f"Expected status {config.expected_status}, got {status}"
        )
    if not config.json_key:
        return ValidationResult(passed=True)

    try:
        data = json.loads(body)
    except ValueError:
        return ValidationResult(passed=False, reason="Failed to parse response as JSON")

    key = config.json_key
    value = resolve_json_path(data, key)
    if value is MISSING:
        return ValidationResult(passed=False, reason=f"Key '{key}' not found in response")
    if config.json_value is None:
        return ValidationResult(passed=True)

    actual = stringify(value)
    if actual == config.json_value:
        return ValidationResult(passed=True)
    return ValidationResult(
        passed=False,
        reason=f"Expected '{key}' to be '{config.json_value}', got '{actual}'",
    )


def _read_body(response: requests.Response, deadline: float) -> str:
    """Read a streamed body, giving up once ``deadline`` (monotonic) passes."""
    chunks = []
    try:
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise requests.Timeout("Response body not received before the deadline")
    except requests.ConnectionError as e:
        # a stalled body read surfaces as ConnectionError(ReadTimeoutError)
        if e.args and isinstance(e.args[0], ReadTimeoutError):
            raise requests.Timeout(str(e)) from e
        raise
    return b"".join(chunks).decode("utf-8", errors="replace")


def _failure(
    api_call: ApiCall, status_text: str, body: str, reason: str, started: float
) -> ApiResponse:
    validation: Optional[ValidationResult] = None
    if api_call.response_validation_enabled:
        validation = ValidationResult(passed=False, reason=reason)
    return ApiResponse(
        status=0,
        status_text=status_text,
        headers={},
        body=body,
        duration=_elapsed_ms(started),
        timestamp=utc_now_iso(),
        validation_result=validation,
    )


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


def _send(api_call: ApiCall, headers: CaseInsensitiveDict, data: Optional[bytes], timeout: float, deadline: float):
    with requests.request(
        api_call.method,
        api_call.url,
        headers=headers,
        data=data,
        timeout=timeout,
        stream=True,
    ) as response:
        body = _read_body(response, deadline)
        return response.status_code, response.reason or "", dict(response.headers), body


def execute_api_call(api_call: ApiCall, timeout: float = API_CALL_TIMEOUT) -> ApiResponse:
    """
    Send the saved request and describe what came back. Timeouts and
    connection failures are returned as ``status=0`` responses, never raised.

    ``timeout`` caps the whole exchange, connect through last body byte.
    """
    headers = CaseInsensitiveDict({"Content-Type": "application/json"})
    headers.update(api_call.headers or {})
    data = None
    if api_call.body and api_call.method != "GET":
        data = api_call.body.encode("utf-8")

    started = time.monotonic()
    try:
        status, status_text, response_headers, body = run_with_deadline(
            lambda: _send(api_call, headers, data, timeout, started + timeout), timeout
        )
    except (requests.Timeout, DeadlineExceeded):
        logger.info("%s %s timed out after %ss", api_call.method, api_call.url, timeout)
        return _failure(
            api_call,
            "Request Timeout",
            f"Request timed out after {timeout:g} seconds",
            "Request timeout",
            started,
        )
    except requests.RequestException as e:
        logger.info("%s %s failed: %s", api_call.method, api_call.url, e)
        return _failure(
            api_call,
            "Network Error",
            str(e) or "Failed to connect to the server",
            "Network error",
            started,
        )

    result = ApiResponse(
        status=status,
        status_text=status_text,
        headers=response_headers,
        body=body,
        duration=_elapsed_ms(started),
        timestamp=utc_now_iso(),
    )
    if api_call.response_validation_enabled and api_call.response_validation_config:
        result.validation_result = validate_response(
            api_call.response_validation_config, result.status, result.body
        )
    logger.debug(
        "%s %s -> %s in %dms", api_call.method, api_call.url, result.status, result.duration
    )
    return result
