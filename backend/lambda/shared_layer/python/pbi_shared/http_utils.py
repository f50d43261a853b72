"""pbi_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope, error formatting and request-body reading used by
the PBI intake Lambda functions.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")
CORS_HEADERS = {
    "Access-Control-Allow-Origin": CORS_ORIGIN,
    "Access-Control-Allow-Headers": "Content-Type,Authorization,X-Functions-Key",
    "Access-Control-Allow-Methods": "POST,OPTIONS",
}

DEFAULT_MAX_BODY_BYTES = 1024 * 1024


class BodyTooLargeError(ValueError):
    """Raised when the request body exceeds the configured size cap."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Request body is {size} bytes; limit is {limit} bytes.")
        self.size = size
        self.limit = limit


def _cors_headers() -> Dict[str, str]:
    return dict(CORS_HEADERS)


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **CORS_HEADERS,
        },
        "body": json.dumps(body, default=str, ensure_ascii=False),
    }


def _empty(status_code: int) -> Dict[str, Any]:
    """Build a response that carries only a status code."""
    return {"statusCode": status_code, "headers": _cors_headers(), "body": ""}


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
    }
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _read_body(event: Dict[str, Any], max_bytes: int = DEFAULT_MAX_BODY_BYTES) -> str:
    """Return the raw request body as text (handles base64).

    Raises BodyTooLargeError when the decoded body exceeds ``max_bytes`` and
    ValueError when the body cannot be decoded.
    """
    raw = event.get("body")
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        data = bytes(raw)
    else:
        data = str(raw).encode("utf-8")

    if event.get("isBase64Encoded"):
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 body: {exc}") from exc

    if max_bytes and len(data) > max_bytes:
        raise BodyTooLargeError(len(data), max_bytes)

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"Body is not valid UTF-8: {exc}") from exc


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from API Gateway v1/v2 events."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _header(event: Dict[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value
    return None
