"""pbi_shared.auth — Function-key authentication for PBI intake Lambdas.

Callers present a shared function key either in the ``x-functions-key``
header or in the ``code`` query-string parameter. The gate is only enforced
when at least one key is configured.

Optional environment variables (resolved by the calling Lambda):
    CREATE_PBI_FUNCTION_KEY           — active key
    CREATE_PBI_FUNCTION_KEY_PREVIOUS  — rollover key accepted during rotation
    CREATE_PBI_FUNCTION_KEYS          — comma-separated allowlist
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from pbi_shared.http_utils import _error, _header

logger = logging.getLogger(__name__)

FUNCTION_KEY_HEADER = "x-functions-key"
FUNCTION_KEY_QUERY_PARAM = "code"


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


def _extract_function_key(event: Dict[str, Any]) -> Optional[str]:
    """Read the function key from the header, falling back to ``?code=``."""
    key = _header(event, FUNCTION_KEY_HEADER)
    if key:
        return key.strip()
    qs = event.get("queryStringParameters") or {}
    code = qs.get(FUNCTION_KEY_QUERY_PARAM)
    if code:
        return str(code).strip()
    return None


def _authenticate(
    event: Dict[str, Any],
    allowed_keys: Iterable[str],
    *,
    error_fn: Optional[Callable[[int, str], Dict[str, Any]]] = None,
) -> Optional[Dict[str, Any]]:
    """Return None when the request is allowed, else an error response."""
    keys = tuple(allowed_keys)
    if not keys:
        return None
    if error_fn is None:
        error_fn = _error

    presented = _extract_function_key(event)
    if not presented:
        return error_fn(401, "Function key required.")
    for key in keys:
        if hmac.compare_digest(presented.encode("utf-8"), key.encode("utf-8")):
            return None
    logger.warning("Rejected request with invalid function key")
    return error_fn(401, "Invalid function key.")
