"""create_pbi/lambda_function.py — Azure DevOps PBI intake API

Lambda API that validates a work item request and creates the corresponding
Product Backlog Item through the Azure DevOps work item REST API, using basic
authentication with a personal access token (PAT).

Routes (via API Gateway proxy):
    POST    /api/v1/pbi   — create a Product Backlog Item
    OPTIONS /api/v1/pbi   — CORS preflight

Request body:
    {"Title": str, "State": str, "Description": str,
     "Priority": "alta" | "media" | "baja", "Effort": int}

Auth:
    Optional function key (x-functions-key header or ?code=), enforced only
    when CREATE_PBI_FUNCTION_KEY(S) is configured.

Environment variables:
    AZURE_DEVOPS_PAT              PAT used for basic auth (required unless the secret below is set)
    AZURE_DEVOPS_PAT_SECRET_ID    Secrets Manager secret holding the PAT (fallback)
    AZURE_DEVOPS_BASE_URL         default: https://dev.azure.com
    AZURE_DEVOPS_ORGANIZATION     default: dbaron49
    AZURE_DEVOPS_PROJECT          default: Pruebas
    AZURE_DEVOPS_WORK_ITEM_TYPE   default: Product Backlog Item
    AZURE_DEVOPS_API_VERSION      default: 6.0
    AZURE_DEVOPS_TIMEOUT_SECONDS  default: 30
    CREATE_PBI_MAX_BODY_BYTES     default: 1048576
    CREATE_PBI_FUNCTION_KEY(S)    accepted function keys
    SECRETS_REGION                default: us-west-2
"""

from __future__ import annotations

import base64
import http.client
import json
import logging
import os
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import certifi
from botocore.exceptions import BotoCoreError, ClientError

from pbi_shared.auth import _authenticate, _normalize_api_keys
from pbi_shared.aws_clients import _get_secretsmanager
from pbi_shared.http_utils import (
    BodyTooLargeError,
    DEFAULT_MAX_BODY_BYTES,
    _cors_headers,
    _empty,
    _error,
    _path_method,
    _read_body,
    _response,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

AZURE_DEVOPS_BASE_URL = "https://dev.azure.com"
AZURE_DEVOPS_ORGANIZATION = "dbaron49"
AZURE_DEVOPS_PROJECT = "Pruebas"
AZURE_DEVOPS_WORK_ITEM_TYPE = "Product Backlog Item"
AZURE_DEVOPS_API_VERSION = "6.0"
AZURE_DEVOPS_TIMEOUT_SECONDS = 30.0

JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"

# Effort is an Int32 field in Azure DevOps
_INT32_MIN = -(2 ** 31)
_INT32_MAX = 2 ** 31 - 1

PRIORITY_MAP = {
    "alta": 2,
    "media": 1,
    "baja": 0,
}

MSG_INVALID_JSON = "Error en el formato JSON. Detalle: "
MSG_REQUIRED_FIELDS = "Los campos 'Title' y 'Description' son obligatorios."
MSG_INVALID_PRIORITY = "Prioridad no válida. Debe ser 'alta', 'media' o 'baja'."
MSG_CREATED = "PBI creado exitosamente."

_CERT_BUNDLE = certifi.where()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class PbiPayloadError(ValueError):
    """Request body could not be bound to a PbiRequest."""


class DevOpsTransportError(Exception):
    """Azure DevOps could not be reached (timeout, DNS, TLS, reset)."""


@dataclass(frozen=True)
class PbiRequest:
    title: Optional[str]
    state: Optional[str]
    description: Optional[str]
    priority: Optional[str]
    effort: int = 0


@dataclass(frozen=True)
class CreatePbiSettings:
    """Configuration injected into handle_create_pbi."""
    pat: str
    organization: str = AZURE_DEVOPS_ORGANIZATION
    project: str = AZURE_DEVOPS_PROJECT
    work_item_type: str = AZURE_DEVOPS_WORK_ITEM_TYPE
    api_version: str = AZURE_DEVOPS_API_VERSION
    base_url: str = AZURE_DEVOPS_BASE_URL
    timeout_seconds: float = AZURE_DEVOPS_TIMEOUT_SECONDS
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    function_keys: Tuple[str, ...] = ()

    @property
    def work_items_url(self) -> str:
        org = urllib.parse.quote(self.organization, safe="")
        project = urllib.parse.quote(self.project, safe="")
        wit = urllib.parse.quote(self.work_item_type, safe="")
        query = urllib.parse.urlencode({"api-version": self.api_version})
        return f"{self.base_url.rstrip('/')}/{org}/{project}/_apis/wit/workitems/${wit}?{query}"


# ---------------------------------------------------------------------------
# PAT resolution (env var, then Secrets Manager with cache)
# ---------------------------------------------------------------------------

_pat_cache: Optional[str] = None
_pat_secret_id_cached: str = ""
_pat_fetched_at: float = 0.0
_PAT_TTL: float = 3600.0  # re-fetch from Secrets Manager every hour


def _get_pat_from_secret(secret_id: str) -> str:
    """Fetch the PAT from Secrets Manager (cached)."""
    global _pat_cache, _pat_secret_id_cached, _pat_fetched_at
    now = time.time()
    if (
        _pat_cache
        and _pat_secret_id_cached == secret_id
        and (now - _pat_fetched_at) < _PAT_TTL
    ):
        return _pat_cache

    resp = _get_secretsmanager().get_secret_value(SecretId=secret_id)
    secret = str(resp.get("SecretString") or "").strip()
    # Secrets created from the console wizard store key/value JSON.
    if secret.startswith("{"):
        try:
            secret = str(json.loads(secret).get("AZURE_DEVOPS_PAT") or "").strip()
        except (json.JSONDecodeError, AttributeError):
            pass

    _pat_cache = secret
    _pat_secret_id_cached = secret_id
    _pat_fetched_at = now
    return secret


def _resolve_pat(environ: Dict[str, str]) -> str:
    pat = (environ.get("AZURE_DEVOPS_PAT") or "").strip()
    if pat:
        return pat

    secret_id = (environ.get("AZURE_DEVOPS_PAT_SECRET_ID") or "").strip()
    if not secret_id:
        return ""
    try:
        return _get_pat_from_secret(secret_id)
    except (ClientError, BotoCoreError) as exc:
        logger.error("Failed to fetch Azure DevOps PAT from secret %s: %s", secret_id, exc)
        return ""


def load_settings(environ: Optional[Dict[str, str]] = None) -> CreatePbiSettings:
    """Resolve settings from the process environment (once per invocation)."""
    env = os.environ if environ is None else environ
    return CreatePbiSettings(
        pat=_resolve_pat(env),
        organization=env.get("AZURE_DEVOPS_ORGANIZATION") or AZURE_DEVOPS_ORGANIZATION,
        project=env.get("AZURE_DEVOPS_PROJECT") or AZURE_DEVOPS_PROJECT,
        work_item_type=env.get("AZURE_DEVOPS_WORK_ITEM_TYPE") or AZURE_DEVOPS_WORK_ITEM_TYPE,
        api_version=env.get("AZURE_DEVOPS_API_VERSION") or AZURE_DEVOPS_API_VERSION,
        base_url=env.get("AZURE_DEVOPS_BASE_URL") or AZURE_DEVOPS_BASE_URL,
        timeout_seconds=float(
            env.get("AZURE_DEVOPS_TIMEOUT_SECONDS") or AZURE_DEVOPS_TIMEOUT_SECONDS
        ),
        max_body_bytes=int(env.get("CREATE_PBI_MAX_BODY_BYTES") or DEFAULT_MAX_BODY_BYTES),
        function_keys=_normalize_api_keys(
            env.get("CREATE_PBI_FUNCTION_KEYS", ""),
            env.get("CREATE_PBI_FUNCTION_KEY", ""),
            env.get("CREATE_PBI_FUNCTION_KEY_PREVIOUS", ""),
        ),
    )


# ---------------------------------------------------------------------------
# Request binding and validation
# ---------------------------------------------------------------------------


def _text_field(data: Dict[str, Any], name: str) -> Optional[str]:
    value = data.get(name.lower())
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise PbiPayloadError(
            f"Unexpected {type(value).__name__} for property '{name}'; expected a string."
        )
    if isinstance(value, str):
        return value
    return str(value)


def _effort_field(data: Dict[str, Any]) -> int:
    value = data.get("effort")
    if value is None:
        return 0
    if isinstance(value, bool):
        raise PbiPayloadError("Could not convert boolean to integer for property 'Effort'.")
    effort: Optional[int] = None
    if isinstance(value, int):
        effort = value
    elif isinstance(value, float) and value.is_integer():
        effort = int(value)
    elif isinstance(value, str):
        try:
            effort = int(value.strip())
        except ValueError:
            pass
    if effort is None:
        raise PbiPayloadError(f"Could not convert {value!r} to integer for property 'Effort'.")
    if not _INT32_MIN <= effort <= _INT32_MAX:
        raise PbiPayloadError(f"Value {effort} is too large or too small for property 'Effort' (Int32).")
    return effort


def _parse_pbi_request(raw: str) -> Optional[PbiRequest]:
    """Bind a JSON body to a PbiRequest.

    Property names match case-insensitively and unknown properties are
    ignored. Returns None for an empty body or a JSON ``null``.
    """
    if not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PbiPayloadError(str(exc)) from exc

    if parsed is None:
        return None
    if not isinstance(parsed, dict):
        raise PbiPayloadError(
            f"Cannot bind JSON {type(parsed).__name__} to a work item request; expected an object."
        )

    data = {str(k).lower(): v for k, v in parsed.items()}
    return PbiRequest(
        title=_text_field(data, "Title"),
        state=_text_field(data, "State"),
        description=_text_field(data, "Description"),
        priority=_text_field(data, "Priority"),
        effort=_effort_field(data),
    )


def _has_required_fields(req: Optional[PbiRequest]) -> bool:
    return (
        req is not None
        and bool((req.title or "").strip())
        and bool((req.description or "").strip())
    )


def _map_priority(priority: Optional[str]) -> Optional[int]:
    """Map alta/media/baja (any case) to 2/1/0; None for anything else."""
    if priority is None:
        return None
    return PRIORITY_MAP.get(priority.lower())


def _build_patch_document(req: PbiRequest, priority_value: int) -> List[Dict[str, Any]]:
    return [
        {"op": "add", "path": "/fields/System.Title", "value": req.title},
        {"op": "add", "path": "/fields/System.State", "value": req.state},
        {"op": "add", "path": "/fields/System.Description", "value": req.description},
        {"op": "add", "path": "/fields/Microsoft.VSTS.Common.Priority", "value": priority_value},
        {"op": "add", "path": "/fields/Custom.Effort", "value": req.effort},
    ]


# ---------------------------------------------------------------------------
# Azure DevOps client
# ---------------------------------------------------------------------------


def _basic_auth_header(pat: str) -> str:
    token = base64.b64encode(f":{pat}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _devops_create_work_item(
    settings: CreatePbiSettings,
    document: List[Dict[str, Any]],
) -> Tuple[int, str]:
    """POST the patch document. Returns (status_code, response_text).

    HTTP error statuses are returned, not raised; network failures raise
    DevOpsTransportError.
    """
    req = urllib.request.Request(
        settings.work_items_url,
        method="POST",
        data=json.dumps(document).encode("utf-8"),
        headers={
            "Authorization": _basic_auth_header(settings.pat),
            "Accept": JSON_PATCH_CONTENT_TYPE,
            "Content-Type": JSON_PATCH_CONTENT_TYPE,
        },
    )
    context = ssl.create_default_context(cafile=_CERT_BUNDLE)
    try:
        with urllib.request.urlopen(req, timeout=settings.timeout_seconds, context=context) as resp:
            status = int(getattr(resp, "status", 0) or resp.getcode())
            return status, resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        body_text = ""
        if exc.fp:
            try:
                body_text = exc.read().decode("utf-8", errors="replace")
            except (http.client.HTTPException, OSError) as read_exc:
                logger.error("Could not read Azure DevOps error body (%s): %s", exc.code, read_exc)
        return exc.code, body_text
    except urllib.error.URLError as exc:
        raise DevOpsTransportError(f"Azure DevOps unreachable: {exc.reason}") from exc
    except (http.client.HTTPException, OSError) as exc:
        raise DevOpsTransportError(f"Azure DevOps request failed: {exc}") from exc


def _created_summary(response_text: str) -> Dict[str, Any]:
    """Pick id/url out of the created work item, if the body carries them."""
    try:
        created = json.loads(response_text) if response_text else {}
    except json.JSONDecodeError:
        return {}
    if not isinstance(created, dict):
        return {}
    summary: Dict[str, Any] = {}
    if created.get("id") is not None:
        summary["work_item_id"] = created["id"]
    links = created.get("_links") or {}
    html = (links.get("html") or {}).get("href") if isinstance(links, dict) else None
    url = html or created.get("url")
    if url:
        summary["work_item_url"] = url
    return summary


# ---------------------------------------------------------------------------
# POST /api/v1/pbi — Create PBI
# ---------------------------------------------------------------------------


def handle_create_pbi(event: Dict[str, Any], settings: CreatePbiSettings) -> Dict[str, Any]:
    """Validate the request and create the PBI in Azure DevOps."""
    if not settings.pat:
        logger.error("AZURE_DEVOPS_PAT is not configured; refusing request")
        return _empty(500)

    try:
        raw = _read_body(event, settings.max_body_bytes)
    except BodyTooLargeError as exc:
        logger.info("Rejected oversized body: %d bytes", exc.size)
        return _error(413, str(exc))
    except ValueError as exc:
        logger.error("Error leyendo el cuerpo de la solicitud: %s", exc)
        return _error(400, MSG_INVALID_JSON + str(exc))

    logger.info("Cuerpo de la solicitud (%d chars): %s", len(raw), raw[:500])

    try:
        pbi = _parse_pbi_request(raw)
    except PbiPayloadError as exc:
        logger.error("Error deserializando JSON: %s", exc)
        return _error(400, MSG_INVALID_JSON + str(exc))

    if not _has_required_fields(pbi):
        return _error(400, MSG_REQUIRED_FIELDS)

    priority_value = _map_priority(pbi.priority)
    if priority_value is None:
        return _error(400, MSG_INVALID_PRIORITY)

    document = _build_patch_document(pbi, priority_value)

    try:
        status, response_text = _devops_create_work_item(settings, document)
    except DevOpsTransportError as exc:
        logger.error("Error al crear PBI en Azure DevOps: %s", exc)
        return _empty(502)

    if 200 <= status < 300:
        summary = _created_summary(response_text)
        logger.info(
            "PBI created in %s/%s: id=%s",
            settings.organization, settings.project, summary.get("work_item_id", "unknown"),
        )
        return _response(200, {"success": True, "message": MSG_CREATED, **summary})

    logger.error(
        "Error al crear PBI en Azure DevOps: %s - %s", status, response_text[:2000],
    )
    return _empty(status)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, path = _path_method(event)
    logger.info("create_pbi invoked: %s %s", method, path)

    # CORS preflight
    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    if method != "POST":
        return _error(405, f"Method not allowed: {method} {path}")

    settings = load_settings()

    auth_err = _authenticate(event, settings.function_keys)
    if auth_err:
        return auth_err

    return handle_create_pbi(event, settings)
