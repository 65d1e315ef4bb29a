from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import azure.functions as func

from crm_shared import CRMActor, resolve_actor_from_session
from services.crm_session import CRMSession, get_session
from services.crm_store import GatewayError, RecordNotFoundError
from services.task_guard import CRMPermissionError, TaskPermissionError
from shared.config import get_admin_secret
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on"}

Handler = Callable[[func.HttpRequest, Dict[str, Any], CRMSession, Dict[str, str]], func.HttpResponse]


def json_response(data: Dict[str, Any], *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def parse_json_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def query_flag(req: func.HttpRequest, name: str) -> bool:
    return str(req.params.get(name) or "").strip().lower() in _TRUTHY


def verify_admin_secret(req: func.HttpRequest) -> bool:
    """Maintenance routes stay closed unless CRM_ADMIN_SECRET is configured and echoed back."""
    secret = get_admin_secret()
    provided = req.headers.get("X-CRM-Admin-Secret")
    return bool(secret and provided and hmac.compare_digest(provided, secret))


def _resolve_actor_or_error(
    req: func.HttpRequest,
    body: Dict[str, Any],
    cors: Dict[str, str],
) -> Tuple[Optional[CRMActor], Optional[func.HttpResponse]]:
    actor = resolve_actor_from_session(req, body)
    if not actor:
        return None, error_response(
            cors=cors,
            status_code=401,
            message="CRM authentication required",
            code="auth_required",
        )
    return actor, None


def run_handler(
    handler: Handler,
    req: func.HttpRequest,
    body: Dict[str, Any],
    session: CRMSession,
    cors: Dict[str, str],
) -> func.HttpResponse:
    """Invoke a handler and map domain errors onto HTTP responses."""
    try:
        return handler(req, body, session, cors)
    except TaskPermissionError as exc:
        return error_response(cors=cors, status_code=403, message=str(exc), code=exc.code, details=exc.to_details())
    except CRMPermissionError as exc:
        return error_response(cors=cors, status_code=403, message=str(exc) or "forbidden", code=exc.code)
    except RecordNotFoundError as exc:
        return error_response(cors=cors, status_code=404, message=str(exc), code="not_found")
    except GatewayError as exc:
        logger.error("CRM storage request failed: %s", exc)
        return error_response(cors=cors, status_code=502, message="CRM storage is unavailable", code="storage_error")
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")


def dispatch(req: func.HttpRequest, methods: List[str], handler: Handler) -> func.HttpResponse:
    """CORS preflight, session auth and error mapping around one handler."""
    cors = build_cors_headers(req, methods)
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_json_body(req)
    actor, auth_error = _resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    session = get_session(actor.identity, profile=actor.to_profile())
    return run_handler(handler, req, body, session, cors)
