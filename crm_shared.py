from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func
from sqlalchemy import func as sa_func

from shared.config import get_setting, get_workspace_id, int_setting
from shared.db import SessionLocal, User
from services.crm_rbac import ActorIdentity, normalize_identity

logger = logging.getLogger(__name__)

SECRET_SETTINGS = ("CRM_SESSION_SECRET", "AUTH_SESSION_SECRET")
DEFAULT_SESSION_TTL = 12 * 60 * 60


@dataclass
class CRMActor:
    workspace_id: str
    email: str
    user_id: Optional[str]
    name: Optional[str] = None
    avatar: Optional[str] = None

    @property
    def identity(self) -> ActorIdentity:
        return ActorIdentity(user_id=self.user_id, email=self.email)

    def to_profile(self) -> Dict[str, Any]:
        return {"id": self.user_id, "email": self.email, "name": self.name, "avatar": self.avatar}


@dataclass(frozen=True)
class SessionClaims:
    email: str
    workspace_id: str
    expires_at: int

    def expired(self) -> bool:
        return self.expires_at <= int(datetime.now(timezone.utc).timestamp())


def _encode_segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> Optional[bytes]:
    if not segment:
        return None
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except ValueError:
        return None


def _signing_key() -> Optional[bytes]:
    for name in SECRET_SETTINGS:
        value = str(get_setting(name) or "").strip()
        if value:
            return value.encode("utf-8")
    return None


def _signature(key: bytes, payload: bytes) -> bytes:
    return hmac.new(key, payload, hashlib.sha256).digest()


def issue_session_token(
    email: str,
    *,
    workspace_id: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Sign a CRM session for ``email``; returns (token, expires_at ISO) or (None, None)."""
    normalized = normalize_identity(email)
    key = _signing_key()
    if not normalized or key is None:
        return None, None
    if not ttl_seconds or ttl_seconds <= 0:
        ttl_seconds = int_setting("CRM_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL, minimum=60, maximum=7 * 24 * 60 * 60)
    expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    payload = json.dumps(
        {"email": normalized, "ws": workspace_id or get_workspace_id(), "exp": int(expires.timestamp())},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return f"{_encode_segment(payload)}.{_encode_segment(_signature(key, payload))}", expires.isoformat()


def decode_session_token(token: str) -> Optional[SessionClaims]:
    """Verify signature and expiry; None for anything that does not check out."""
    payload_part, _, signature_part = str(token or "").strip().partition(".")
    payload = _decode_segment(payload_part)
    signature = _decode_segment(signature_part)
    key = _signing_key()
    if not payload or not signature or key is None:
        return None
    if not hmac.compare_digest(_signature(key, payload), signature):
        return None
    try:
        data = json.loads(payload.decode("utf-8"))
        claims = SessionClaims(
            email=normalize_identity(data.get("email")),
            workspace_id=str(data.get("ws") or ""),
            expires_at=int(data.get("exp") or 0),
        )
    except (AttributeError, UnicodeDecodeError, TypeError, ValueError):
        return None
    if not claims.email or claims.expired():
        return None
    return claims


def _bearer_token(req: func.HttpRequest, body: Dict[str, Any]) -> str:
    header = str(req.headers.get("Authorization") or "").strip()
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    token = body.get("authToken") or req.params.get("auth_token")
    return token.strip() if isinstance(token, str) else ""


def _lookup_actor(claims: SessionClaims) -> CRMActor:
    db = SessionLocal()
    try:
        user = (
            db.query(User)
            .filter(sa_func.lower(sa_func.trim(User.email)) == claims.email)
            .order_by(User.id.asc())
            .first()
        )
        if user is None:
            # First request after sign-in; the row gives the actor a stable id.
            user = User(email=claims.email)
            db.add(user)
            db.commit()
            db.refresh(user)
            logger.info("Registered CRM user %s", claims.email)
        return CRMActor(
            workspace_id=claims.workspace_id,
            email=claims.email,
            user_id=str(user.id),
            name=user.display_name,
            avatar=user.avatar_url,
        )
    finally:
        db.close()


def resolve_actor_from_session(req: func.HttpRequest, body: Optional[dict] = None) -> Optional[CRMActor]:
    """Actor for a signed session bound to this workspace, else None."""
    body = body or {}
    claims = decode_session_token(_bearer_token(req, body))
    if claims is None:
        return None
    if claims.workspace_id != get_workspace_id():
        logger.warning("Rejected CRM session for %s from workspace %s", claims.email, claims.workspace_id)
        return None
    asserted = normalize_identity(req.headers.get("X-User-Email") or body.get("userEmail"))
    if asserted and asserted != claims.email:
        return None
    return _lookup_actor(claims)
