from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple
from urllib.parse import urlparse

import azure.functions as func

from shared.config import flag_enabled, get_setting

ALLOWED_HEADERS = ("Content-Type", "Authorization", "X-User-Email")
# Paged list routes return their continuation cursor in a header.
EXPOSED_HEADERS = "X-Next-Cursor"
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})
DEFAULT_PORTS = {"http": 80, "https": 443}


class _Origin(NamedTuple):
    scheme: Optional[str]
    host: str
    port: Optional[int]

    @property
    def effective_port(self) -> Optional[int]:
        return self.port if self.port is not None else DEFAULT_PORTS.get(self.scheme or "")


def _parse_origin(value: Optional[str]) -> Optional[_Origin]:
    """Parse an origin or allow-list entry; entries may leave out the scheme."""
    text = str(value or "").strip().rstrip("/")
    if not text:
        return None
    scheme: Optional[str] = None
    if "://" in text:
        scheme = text.split("://", 1)[0].lower()
    else:
        text = f"//{text}"
    parsed = urlparse(text)
    try:
        port = parsed.port
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    if not host:
        return None
    return _Origin(scheme, host, port)


def _is_local_origin(origin: Optional[str]) -> bool:
    parsed = _parse_origin(origin)
    return parsed is not None and parsed.host in LOCAL_HOSTS


def _origin_matches(origin: Optional[str], allowed: str) -> bool:
    if allowed == "*":
        return bool(origin)
    request, entry = _parse_origin(origin), _parse_origin(allowed)
    if request is None or entry is None:
        return False
    if entry.scheme and request.scheme and entry.scheme != request.scheme:
        return False
    if entry.port is not None and entry.effective_port != request.effective_port:
        return False
    if entry.host.startswith("*."):
        suffix = entry.host[2:]
        return request.host == suffix or request.host.endswith("." + suffix)
    return request.host == entry.host


@dataclass(frozen=True)
class CorsPolicy:
    origins: Tuple[str, ...]
    allow_credentials: bool
    allow_localhost: bool

    @property
    def allow_all(self) -> bool:
        # A dev-only allow-list (nothing but localhost entries) is treated as open.
        explicit = [origin for origin in self.origins if origin != "*"]
        if "*" in self.origins or not explicit:
            return True
        return all(_is_local_origin(origin) for origin in explicit)

    def allows(self, origin: Optional[str]) -> bool:
        if self.allow_all or any(_origin_matches(origin, entry) for entry in self.origins):
            return True
        return self.allow_localhost and _is_local_origin(origin)


def load_cors_policy() -> CorsPolicy:
    raw = get_setting("CRM_ALLOWED_ORIGINS") or get_setting("ALLOWED_ORIGINS") or "*"
    origins = tuple(entry.strip().rstrip("/") for entry in raw.split(",") if entry.strip())
    return CorsPolicy(
        origins=origins,
        allow_credentials=flag_enabled("CORS_ALLOW_CREDENTIALS"),
        allow_localhost=flag_enabled("CORS_ALLOW_LOCALHOST", default=True),
    )


def _allow_headers(req: func.HttpRequest) -> str:
    names: Dict[str, str] = {name.lower(): name for name in ALLOWED_HEADERS}
    for requested in (req.headers.get("Access-Control-Request-Headers") or "").split(","):
        requested = requested.strip()
        if requested:
            names.setdefault(requested.lower(), requested)
    return ", ".join(names.values())


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """CORS headers for the request origin; only ``Vary`` when the origin is refused."""
    policy = load_cors_policy()
    origin = req.headers.get("Origin")
    headers: Dict[str, str] = {"Vary": "Origin"}
    if not policy.allows(origin):
        return headers

    methods: List[str] = []
    for method in [*allowed_methods, "OPTIONS"]:
        method = method.strip().upper()
        if method and method not in methods:
            methods.append(method)

    if origin and (policy.allow_credentials or not policy.allow_all):
        headers["Access-Control-Allow-Origin"] = origin
    else:
        headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = ", ".join(methods)
    headers["Access-Control-Allow-Headers"] = _allow_headers(req)
    headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
    if policy.allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
