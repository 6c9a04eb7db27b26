from __future__ import annotations

import os
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import azure.functions as func


def _parse_origins(raw: str) -> List[str]:
    """Split comma-separated origins, honoring a wildcard if present."""
    origins: List[str] = []
    for origin in raw.split(","):
        cleaned = origin.strip()
        if not cleaned:
            continue
        if cleaned == "*":
            return ["*"]
        origins.append(cleaned)
    return origins


def _env_flag(names: Iterable[str], default: bool = False) -> bool:
    """Return the first matching boolean-like env var value."""
    truthy = {"1", "true", "yes", "y"}
    falsy = {"0", "false", "no", "n"}
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        lowered = raw.lower()
        if lowered in truthy:
            return True
        if lowered in falsy:
            return False
    return default


ALLOWED_ORIGINS = _parse_origins(os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ALLOWED_ORIGINS") or "*")
# The booking widget is embedded on marketing sites, so it has its own list.
PUBLIC_ALLOWED_ORIGINS = _parse_origins(os.getenv("PUBLIC_ALLOWED_ORIGINS") or "*")
ALLOW_CREDENTIALS = _env_flag(["CORS_ALLOW_CREDENTIALS", "CORSCredentials"])
ALLOW_LOCALHOST = _env_flag(["CORS_ALLOW_LOCALHOST", "ALLOW_LOCALHOST_CORS"], default=True)
PREFLIGHT_MAX_AGE = "86400"
DEFAULT_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "x-user-email",
]


def _split_origin(value: str) -> Tuple[str, str, Optional[int]]:
    raw = str(value or "").strip().rstrip("/").lower()
    if "://" not in raw:
        return "", raw.split(":")[0], None
    parts = urlsplit(raw)
    try:
        port = parts.port
    except ValueError:
        port = None
    return parts.scheme, parts.hostname or "", port


def _origin_matches(origin: str, allowed: str) -> bool:
    """
    Compare a request origin with one configured entry. Entries may omit the
    scheme (any scheme matches) and may use a ``*.`` subdomain wildcard.
    """
    scheme, host, port = _split_origin(origin)
    allowed_scheme, allowed_host, allowed_port = _split_origin(allowed)
    if not host or not allowed_host:
        return False
    if allowed_scheme and scheme != allowed_scheme:
        return False
    if allowed_port is not None and port != allowed_port:
        return False
    if allowed_host.startswith("*."):
        suffix = allowed_host[1:]
        return host.endswith(suffix) and host != suffix.lstrip(".")
    return host == allowed_host


def _is_local_origin(origin: str | None) -> bool:
    if not origin:
        return False
    _, host, _ = _split_origin(origin)
    return host in {"localhost", "127.0.0.1"}


def _origin_allowed(origin: str | None, origins: List[str]) -> bool:
    if "*" in origins or not origins:
        return True
    if not origin:
        return False
    if any(_origin_matches(origin, allowed) for allowed in origins):
        return True
    return ALLOW_LOCALHOST and _is_local_origin(origin)


def _allow_headers(req: func.HttpRequest) -> str:
    requested = req.headers.get("Access-Control-Request-Headers", "")
    merged: Dict[str, str] = {}
    for name in DEFAULT_ALLOWED_HEADERS + requested.split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(
    req: func.HttpRequest,
    allowed_methods: Iterable[str],
    *,
    public: bool = False,
) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    origin = req.headers.get("origin") or req.headers.get("Origin")
    seen: Set[str] = set()
    methods_list: List[str] = []
    for method in allowed_methods:
        normalized = method.strip().upper()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        methods_list.append(normalized)
    if "OPTIONS" not in seen:
        methods_list.append("OPTIONS")

    origins = PUBLIC_ALLOWED_ORIGINS if public else ALLOWED_ORIGINS
    headers: Dict[str, str] = {"Vary": "Origin"}
    if not _origin_allowed(origin, origins):
        return headers
    allow_all = "*" in origins or not origins
    headers.update(
        {
            "Access-Control-Allow-Origin": origin if (origin and (ALLOW_CREDENTIALS or not allow_all)) else "*",
            "Access-Control-Allow-Methods": ", ".join(methods_list),
            "Access-Control-Allow-Headers": _allow_headers(req),
        }
    )
    if req.method == "OPTIONS":
        headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
    if ALLOW_CREDENTIALS:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
