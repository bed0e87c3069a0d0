"""
Routing policy for Gateway: route visibility, CORS, CSRF and caching.

All functions are pure over a :class:`RouteConfig` and request data.
"""

from typing import Dict, Mapping, Optional

from shared.errors import ForbiddenError
from .models import RouteConfig


AUTH_PREFIX = "auth"
ME_PREFIX = "me"
DEFAULT_CACHE_KEY = "default"
NO_STORE = "no-store"

CSRF_METHODS = frozenset({"POST", "DELETE"})


def route_prefix(path: str) -> str:
    """First path segment: ``/tracks/1`` -> ``tracks``, ``/`` -> ``""``."""
    return path.lstrip("/").split("/", 1)[0]


def check_route_visibility(config: RouteConfig, prefix: str) -> None:
    """Raise :class:`ForbiddenError` when the prefix is filtered out.

    When both lists are configured the allowlist decides and the denylist
    is ignored.
    """
    if config.allowlist is not None:
        if prefix not in config.allowlist:
            raise ForbiddenError(f"Route '{prefix}' is not allowed")
        return
    if config.denylist is not None and prefix in config.denylist:
        raise ForbiddenError(f"Route '{prefix}' is blocked")


def cors_headers(config: RouteConfig) -> Dict[str, str]:
    if config.cors is None:
        return {}
    headers = {"Access-Control-Allow-Methods": config.cors.allow_methods}
    allow_origin = config.cors.allow_origin
    if allow_origin:
        headers["Access-Control-Allow-Origin"] = allow_origin
    return headers


def check_csrf(config: RouteConfig, method: str, prefix: str, headers: Mapping[str, str]) -> None:
    """Reject cross-site mutations by ``Origin`` header.

    ``headers`` must use lowercase names. The auth flow is exempt; it is
    protected by the OAuth ``state`` parameter.
    """
    if not config.csrf_protection:
        return
    if method.upper() not in CSRF_METHODS or prefix == AUTH_PREFIX:
        return

    origin = headers.get("origin")
    if not origin:
        raise ForbiddenError("Missing Origin header")

    allowed = config.cors.origins if config.cors is not None else ()
    if allowed and origin not in allowed:
        raise ForbiddenError(f"Origin '{origin}' is not allowed")


def cache_control_for(config: RouteConfig, method: str, prefix: str, status: int) -> Optional[str]:
    """Cache-Control directive for a response, or ``None`` for no header."""
    if method.upper() != "GET" or not 200 <= status < 300:
        return None
    if prefix == AUTH_PREFIX:
        return NO_STORE

    directive = config.cache_headers.get(prefix)
    if directive is None and prefix != ME_PREFIX:
        directive = config.cache_headers.get(DEFAULT_CACHE_KEY)
    return directive
