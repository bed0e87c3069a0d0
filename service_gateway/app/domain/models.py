"""
Transport-neutral request, response and telemetry models for Gateway.

Both the ASGI and the WSGI bindings translate their native request objects
into :class:`GatewayRequest` and render :class:`GatewayResponse` back, so the
dispatcher never sees framework types.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

from shared.config import GatewaySettings
from shared.errors import BadRequestError


@dataclass
class GatewayRequest:
    """Inbound request as seen by the dispatcher."""

    method: str
    path: str
    query: List[Tuple[str, str]] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {name.lower(): value for name, value in self.headers.items()}

    @classmethod
    def from_url(
        cls,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
    ) -> "GatewayRequest":
        """Build a request from a path-with-query such as ``/tracks/1?x=y``."""
        parts = urlsplit(url)
        return cls(
            method=method,
            path=parts.path or "/",
            query=parse_qsl(parts.query, keep_blank_values=True),
            headers=dict(headers or {}),
            body=body,
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def query_param(self, name: str) -> Optional[str]:
        for key, value in self.query:
            if key == name:
                return value
        return None

    def json(self) -> Any:
        """Decoded JSON body; an empty body decodes to ``{}``."""
        if not self.body.strip():
            return {}
        try:
            return json.loads(self.body)
        except ValueError as exc:
            raise BadRequestError("Request body must be valid JSON") from exc

    @property
    def bearer_token(self) -> Optional[str]:
        authorization = self.header("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            return None
        token = authorization[7:].strip()
        return token or None


@dataclass
class GatewayResponse:
    """Outbound response; ``render()`` produces the exact body bytes."""

    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    request_id: Optional[str] = None

    def render(self) -> bytes:
        if self.body is None:
            return b""
        return json.dumps(self.body, separators=(",", ":")).encode("utf-8")

    def header_items(self) -> List[Tuple[str, str]]:
        items = list(self.headers.items())
        if self.body is not None and "Content-Type" not in self.headers:
            items.append(("Content-Type", "application/json"))
        return items


@dataclass(frozen=True)
class RouteTelemetry:
    """One record per handled request, passed to ``on_route_complete``."""

    method: str
    route: str
    status: int
    duration_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class UpstreamRequestTelemetry:
    """One record per upstream HTTP call, passed to ``on_request``."""

    method: str
    url: str
    status: int
    duration_ms: float
    error: Optional[str] = None


DEFAULT_CORS_METHODS = ("GET", "POST", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class CorsConfig:
    origin: Union[str, Sequence[str]]
    methods: Optional[Sequence[str]] = None

    @property
    def origins(self) -> Tuple[str, ...]:
        if isinstance(self.origin, str):
            return (self.origin,) if self.origin else ()
        return tuple(self.origin)

    @property
    def allow_origin(self) -> Optional[str]:
        origins = self.origins
        return origins[0] if origins else None

    @property
    def allow_methods(self) -> str:
        return ", ".join(self.methods or DEFAULT_CORS_METHODS)


@dataclass(frozen=True)
class RouteConfig:
    """Immutable routing policy shared by every request of one gateway."""

    allowlist: Optional[Sequence[str]] = None
    denylist: Optional[Sequence[str]] = None
    cache_headers: Mapping[str, str] = field(default_factory=dict)
    cors: Optional[CorsConfig] = None
    csrf_protection: bool = False
    on_route_complete: Optional[Callable[[RouteTelemetry], Any]] = None
    on_request: Optional[Callable[[UpstreamRequestTelemetry], Any]] = None
    mount_prefix: str = "/api/soundcloud"

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        *,
        on_route_complete: Optional[Callable[[RouteTelemetry], Any]] = None,
        on_request: Optional[Callable[[UpstreamRequestTelemetry], Any]] = None,
    ) -> "RouteConfig":
        cors = None
        if settings.cors_origin:
            origin: Union[str, Sequence[str]] = (
                settings.cors_origin[0] if len(settings.cors_origin) == 1 else tuple(settings.cors_origin)
            )
            cors = CorsConfig(origin=origin, methods=tuple(settings.cors_methods or ()) or None)

        return cls(
            allowlist=tuple(settings.allowlist) if settings.allowlist else None,
            denylist=tuple(settings.denylist) if settings.denylist else None,
            cache_headers=dict(settings.cache_headers),
            cors=cors,
            csrf_protection=settings.csrf_protection,
            on_route_complete=on_route_complete,
            on_request=on_request,
            mount_prefix=settings.mount_prefix,
        )
