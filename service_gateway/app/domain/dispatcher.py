"""
Transport-agnostic request dispatcher for Gateway.
"""

import inspect
import time
from typing import Optional

from shared.errors import (
    NotFoundError,
    UnauthorizedError,
    describe_exception,
    normalize_exception,
)
from shared.logging import clear_context, get_logger, set_request_id
from shared.metrics import MetricsCollector
from ..auth.manager import AuthManager
from .models import GatewayRequest, GatewayResponse, RouteConfig, RouteTelemetry
from .policy import (
    cache_control_for,
    check_csrf,
    check_route_visibility,
    cors_headers,
    route_prefix,
)
from .routes import GatewayRoutes, PublicCatalog, RouteContext


class Dispatcher:
    """Turns a :class:`GatewayRequest` into a :class:`GatewayResponse`.

    Pipeline: mount prefix strip, preflight, route filter, CSRF, route match,
    bearer check, handler. Every outcome, including errors, gets CORS and
    Cache-Control headers applied and produces exactly one telemetry record.
    """

    def __init__(
        self,
        route_config: RouteConfig,
        catalog: PublicCatalog,
        auth_manager: Optional[AuthManager] = None,
        metrics: Optional[MetricsCollector] = None,
        *,
        secure_cookies: bool = True,
    ):
        self.config = route_config
        self.catalog = catalog
        self.auth_manager = auth_manager
        self.metrics = metrics
        self.routes = GatewayRoutes(catalog, auth_manager, secure_cookies=secure_cookies, metrics=metrics)
        self.logger = get_logger("gateway.dispatcher")

    def resolve_path(self, path: str) -> str:
        """Strip the mount prefix: ``/api/soundcloud/tracks/1`` -> ``/tracks/1``."""
        mount = self.config.mount_prefix.rstrip("/")
        if mount and (path == mount or path.startswith(mount + "/")):
            path = path[len(mount):]
        if not path.startswith("/"):
            path = "/" + path
        return path

    async def dispatch(self, request: GatewayRequest) -> GatewayResponse:
        request_id = set_request_id()
        started = time.perf_counter()
        path = self.resolve_path(request.path)
        prefix = route_prefix(path)
        error_text: Optional[str] = None

        try:
            response = await self._handle(request, path, prefix)
        except Exception as exc:
            error = normalize_exception(exc)
            error_text = describe_exception(exc)
            if error.status >= 500:
                self.logger.error(
                    "Request failed",
                    method=request.method,
                    path=path,
                    code=error.code,
                    error=error_text,
                    exc_info=True,
                )
            else:
                self.logger.info(
                    "Request rejected",
                    method=request.method,
                    path=path,
                    status=error.status,
                    code=error.code,
                    error=error_text,
                )
            if self.metrics is not None:
                self.metrics.record_error(error.code)
            response = GatewayResponse(error.status, error.to_response(request_id).to_body())

        response.request_id = request_id
        cache_control = cache_control_for(self.config, request.method, prefix, response.status)
        if cache_control:
            response.headers["Cache-Control"] = cache_control
        response.headers.update(cors_headers(self.config))

        duration = time.perf_counter() - started
        if self.metrics is not None:
            self.metrics.record_http_request(request.method, prefix or "root", response.status, duration)
        await self._emit_telemetry(RouteTelemetry(
            method=request.method,
            route=path,
            status=response.status,
            duration_ms=duration * 1000,
            error=error_text,
        ))
        clear_context()
        return response

    async def _handle(self, request: GatewayRequest, path: str, prefix: str) -> GatewayResponse:
        if request.method == "OPTIONS":
            return GatewayResponse(204)

        check_route_visibility(self.config, prefix)
        check_csrf(self.config, request.method, prefix, request.headers)

        matched = self.routes.match(request.method, path)
        if matched is None:
            raise NotFoundError(f"No route for {request.method} {path}")
        route, params = matched

        token = request.bearer_token
        if route.protected and token is None:
            raise UnauthorizedError("Bearer token required")

        ctx = RouteContext(request=request, params=params, bearer_token=token)
        body = await route.handler(ctx)
        return GatewayResponse(200, body, headers=ctx.response_headers)

    async def _emit_telemetry(self, telemetry: RouteTelemetry) -> None:
        callback = self.config.on_route_complete
        if callback is None:
            return
        try:
            result = callback(telemetry)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.warning("Route telemetry callback failed", route=telemetry.route, error=str(exc))
