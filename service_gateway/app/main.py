"""
API Gateway service for the SoundCloud Access Gateway.
"""

from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import GatewaySettings, get_settings
from shared.errors import NotFoundError
from shared.logging import generate_request_id
from service_gateway.app.adapters import SoundCloudClient, SoundCloudCredentials
from service_gateway.app.auth import AuthManager, CookiePkceStore, MemoryPkceStore, PkceStore
from service_gateway.app.caching import ServiceTokenCache
from service_gateway.app.domain import (
    Dispatcher,
    GatewayRequest,
    PublicCatalog,
    RouteConfig,
    RouteTelemetry,
    UpstreamRequestTelemetry,
)
from service_gateway.app.domain.policy import cors_headers


GATEWAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class GatewayService(BaseService):
    """API Gateway service implementation.

    Everything under ``mount_prefix`` is handed to the :class:`Dispatcher`;
    ``/health`` and ``/metrics`` come from :class:`BaseService`.
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        store: Optional[PkceStore] = None,
        on_route_complete: Optional[Callable[[RouteTelemetry], Any]] = None,
        on_request: Optional[Callable[[UpstreamRequestTelemetry], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        super().__init__("gateway", settings)

        self.route_config = RouteConfig.from_settings(
            settings,
            on_route_complete=on_route_complete,
            on_request=on_request,
        )
        self.client = SoundCloudClient(
            SoundCloudCredentials(
                client_id=settings.client_id,
                client_secret=settings.client_secret,
                redirect_uri=settings.redirect_uri,
            ),
            api_base_url=settings.api_base_url,
            auth_base_url=settings.auth_base_url,
            http_timeout=settings.http_timeout,
            on_request=self.route_config.on_request,
            metrics=self.metrics,
            transport=transport,
        )
        self.store = store if store is not None else self._create_store(settings)
        self.auth_manager = AuthManager(
            self.client,
            self.store,
            ttl_ms=settings.pkce_ttl_ms,
            metrics=self.metrics,
        )
        self.token_cache = ServiceTokenCache(self.client, metrics=self.metrics)
        self.catalog = PublicCatalog(self.token_cache)
        self.dispatcher = Dispatcher(
            self.route_config,
            self.catalog,
            self.auth_manager,
            self.metrics,
            secure_cookies=settings.is_production,
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.client.close()

        self._setup_gateway_routes()

    def _create_store(self, settings: GatewaySettings) -> PkceStore:
        if settings.pkce_secret:
            self.logger.info("Using signed-cookie PKCE store", cookie_name=settings.pkce_cookie_name)
            return CookiePkceStore(settings.pkce_secret, cookie_name=settings.pkce_cookie_name)
        return MemoryPkceStore()

    def _setup_gateway_routes(self):
        """Set up the catch-all gateway route."""
        mount = self.route_config.mount_prefix.rstrip("/")

        @self.app.api_route(mount + "/{route:path}", methods=GATEWAY_METHODS, include_in_schema=False)
        async def gateway_route(route: str, request: Request):
            gateway_request = GatewayRequest(
                method=request.method,
                path=request.url.path,
                query=list(request.query_params.multi_items()),
                headers=dict(request.headers),
                body=await request.body(),
            )
            response = await self.dispatcher.dispatch(gateway_request)
            return Response(
                content=response.render(),
                status_code=response.status,
                headers=dict(response.header_items()),
            )

        @self.app.exception_handler(404)
        async def not_found_handler(request: Request, exc: Exception):
            """Paths outside the mount prefix get the gateway error envelope."""
            error = NotFoundError(f"No route for {request.method} {request.url.path}")
            return JSONResponse(
                status_code=error.status,
                content=error.to_response(generate_request_id()).to_body(),
                headers=cors_headers(self.route_config),
            )

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {
            "pending_logins": self.auth_manager.pending_logins,
            "service_token": self.token_cache.state(),
        }


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
