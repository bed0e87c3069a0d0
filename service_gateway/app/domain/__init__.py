"""
Domain layer for the Gateway Service.

Holds the transport-neutral request/response models, the routing policy,
the route table and the dispatcher shared by every HTTP binding.
"""

from .dispatcher import Dispatcher
from .models import (
    CorsConfig,
    GatewayRequest,
    GatewayResponse,
    RouteConfig,
    RouteTelemetry,
    UpstreamRequestTelemetry,
)
from .routes import GatewayRoutes, PublicCatalog

__all__ = [
    "CorsConfig",
    "Dispatcher",
    "GatewayRequest",
    "GatewayResponse",
    "GatewayRoutes",
    "PublicCatalog",
    "RouteConfig",
    "RouteTelemetry",
    "UpstreamRequestTelemetry",
]
