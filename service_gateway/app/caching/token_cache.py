"""
Service-level access token cache for Gateway.

Public resource routes call the upstream API with an application token
obtained through the client-credentials grant. ``ServiceTokenCache`` keeps
that token until shortly before it expires and makes sure a burst of
concurrent callers triggers exactly one upstream token request.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


DEFAULT_EARLY_EXPIRY_SECONDS = 300
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class ServiceToken:
    access_token: str
    expires_at: float


class ServiceTokenCache:
    """Single-flight cache for the client-credentials token."""

    def __init__(
        self,
        client: Any,
        early_expiry_seconds: int = DEFAULT_EARLY_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.early_expiry_seconds = early_expiry_seconds
        self.metrics = metrics
        self.logger = get_logger("gateway.token_cache")
        self._client = client
        self._clock = clock
        self._token: Optional[ServiceToken] = None
        self._inflight: Optional[asyncio.Task] = None
        # Bumped on reconfigure so refreshes started with old credentials never land.
        self._generation = 0

    @property
    def client(self) -> Any:
        return self._client

    async def ensure_token(self) -> str:
        """Return a valid access token, refreshing it at most once at a time."""
        token = self._token
        if token is not None and self._clock() < token.expires_at:
            return token.access_token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh(self._client, self._generation))
        # shield: a cancelled waiter must not cancel the refresh shared by the others.
        return await asyncio.shield(self._inflight)

    def reconfigure(self, client: Any) -> None:
        """Swap the upstream client (credentials) and drop all cached state."""
        self._client = client
        self._generation += 1
        self._token = None
        self._inflight = None
        self.logger.info("Service token cache reconfigured", generation=self._generation)

    def invalidate(self) -> None:
        """Forget the cached token; the next call fetches a new one."""
        self._token = None

    def state(self) -> Dict[str, Any]:
        token = self._token
        remaining = token.expires_at - self._clock() if token else 0.0
        return {
            "cached": token is not None and remaining > 0,
            "expires_in": max(int(remaining), 0),
            "refreshing": self._inflight is not None,
        }

    async def _refresh(self, client: Any, generation: int) -> str:
        try:
            payload = await client.get_client_token()
            expires_in = payload.get("expires_in") or DEFAULT_EXPIRES_IN
            token = ServiceToken(
                access_token=payload["access_token"],
                expires_at=self._clock() + max(expires_in - self.early_expiry_seconds, 0),
            )
        except Exception as exc:
            if generation == self._generation:
                self._inflight = None
            self._record("failure")
            self.logger.error("Client credentials refresh failed", error=str(exc))
            raise

        if generation == self._generation:
            self._token = token
            self._inflight = None
            self._record("success")
            self.logger.info("Service token refreshed", expires_in=expires_in)
        else:
            self._record("stale")
            self.logger.info("Discarding service token from superseded credentials")
        return token.access_token

    def _record(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("token_refresh_total", status=status)
