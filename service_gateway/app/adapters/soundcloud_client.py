"""
SoundCloud API client for Gateway.
"""

import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.models import UpstreamRequestTelemetry


DEFAULT_API_BASE_URL = "https://api.soundcloud.com"
DEFAULT_AUTH_BASE_URL = "https://secure.soundcloud.com"


@dataclass(frozen=True)
class SoundCloudCredentials:
    """OAuth client registration used for every upstream token call."""

    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = None


class SoundCloudClient:
    """Thin async wrapper over the SoundCloud OAuth and resource endpoints.

    Every upstream call is reported to ``on_request`` (if set) with method,
    URL, status and duration. Non-2xx answers raise :class:`UpstreamError`
    with the upstream status preserved.
    """

    def __init__(
        self,
        credentials: SoundCloudCredentials,
        *,
        api_base_url: str = DEFAULT_API_BASE_URL,
        auth_base_url: str = DEFAULT_AUTH_BASE_URL,
        http_timeout: float = 10.0,
        on_request: Optional[Callable[[UpstreamRequestTelemetry], Any]] = None,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.api_base_url = api_base_url.rstrip("/")
        self.auth_base_url = auth_base_url.rstrip("/")
        self.on_request = on_request
        self.metrics = metrics
        self.logger = get_logger("gateway.soundcloud_client")
        self._client = httpx.AsyncClient(
            timeout=http_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.auth_base_url}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.auth_base_url}/oauth/token"

    @property
    def api_host(self) -> str:
        return httpx.URL(self.api_base_url).host

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # OAuth endpoints

    async def get_client_token(self) -> Dict[str, Any]:
        """Client-credentials grant; returns ``{access_token, expires_in, ...}``."""
        return await self._token_request({
            "grant_type": "client_credentials",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        })

    async def exchange_authorization_code(self, code: str, code_verifier: str) -> Dict[str, Any]:
        return await self._token_request({
            "grant_type": "authorization_code",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "redirect_uri": self.credentials.redirect_uri or "",
            "code": code,
            "code_verifier": code_verifier,
        })

    async def refresh_user_token(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({
            "grant_type": "refresh_token",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "redirect_uri": self.credentials.redirect_uri or "",
            "refresh_token": refresh_token,
        })

    async def sign_out(self, access_token: str) -> None:
        """Revoke a user session upstream."""
        await self._send("POST", f"{self.auth_base_url}/sign-out", json={"access_token": access_token})

    # Resource endpoints

    async def get(self, path: str, token: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET an API path (``/tracks/1``) on behalf of ``token``."""
        return await self.request("GET", path, token, params=params)

    async def get_url(self, url: str, token: str) -> Any:
        """GET an absolute API URL, used for pagination cursors."""
        return await self._send("GET", url, headers=self._auth_headers(token))

    async def request(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self._send(
            method,
            f"{self.api_base_url}{path}",
            params=params,
            headers=self._auth_headers(token),
        )

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"OAuth {token}"}

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        payload = await self._send("POST", self.token_endpoint, data=form)
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamError("Token endpoint returned no access_token")
        return payload

    async def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        started = time.perf_counter()
        status: Optional[int] = None
        error: Optional[str] = None
        try:
            response = await self._client.request(method, url, **kwargs)
            status = response.status_code
            if response.is_error:
                error = _error_message(response)
                raise UpstreamError(error, status=status, details={"url": url})
            if not response.content:
                return None
            return response.json()
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
            self.logger.error("Upstream request failed", method=method, url=url, error=error)
            raise UpstreamError("Upstream request failed", details={"url": url, "error": error}) from exc
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            await self._report(UpstreamRequestTelemetry(
                method=method,
                url=url,
                status=status or 0,
                duration_ms=duration_ms,
                error=error,
            ))

    async def _report(self, telemetry: UpstreamRequestTelemetry) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(
                "upstream_requests_total",
                method=telemetry.method,
                status_code=str(telemetry.status),
            )
        if self.on_request is None:
            return
        try:
            result = self.on_request(telemetry)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.warning("Upstream telemetry callback failed", error=str(exc))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"SoundCloud API error: {response.status_code}"
