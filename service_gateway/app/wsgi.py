"""
WSGI binding for the SoundCloud Access Gateway.

Synchronous hosts call :class:`WSGIGateway` per request; the dispatcher runs
on one private event loop thread so the async token cache, upstream client
and verifier store behave exactly as under the ASGI binding.
"""

import asyncio
import threading
from http import HTTPStatus
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl

from shared.logging import get_logger
from service_gateway.app.domain import Dispatcher, GatewayRequest, GatewayResponse
from service_gateway.app.main import GatewayService


StartResponse = Callable[[str, List[Tuple[str, str]]], Any]

_SPECIAL_HEADERS = {"CONTENT_TYPE": "content-type", "CONTENT_LENGTH": "content-length"}


def request_from_environ(environ: Dict[str, Any]) -> GatewayRequest:
    """Translate a WSGI environ into a :class:`GatewayRequest`."""
    headers: Dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            headers[key[5:].replace("_", "-").lower()] = value
        elif key in _SPECIAL_HEADERS and value:
            headers[_SPECIAL_HEADERS[key]] = value

    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    body = environ["wsgi.input"].read(length) if length > 0 else b""

    # PEP 3333 hands paths over as latin-1 decoded bytes.
    raw_path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
    path = raw_path.encode("latin-1").decode("utf-8", errors="replace") or "/"

    return GatewayRequest(
        method=environ.get("REQUEST_METHOD", "GET"),
        path=path,
        query=parse_qsl(environ.get("QUERY_STRING", ""), keep_blank_values=True),
        headers=headers,
        body=body,
    )


def status_line(status: int) -> str:
    try:
        return f"{status} {HTTPStatus(status).phrase}"
    except ValueError:
        return f"{status} Unknown"


class WSGIGateway:
    """WSGI application wrapping a :class:`Dispatcher`."""

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher
        self.logger = get_logger("gateway.wsgi")
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="gateway-wsgi-loop", daemon=True)
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def dispatch(self, request: GatewayRequest) -> GatewayResponse:
        """Run one request through the dispatcher and wait for it."""
        future = asyncio.run_coroutine_threadsafe(self.dispatcher.dispatch(request), self._loop)
        return future.result()

    def __call__(self, environ: Dict[str, Any], start_response: StartResponse) -> Iterable[bytes]:
        response = self.dispatch(request_from_environ(environ))
        body = response.render()
        headers = response.header_items()
        headers.append(("Content-Length", str(len(body))))
        start_response(status_line(response.status), headers)
        return [body]

    def close(self) -> None:
        """Stop the loop thread; close upstream clients first with ``run``."""
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()
        self._loop.close()

    def run(self, coro: Any) -> Any:
        """Run an arbitrary coroutine on the gateway loop (e.g. client shutdown)."""
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()


def create_wsgi_app(settings=None, **kwargs) -> WSGIGateway:
    """Build a gateway with the same components as the ASGI service."""
    service = GatewayService(settings, **kwargs)
    return WSGIGateway(service.dispatcher)


_gateway: Optional[WSGIGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> WSGIGateway:
    """Module-wide gateway, built on first use."""
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = create_wsgi_app()
    return _gateway


def application(environ, start_response):  # type: ignore
    """WSGI application."""
    return get_gateway()(environ, start_response)
