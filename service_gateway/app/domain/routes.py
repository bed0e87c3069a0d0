"""
Route table and handlers for Gateway.

Public resource routes are served with the cached service token through
:class:`PublicCatalog`; ``me`` routes and like/repost/follow mutations are
forwarded with the caller's own bearer token; ``auth`` routes drive the
PKCE login flow through the :class:`AuthManager`.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import quote

import httpx

from shared.errors import BadRequestError, ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..auth.manager import AuthManager
from ..auth.stores import CookiePkceStore
from ..caching.token_cache import ServiceTokenCache
from .models import GatewayRequest


SEARCH_PAGE_SIZE = 10

logger = get_logger("gateway.routes")


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


class PublicCatalog:
    """Read-only upstream resources fetched with the service token.

    Usable directly from server-side code as well as through the routes.
    """

    def __init__(self, token_cache: ServiceTokenCache):
        self.token_cache = token_cache

    @property
    def client(self) -> Any:
        return self.token_cache.client

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        token = await self.token_cache.ensure_token()
        return await self.client.get(path, token, params=params)

    async def _search(self, kind: str, q: str, page: Optional[int]) -> Any:
        params: Dict[str, Any] = {"q": q, "limit": SEARCH_PAGE_SIZE, "linked_partitioning": "true"}
        if page:
            params["offset"] = page * SEARCH_PAGE_SIZE
        return await self._get(f"/{kind}", params)

    async def search_tracks(self, q: str, page: Optional[int] = None) -> Any:
        return await self._search("tracks", q, page)

    async def search_users(self, q: str, page: Optional[int] = None) -> Any:
        return await self._search("users", q, page)

    async def search_playlists(self, q: str, page: Optional[int] = None) -> Any:
        return await self._search("playlists", q, page)

    async def get_track(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}")

    async def get_track_streams(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}/streams")

    async def get_track_comments(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}/comments", {"linked_partitioning": "true"})

    async def get_track_likes(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}/favoriters", {"linked_partitioning": "true"})

    async def get_track_reposters(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}/reposters", {"linked_partitioning": "true"})

    async def get_related_tracks(self, track_id: Any) -> Any:
        return await self._get(f"/tracks/{_segment(track_id)}/related")

    async def get_user(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}")

    async def get_user_tracks(self, user_id: Any, limit: Optional[int] = None) -> Any:
        params: Dict[str, Any] = {"linked_partitioning": "true"}
        if limit is not None:
            params["limit"] = limit
        return await self._get(f"/users/{_segment(user_id)}/tracks", params)

    async def get_user_playlists(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}/playlists", {"linked_partitioning": "true"})

    async def get_followers(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}/followers", {"linked_partitioning": "true"})

    async def get_followings(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}/followings", {"linked_partitioning": "true"})

    async def get_user_likes_tracks(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}/likes/tracks", {"linked_partitioning": "true"})

    async def get_user_likes_playlists(self, user_id: Any) -> Any:
        return await self._get(f"/users/{_segment(user_id)}/likes/playlists", {"linked_partitioning": "true"})

    async def get_playlist(self, playlist_id: Any) -> Any:
        return await self._get(f"/playlists/{_segment(playlist_id)}")

    async def get_playlist_tracks(self, playlist_id: Any) -> Any:
        return await self._get(f"/playlists/{_segment(playlist_id)}/tracks", {"linked_partitioning": "true"})

    async def get_playlist_reposters(self, playlist_id: Any) -> Any:
        return await self._get(f"/playlists/{_segment(playlist_id)}/reposters", {"linked_partitioning": "true"})

    async def resolve(self, url: str) -> Any:
        return await self._get("/resolve", {"url": url})

    async def fetch_next(self, url: str) -> Any:
        """Follow a ``next_href`` pagination cursor.

        Only URLs on the upstream API host are followed, so the service token
        is never sent anywhere else.
        """
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise BadRequestError("Invalid 'url' parameter") from exc
        if parsed.scheme != "https" or parsed.host != self.client.api_host:
            raise BadRequestError("'url' must point to the SoundCloud API")

        token = await self.token_cache.ensure_token()
        return await self.client.get_url(str(parsed), token)


@dataclass
class RouteContext:
    request: GatewayRequest
    params: Dict[str, str]
    bearer_token: Optional[str] = None
    response_headers: Dict[str, str] = field(default_factory=dict)


Handler = Callable[[RouteContext], Awaitable[Any]]


@dataclass(frozen=True)
class Route:
    method: str
    template: str
    pattern: Pattern
    handler: Handler
    protected: bool = False


def compile_template(template: str) -> Pattern:
    """``/tracks/:id/like`` -> ``^/tracks/(?P<id>[^/]+)/like$``."""
    regex = re.sub(r":(\w+)", r"(?P<\1>[^/]+)", template)
    return re.compile(f"^{regex}$")


def _required_param(request: GatewayRequest, name: str) -> str:
    value = request.query_param(name)
    if not value:
        raise BadRequestError(f"Missing query parameter '{name}'")
    return value


def _int_param(request: GatewayRequest, name: str) -> Optional[int]:
    value = request.query_param(name)
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except ValueError as exc:
        raise BadRequestError(f"Query parameter '{name}' must be an integer") from exc
    if number < 0:
        raise BadRequestError(f"Query parameter '{name}' must not be negative")
    return number


class GatewayRoutes:
    """The fixed route table and its handlers."""

    def __init__(
        self,
        catalog: PublicCatalog,
        auth_manager: Optional[AuthManager] = None,
        *,
        secure_cookies: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.catalog = catalog
        self.auth_manager = auth_manager
        self.secure_cookies = secure_cookies
        self.metrics = metrics
        self.routes: List[Route] = []
        self._register_routes()

    def add(self, method: str, template: str, handler: Handler, protected: bool = False) -> None:
        self.routes.append(Route(method, template, compile_template(template), handler, protected))

    def match(self, method: str, path: str) -> Optional[Tuple[Route, Dict[str, str]]]:
        for route in self.routes:
            if route.method != method:
                continue
            found = route.pattern.match(path)
            if found:
                return route, found.groupdict()
        return None

    def _register_routes(self) -> None:
        # Auth
        self.add("GET", "/auth/login", self.login)
        self.add("GET", "/auth/callback", self.callback)
        self.add("POST", "/auth/refresh", self.refresh)
        self.add("POST", "/auth/logout", self.logout)

        # Public catalog
        self.add("GET", "/search/tracks", self.search("tracks"))
        self.add("GET", "/search/users", self.search("users"))
        self.add("GET", "/search/playlists", self.search("playlists"))
        self.add("GET", "/next", self.next_page)
        self.add("GET", "/resolve", self.resolve)

        self.add("GET", "/tracks/:id", self.by_id(self.catalog.get_track))
        self.add("GET", "/tracks/:id/stream", self.by_id(self.catalog.get_track_streams))
        self.add("GET", "/tracks/:id/comments", self.by_id(self.catalog.get_track_comments))
        self.add("GET", "/tracks/:id/likes", self.by_id(self.catalog.get_track_likes))
        self.add("GET", "/tracks/:id/related", self.by_id(self.catalog.get_related_tracks))
        self.add("GET", "/tracks/:id/reposts", self.by_id(self.catalog.get_track_reposters))

        self.add("GET", "/users/:id", self.by_id(self.catalog.get_user))
        self.add("GET", "/users/:id/tracks", self.user_tracks)
        self.add("GET", "/users/:id/playlists", self.by_id(self.catalog.get_user_playlists))
        self.add("GET", "/users/:id/followers", self.by_id(self.catalog.get_followers))
        self.add("GET", "/users/:id/followings", self.by_id(self.catalog.get_followings))
        self.add("GET", "/users/:id/likes/tracks", self.by_id(self.catalog.get_user_likes_tracks))
        self.add("GET", "/users/:id/likes/playlists", self.by_id(self.catalog.get_user_likes_playlists))

        self.add("GET", "/playlists/:id", self.by_id(self.catalog.get_playlist))
        self.add("GET", "/playlists/:id/tracks", self.by_id(self.catalog.get_playlist_tracks))
        self.add("GET", "/playlists/:id/reposts", self.by_id(self.catalog.get_playlist_reposters))

        # Caller's own account
        self.add("GET", "/me", self.me("/me"), protected=True)
        self.add("GET", "/me/tracks", self.me("/me/tracks"), protected=True)
        self.add("GET", "/me/likes", self.me("/me/likes/tracks"), protected=True)
        self.add("GET", "/me/playlists", self.me("/me/playlists"), protected=True)
        self.add("GET", "/me/followings", self.me("/me/followings"), protected=True)
        self.add("GET", "/me/followers", self.me("/me/followers"), protected=True)

        for method in ("POST", "DELETE"):
            self.add(method, "/tracks/:id/like", self.mutate("/likes/tracks"), protected=True)
            self.add(method, "/tracks/:id/repost", self.mutate("/reposts/tracks"), protected=True)
            self.add(method, "/playlists/:id/like", self.mutate("/likes/playlists"), protected=True)
            self.add(method, "/playlists/:id/repost", self.mutate("/reposts/playlists"), protected=True)
            self.add(method, "/me/follow/:id", self.mutate("/me/followings", create_method="PUT"), protected=True)

    # Auth handlers

    def _require_auth(self) -> AuthManager:
        manager = self.auth_manager
        if manager is None or not manager.client.credentials.redirect_uri:
            raise ConfigurationError("OAuth redirect URI is not configured")
        return manager

    async def login(self, ctx: RouteContext) -> Any:
        manager = self._require_auth()
        result = manager.init_login(ctx.request.query_param("state") or None)
        if isinstance(manager.store, CookiePkceStore):
            ctx.response_headers["Set-Cookie"] = manager.store.set_cookie_header(
                result.state, manager.ttl_ms, secure=self.secure_cookies
            )
        return {"url": result.url, "state": result.state}

    async def callback(self, ctx: RouteContext) -> Any:
        manager = self._require_auth()
        code = ctx.request.query_param("code")
        state = ctx.request.query_param("state")
        if not code or not state:
            raise BadRequestError("Missing 'code' or 'state' parameter")

        if isinstance(manager.store, CookiePkceStore):
            manager.store.load_from_cookie_header(ctx.request.header("Cookie"))
            ctx.response_headers["Set-Cookie"] = manager.store.clear_cookie_header(secure=self.secure_cookies)
        token = await manager.exchange_code(code, state)
        return token.model_dump(exclude_none=True)

    async def refresh(self, ctx: RouteContext) -> Any:
        manager = self._require_auth()
        body = ctx.request.json()
        refresh_token = body.get("refresh_token") if isinstance(body, dict) else None
        if not isinstance(refresh_token, str) or not refresh_token:
            raise BadRequestError("Missing 'refresh_token' in request body")
        token = await manager.refresh_token(refresh_token)
        return token.model_dump(exclude_none=True)

    async def logout(self, ctx: RouteContext) -> Any:
        """Best-effort upstream sign-out; always reports success."""
        try:
            body = ctx.request.json()
        except BadRequestError:
            body = None
        access_token = body.get("access_token") if isinstance(body, dict) else None

        if self.auth_manager is not None and isinstance(access_token, str) and access_token:
            try:
                await self.auth_manager.sign_out(access_token)
            except Exception as exc:
                logger.warning("Upstream sign-out failed", error=str(exc))
                if self.metrics is not None:
                    self.metrics.increment_counter("pkce_events_total", event="sign_out_failed")
        return {"success": True}

    # Public handlers

    def search(self, kind: str) -> Handler:
        lookup = getattr(self.catalog, f"search_{kind}")

        async def handler(ctx: RouteContext) -> Any:
            q = _required_param(ctx.request, "q")
            return await lookup(q, _int_param(ctx.request, "page"))

        return handler

    def by_id(self, lookup: Callable[[str], Awaitable[Any]]) -> Handler:
        async def handler(ctx: RouteContext) -> Any:
            return await lookup(ctx.params["id"])

        return handler

    async def user_tracks(self, ctx: RouteContext) -> Any:
        return await self.catalog.get_user_tracks(ctx.params["id"], _int_param(ctx.request, "limit"))

    async def next_page(self, ctx: RouteContext) -> Any:
        return await self.catalog.fetch_next(_required_param(ctx.request, "url"))

    async def resolve(self, ctx: RouteContext) -> Any:
        return await self.catalog.resolve(_required_param(ctx.request, "url"))

    # Authenticated handlers

    def me(self, upstream_path: str) -> Handler:
        async def handler(ctx: RouteContext) -> Any:
            return await self.catalog.client.get(upstream_path, ctx.bearer_token)

        return handler

    def mutate(self, upstream_base: str, create_method: str = "POST") -> Handler:
        async def handler(ctx: RouteContext) -> Any:
            method = create_method if ctx.request.method == "POST" else "DELETE"
            await self.catalog.client.request(
                method, f"{upstream_base}/{_segment(ctx.params['id'])}", ctx.bearer_token
            )
            return {"success": True}

        return handler
