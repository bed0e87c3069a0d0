"""
Unit tests for the request dispatcher.
"""

import json
import re
from unittest.mock import AsyncMock

import pytest

from shared.errors import UpstreamError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeSoundCloud, REDIRECT_URI, json_body
from service_gateway.app.adapters import SoundCloudClient, SoundCloudCredentials
from service_gateway.app.auth import AuthManager, CookiePkceStore
from service_gateway.app.caching import ServiceTokenCache
from service_gateway.app.domain import (
    CorsConfig,
    Dispatcher,
    GatewayRequest,
    PublicCatalog,
    RouteConfig,
)


UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")
MOUNT = "/api/soundcloud"


def request(method, path, headers=None, body=None):
    raw = json.dumps(body).encode() if body is not None else b""
    return GatewayRequest.from_url(method, MOUNT + path, headers=headers, body=raw)


class GatewayFactory:
    """Builds dispatchers wired to a fake upstream."""

    def __init__(self, upstream):
        self.upstream = upstream
        self.telemetry = []
        self.metrics = MetricsCollector("gateway")

    def __call__(self, redirect_uri=REDIRECT_URI, store=None, **config):
        config.setdefault("on_route_complete", self.telemetry.append)
        client = SoundCloudClient(
            SoundCloudCredentials("client-1", "secret-1", redirect_uri),
            transport=self.upstream.transport(),
        )
        self.client = client
        self.token_cache = ServiceTokenCache(client)
        self.auth_manager = AuthManager(client, store)
        return Dispatcher(
            RouteConfig(**config),
            PublicCatalog(self.token_cache),
            self.auth_manager,
            self.metrics,
        )


class TestDispatcher:
    """Test cases for Dispatcher."""

    @pytest.fixture
    def upstream(self):
        return FakeSoundCloud()

    @pytest.fixture
    def factory(self, upstream):
        return GatewayFactory(upstream)

    @pytest.fixture
    def dispatcher(self, factory):
        return factory()

    def test_resolve_path(self, dispatcher):
        assert dispatcher.resolve_path("/api/soundcloud/tracks/1") == "/tracks/1"
        assert dispatcher.resolve_path("/api/soundcloud") == "/"
        assert dispatcher.resolve_path("/tracks/1") == "/tracks/1"

    @pytest.mark.asyncio
    async def test_unknown_route_is_404_with_request_id(self, dispatcher, factory):
        response = await dispatcher.dispatch(request("GET", "/unknown"))

        body = json_body(response)
        assert response.status == 404
        assert body["code"] == "NOT_FOUND"
        assert body["status"] == 404
        assert UUID_PATTERN.match(body["requestId"])
        assert body["requestId"] == response.request_id
        assert set(body) == {"code", "message", "status", "requestId"}

    @pytest.mark.asyncio
    async def test_request_ids_are_fresh(self, dispatcher):
        first = await dispatcher.dispatch(request("GET", "/unknown"))
        second = await dispatcher.dispatch(request("GET", "/unknown"))
        assert first.request_id != second.request_id

    @pytest.mark.asyncio
    async def test_public_track_uses_service_token(self, dispatcher, upstream):
        response = await dispatcher.dispatch(request("GET", "/tracks/1"))

        body = json_body(response)
        assert response.status == 200
        assert body["path"] == "/tracks/1"
        assert body["authorization"] == "OAuth service-token-1"
        assert response.headers.get("Cache-Control") is None

    @pytest.mark.asyncio
    async def test_service_token_fetched_once(self, dispatcher, upstream):
        for _ in range(3):
            await dispatcher.dispatch(request("GET", "/tracks/1"))
        assert upstream.client_token_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,upstream_path", [
        ("/tracks/7/stream", "/tracks/7/streams"),
        ("/tracks/7/comments", "/tracks/7/comments"),
        ("/tracks/7/likes", "/tracks/7/favoriters"),
        ("/tracks/7/related", "/tracks/7/related"),
        ("/tracks/7/reposts", "/tracks/7/reposters"),
        ("/users/3", "/users/3"),
        ("/users/3/playlists", "/users/3/playlists"),
        ("/users/3/followers", "/users/3/followers"),
        ("/users/3/followings", "/users/3/followings"),
        ("/users/3/likes/tracks", "/users/3/likes/tracks"),
        ("/users/3/likes/playlists", "/users/3/likes/playlists"),
        ("/playlists/5", "/playlists/5"),
        ("/playlists/5/tracks", "/playlists/5/tracks"),
        ("/playlists/5/reposts", "/playlists/5/reposters"),
    ])
    async def test_public_routes(self, dispatcher, path, upstream_path):
        response = await dispatcher.dispatch(request("GET", path))
        assert response.status == 200
        assert json_body(response)["path"] == upstream_path

    @pytest.mark.asyncio
    async def test_user_tracks_limit(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/users/3/tracks?limit=5"))
        assert json_body(response)["query"]["limit"] == "5"

        bad = await dispatcher.dispatch(request("GET", "/users/3/tracks?limit=five"))
        assert bad.status == 400
        assert json_body(bad)["code"] == "BAD_REQUEST"

    @pytest.mark.asyncio
    async def test_search(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/search/tracks?q=lofi&page=2"))
        body = json_body(response)
        assert response.status == 200
        assert body["path"] == "/tracks"
        assert body["query"]["q"] == "lofi"
        assert body["query"]["offset"] == "20"
        assert body["query"]["limit"] == "10"

        for kind in ("users", "playlists"):
            response = await dispatcher.dispatch(request("GET", f"/search/{kind}?q=x"))
            assert json_body(response)["path"] == f"/{kind}"

    @pytest.mark.asyncio
    async def test_search_requires_query(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/search/tracks"))
        assert response.status == 400
        assert json_body(response)["code"] == "BAD_REQUEST"

    @pytest.mark.asyncio
    async def test_search_rejects_non_integer_page(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/search/tracks?q=x&page=abc"))
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_next_page(self, dispatcher):
        cursor = "https://api.soundcloud.com/tracks?q=x&offset=10&linked_partitioning=true"
        response = await dispatcher.dispatch(GatewayRequest(
            method="GET",
            path=MOUNT + "/next",
            query=[("url", cursor)],
        ))
        body = json_body(response)
        assert response.status == 200
        assert body["path"] == "/tracks"
        assert body["query"]["offset"] == "10"
        assert body["authorization"] == "OAuth service-token-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cursor", [
        None,
        "https://evil.example/steal",
        "http://api.soundcloud.com/tracks",
        "not a url",
    ])
    async def test_next_page_rejects_foreign_urls(self, dispatcher, upstream, cursor):
        query = [("url", cursor)] if cursor is not None else []
        response = await dispatcher.dispatch(GatewayRequest("GET", MOUNT + "/next", query=query))
        assert response.status == 400
        assert upstream.client_token_calls == 0

    @pytest.mark.asyncio
    async def test_resolve(self, dispatcher):
        response = await dispatcher.dispatch(GatewayRequest(
            "GET", MOUNT + "/resolve", query=[("url", "https://soundcloud.com/artist/song")],
        ))
        body = json_body(response)
        assert body["path"] == "/resolve"
        assert body["query"]["url"] == "https://soundcloud.com/artist/song"

    @pytest.mark.asyncio
    async def test_upstream_error_status_preserved(self, dispatcher, upstream, factory):
        upstream.respond("GET", "/tracks/999", 404, {"message": "Track not found"})
        response = await dispatcher.dispatch(request("GET", "/tracks/999"))

        body = json_body(response)
        assert response.status == 404
        assert body["code"] == "NOT_FOUND"
        assert body["message"] == "Track not found"
        assert factory.telemetry[-1].error == "Track not found"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal(self, dispatcher, factory):
        factory.token_cache.ensure_token = AsyncMock(side_effect=RuntimeError("boom"))
        response = await dispatcher.dispatch(request("GET", "/tracks/1"))

        body = json_body(response)
        assert response.status == 500
        assert body["code"] == "INTERNAL"
        assert body["message"] == "Internal server error"
        assert factory.telemetry[-1].error == "boom"

    @pytest.mark.asyncio
    async def test_exception_with_status_code_attribute(self, dispatcher, factory):
        class ApiFailure(Exception):
            status_code = 403

        factory.token_cache.ensure_token = AsyncMock(side_effect=ApiFailure("quota exceeded"))
        response = await dispatcher.dispatch(request("GET", "/tracks/1"))
        assert response.status == 403
        assert json_body(response)["code"] == "FORBIDDEN"

    # Protected routes

    @pytest.mark.asyncio
    async def test_me_requires_bearer(self, dispatcher):
        for path in ("/me", "/me/tracks", "/me/likes", "/me/playlists", "/me/followings", "/me/followers"):
            response = await dispatcher.dispatch(request("GET", path))
            assert response.status == 401, path
            assert json_body(response)["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_me_forwards_user_token(self, dispatcher, upstream):
        response = await dispatcher.dispatch(request("GET", "/me/likes", {"Authorization": "Bearer user-1"}))
        body = json_body(response)
        assert response.status == 200
        assert body["path"] == "/me/likes/tracks"
        assert body["authorization"] == "OAuth user-1"
        assert upstream.client_token_calls == 0

    @pytest.mark.asyncio
    async def test_non_bearer_authorization_is_rejected(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/me", {"Authorization": "Basic abc"}))
        assert response.status == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path,upstream_method,upstream_path", [
        ("POST", "/tracks/10/like", "POST", "/likes/tracks/10"),
        ("DELETE", "/tracks/10/like", "DELETE", "/likes/tracks/10"),
        ("POST", "/tracks/10/repost", "POST", "/reposts/tracks/10"),
        ("DELETE", "/playlists/4/like", "DELETE", "/likes/playlists/4"),
        ("POST", "/playlists/4/repost", "POST", "/reposts/playlists/4"),
        ("POST", "/me/follow/77", "PUT", "/me/followings/77"),
        ("DELETE", "/me/follow/77", "DELETE", "/me/followings/77"),
    ])
    async def test_mutations(self, dispatcher, upstream, method, path, upstream_method, upstream_path):
        unauthenticated = await dispatcher.dispatch(request(method, path))
        assert unauthenticated.status == 401

        response = await dispatcher.dispatch(request(method, path, {"Authorization": "Bearer user-1"}))
        assert response.status == 200
        assert json_body(response) == {"success": True}
        sent = upstream.requests_to(upstream_path)[-1]
        assert sent.method == upstream_method
        assert sent.headers["Authorization"] == "OAuth user-1"

    @pytest.mark.asyncio
    async def test_get_on_mutation_route_is_404(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/tracks/10/like"))
        assert response.status == 404

    # Policy

    @pytest.mark.asyncio
    async def test_allowlist(self, factory):
        dispatcher = factory(allowlist=["search"])

        forbidden = await dispatcher.dispatch(request("GET", "/tracks/1"))
        assert forbidden.status == 403
        assert json_body(forbidden)["code"] == "FORBIDDEN"

        allowed = await dispatcher.dispatch(request("GET", "/search/tracks?q=x"))
        assert allowed.status == 200

    @pytest.mark.asyncio
    async def test_denylist(self, factory):
        dispatcher = factory(denylist=["me"])
        response = await dispatcher.dispatch(request("GET", "/me", {"Authorization": "Bearer t"}))
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_filter_runs_before_route_match(self, factory):
        dispatcher = factory(allowlist=["search"])
        response = await dispatcher.dispatch(request("GET", "/unknown"))
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_csrf(self, factory):
        dispatcher = factory(csrf_protection=True, cors=CorsConfig(origin="https://app.example"))

        evil = await dispatcher.dispatch(request("POST", "/tracks/10/like", {
            "Origin": "https://evil.example",
            "Authorization": "Bearer user-1",
        }))
        assert evil.status == 403
        assert "Origin" in json_body(evil)["message"]

        good = await dispatcher.dispatch(request("POST", "/tracks/10/like", {
            "Origin": "https://app.example",
            "Authorization": "Bearer user-1",
        }))
        assert good.status == 200

    @pytest.mark.asyncio
    async def test_csrf_checked_before_bearer(self, factory):
        dispatcher = factory(csrf_protection=True)
        response = await dispatcher.dispatch(request("POST", "/tracks/10/like"))
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_cors_headers_on_success_and_error(self, factory):
        dispatcher = factory(cors=CorsConfig(origin=["https://a.example", "https://b.example"]))

        for path in ("/tracks/1", "/unknown"):
            response = await dispatcher.dispatch(request("GET", path))
            assert response.headers["Access-Control-Allow-Origin"] == "https://a.example"
            assert response.headers["Access-Control-Allow-Methods"] == "GET, POST, DELETE, OPTIONS"

    @pytest.mark.asyncio
    async def test_preflight(self, factory):
        dispatcher = factory(cors=CorsConfig(origin="https://app.example"))
        response = await dispatcher.dispatch(request("OPTIONS", "/tracks/10/like"))
        assert response.status == 204
        assert response.render() == b""
        assert response.headers["Access-Control-Allow-Origin"] == "https://app.example"

    @pytest.mark.asyncio
    async def test_cache_headers(self, factory):
        dispatcher = factory(cache_headers={"tracks": "public, max-age=60"})

        track = await dispatcher.dispatch(request("GET", "/tracks/1"))
        assert track.headers["Cache-Control"] == "public, max-age=60"

        logout = await dispatcher.dispatch(request("POST", "/auth/logout", body={}))
        assert logout.status == 200
        assert "Cache-Control" not in logout.headers

        missing = await dispatcher.dispatch(request("GET", "/unknown"))
        assert "Cache-Control" not in missing.headers

    # Telemetry

    @pytest.mark.asyncio
    async def test_telemetry_once_per_request(self, dispatcher, factory):
        await dispatcher.dispatch(request("GET", "/tracks/123"))
        await dispatcher.dispatch(request("GET", "/unknown"))

        ok, missing = factory.telemetry
        assert ok.method == "GET"
        assert ok.route == "/tracks/123"
        assert ok.status == 200
        assert ok.error is None
        assert ok.duration_ms >= 0
        assert missing.status == 404
        assert missing.error is not None

    @pytest.mark.asyncio
    async def test_failing_telemetry_callback_does_not_change_response(self, factory):
        calls = []

        def broken(telemetry):
            calls.append(telemetry)
            raise RuntimeError("sink down")

        dispatcher = factory(on_route_complete=broken)
        response = await dispatcher.dispatch(request("GET", "/tracks/1"))
        assert response.status == 200
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_telemetry_callback(self, factory):
        seen = []

        async def callback(telemetry):
            seen.append(telemetry.status)

        dispatcher = factory(on_route_complete=callback)
        await dispatcher.dispatch(request("GET", "/unknown"))
        assert seen == [404]

    @pytest.mark.asyncio
    async def test_request_metrics(self, dispatcher, factory):
        await dispatcher.dispatch(request("GET", "/tracks/1"))
        await dispatcher.dispatch(request("GET", "/unknown"))

        metrics = factory.metrics
        assert metrics.sample_value(
            "http_requests_total", method="GET", route_prefix="tracks", status_code="200"
        ) == 1
        assert metrics.sample_value("errors_total", code="NOT_FOUND") == 1

    # Auth routes

    @pytest.mark.asyncio
    async def test_login(self, dispatcher, factory):
        response = await dispatcher.dispatch(request("GET", "/auth/login"))
        body = json_body(response)

        assert response.status == 200
        assert set(body) == {"url", "state"}
        assert f"state={body['state']}" in body["url"]
        assert response.headers["Cache-Control"] == "no-store"
        assert "Set-Cookie" not in response.headers
        assert factory.auth_manager.pending_logins == 1

    @pytest.mark.asyncio
    async def test_login_with_session_state(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/auth/login?state=tab-1"))
        assert json_body(response)["state"].startswith("tab-1:")

    @pytest.mark.asyncio
    async def test_auth_routes_require_redirect_uri(self, factory):
        dispatcher = factory(redirect_uri=None)

        for req in (
            request("GET", "/auth/login"),
            request("GET", "/auth/callback?code=c&state=s"),
            request("GET", "/auth/callback"),
            request("POST", "/auth/refresh", body={"refresh_token": "r"}),
        ):
            response = await dispatcher.dispatch(req)
            assert response.status == 500
            assert json_body(response)["code"] == "INTERNAL"

        logout = await dispatcher.dispatch(request("POST", "/auth/logout", body={}))
        assert logout.status == 200

    @pytest.mark.asyncio
    async def test_callback(self, dispatcher, upstream):
        login = json_body(await dispatcher.dispatch(request("GET", "/auth/login")))

        response = await dispatcher.dispatch(request("GET", f"/auth/callback?code=c1&state={login['state']}"))
        body = json_body(response)
        assert response.status == 200
        assert body["access_token"] == "user-access"
        assert body["refresh_token"] == "user-refresh"
        assert upstream.token_forms[-1]["code"] == "c1"

        replay = await dispatcher.dispatch(request("GET", f"/auth/callback?code=c1&state={login['state']}"))
        assert replay.status == 400
        assert json_body(replay)["code"] == "BAD_REQUEST"

    @pytest.mark.asyncio
    async def test_callback_missing_params(self, dispatcher):
        response = await dispatcher.dispatch(request("GET", "/auth/callback?code=c1"))
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_refresh(self, dispatcher):
        response = await dispatcher.dispatch(request("POST", "/auth/refresh", body={"refresh_token": "r1"}))
        assert response.status == 200
        assert json_body(response)["access_token"] == "user-access-2"

        for body in ({}, {"refresh_token": 5}):
            bad = await dispatcher.dispatch(request("POST", "/auth/refresh", body=body))
            assert bad.status == 400

        invalid_json = await dispatcher.dispatch(GatewayRequest.from_url(
            "POST", MOUNT + "/auth/refresh", body=b"{not json",
        ))
        assert invalid_json.status == 400

    @pytest.mark.asyncio
    async def test_logout_is_best_effort(self, dispatcher, upstream):
        upstream.sign_out_status = 500
        response = await dispatcher.dispatch(request("POST", "/auth/logout", body={"access_token": "user-1"}))
        assert response.status == 200
        assert json_body(response) == {"success": True}
        assert len(upstream.requests_to("/sign-out")) == 1

        garbage = await dispatcher.dispatch(GatewayRequest.from_url(
            "POST", MOUNT + "/auth/logout", body=b"garbage",
        ))
        assert garbage.status == 200

    @pytest.mark.asyncio
    async def test_auth_is_exempt_from_csrf(self, factory):
        dispatcher = factory(csrf_protection=True, cors=CorsConfig(origin="https://app.example"))
        response = await dispatcher.dispatch(request("POST", "/auth/logout", body={}))
        assert response.status == 200

    @pytest.mark.asyncio
    async def test_cookie_store_flow_across_instances(self, upstream):
        first = GatewayFactory(upstream)(store=CookiePkceStore("s3cret"))
        second = GatewayFactory(upstream)(store=CookiePkceStore("s3cret"))

        login = await first.dispatch(request("GET", "/auth/login"))
        cookie = login.headers["Set-Cookie"].split(";", 1)[0]
        state = json_body(login)["state"]

        response = await second.dispatch(request(
            "GET", f"/auth/callback?code=c1&state={state}", {"Cookie": cookie},
        ))
        assert response.status == 200
        assert json_body(response)["access_token"] == "user-access"

    @pytest.mark.asyncio
    async def test_cookie_store_rejects_tampered_cookie(self, upstream):
        first = GatewayFactory(upstream)(store=CookiePkceStore("s3cret"))
        second = GatewayFactory(upstream)(store=CookiePkceStore("s3cret"))

        login = await first.dispatch(request("GET", "/auth/login"))
        cookie = login.headers["Set-Cookie"].split(";", 1)[0]
        tampered = cookie[:-1] + ("A" if cookie[-1] != "A" else "B")
        state = json_body(login)["state"]

        response = await second.dispatch(request(
            "GET", f"/auth/callback?code=c1&state={state}", {"Cookie": tampered},
        ))
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_upstream_exchange_failure_consumes_state(self, dispatcher, upstream):
        login = json_body(await dispatcher.dispatch(request("GET", "/auth/login")))
        upstream.token_status = 401

        failed = await dispatcher.dispatch(request("GET", f"/auth/callback?code=bad&state={login['state']}"))
        assert failed.status == 401

        upstream.token_status = 200
        retry = await dispatcher.dispatch(request("GET", f"/auth/callback?code=good&state={login['state']}"))
        assert retry.status == 400
