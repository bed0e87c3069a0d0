"""
API Gateway Service package for the SoundCloud Access Gateway.

The gateway fronts the SoundCloud API for browser clients, enforcing:
- OAuth 2.1 authorization code + PKCE login, callback, refresh and logout
- Route allow/deny lists, CORS, Origin-based CSRF checks and Cache-Control
- A single service token shared by all public resource requests

Structure:
- app.main: FastAPI app and catch-all route wiring.
- app.wsgi: WSGI binding for synchronous hosts.
- app.adapters: HTTP client for the upstream API.
- app.auth: PKCE primitives, verifier stores and the auth manager.
- app.caching: Service token cache.
- app.domain: Models, policy, route table and dispatcher.
"""
