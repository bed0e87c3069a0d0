"""
OAuth 2.1 authorization code + PKCE flow manager for Gateway.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from shared.errors import InvalidOrExpiredStateError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .pkce import (
    build_authorization_url,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .stores import DEFAULT_PKCE_TTL_MS, MemoryPkceStore, PkceStore


class UserToken(BaseModel):
    """Tokens granted to an end user; extra upstream fields are kept."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    url: str
    state: str


class AuthManager:
    """Drives the login -> callback -> refresh lifecycle.

    The manager only grants tokens. Each ``state`` is single use: it is
    removed from the store before the code exchange is attempted, so a
    failed exchange cannot be replayed and the user must log in again.
    """

    def __init__(
        self,
        client: Any,
        store: Optional[PkceStore] = None,
        ttl_ms: int = DEFAULT_PKCE_TTL_MS,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.store = store if store is not None else MemoryPkceStore()
        self.ttl_ms = ttl_ms
        self.metrics = metrics
        self.logger = get_logger("gateway.auth_manager")

    def init_login(self, session_id: Optional[str] = None) -> LoginResult:
        verifier = generate_code_verifier()
        state = generate_state(session_id)
        self.store.set(state, verifier, self.ttl_ms)

        url = build_authorization_url(
            self.client.authorize_endpoint,
            self.client.credentials.client_id,
            self.client.credentials.redirect_uri or "",
            state=state,
            code_challenge=generate_code_challenge(verifier),
        )
        self._record("login_started")
        return LoginResult(url=url, state=state)

    async def exchange_code(self, code: str, state: str) -> UserToken:
        verifier = self.store.get(state)
        if verifier is None:
            self._record("invalid_state")
            self.logger.warning("Rejected OAuth callback with unknown or expired state")
            raise InvalidOrExpiredStateError()

        self.store.delete(state)
        payload = await self.client.exchange_authorization_code(code, verifier)
        self._record("code_exchanged")
        return UserToken.model_validate(payload)

    async def refresh_token(self, refresh_token: str) -> UserToken:
        payload = await self.client.refresh_user_token(refresh_token)
        self._record("token_refreshed")
        return UserToken.model_validate(payload)

    async def sign_out(self, access_token: str) -> None:
        await self.client.sign_out(access_token)
        self._record("signed_out")

    @property
    def pending_logins(self) -> Optional[int]:
        """Live verifier entries, when the store can count them."""
        return getattr(self.store, "size", None)

    def _record(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("pkce_events_total", event=event)
