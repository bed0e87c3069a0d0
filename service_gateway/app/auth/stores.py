"""
PKCE verifier stores.

``MemoryPkceStore`` keeps verifiers in process memory and suits a single
long-lived instance. ``CookiePkceStore`` additionally signs the verifier into
an HTTP cookie so the callback can be served by any instance, including one
that started after the login request was handled.
"""

import hashlib
import hmac
import json
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from shared.logging import get_logger
from .pkce import base64url_decode, base64url_encode


DEFAULT_PKCE_TTL_MS = 600_000
DEFAULT_COOKIE_NAME = "sc_pkce"

_PAYLOAD_FIELDS = frozenset({"state", "verifier", "expiresAt"})


def _now_ms() -> int:
    return int(time.time() * 1000)


@runtime_checkable
class PkceStore(Protocol):
    """Storage for ``state -> verifier`` mappings with per-entry TTL."""

    def set(self, state: str, verifier: str, ttl_ms: int) -> None:
        ...

    def get(self, state: str) -> Optional[str]:
        ...

    def delete(self, state: str) -> None:
        ...


@dataclass(frozen=True)
class PkceEntry:
    state: str
    verifier: str
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at


class MemoryPkceStore:
    """In-process verifier store with lazy eviction.

    ``set`` sweeps every expired entry before inserting, so the map never
    grows past the number of logins started within one TTL window.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._entries: Dict[str, PkceEntry] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("gateway.pkce_store")

    def set(self, state: str, verifier: str, ttl_ms: int) -> None:
        with self._lock:
            self._evict_expired()
            self._entries[state] = PkceEntry(state, verifier, self._clock() + ttl_ms)

    def get(self, state: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(state)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[state]
                return None
            return entry.verifier

    def delete(self, state: str) -> None:
        with self._lock:
            self._entries.pop(state, None)

    @property
    def size(self) -> int:
        """Number of live (non-expired) entries."""
        with self._lock:
            self._evict_expired()
            return len(self._entries)

    def _get_entry(self, state: str) -> Optional[PkceEntry]:
        with self._lock:
            entry = self._entries.get(state)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    def _evict_expired(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        expired = [state for state, entry in self._entries.items() if entry.is_expired(now)]
        for state in expired:
            del self._entries[state]
        if expired:
            self.logger.debug("Evicted expired PKCE entries", count=len(expired))


class CookiePkceStore(MemoryPkceStore):
    """Verifier store that round-trips entries through a signed cookie.

    Cookie value format: ``base64url(json payload) + "." + base64url(hmac)``
    where the HMAC-SHA256 is computed over the encoded payload. Any problem
    with a cookie (bad signature, malformed payload, expiry) is reported as
    ``None`` so callers cannot tell tampering apart from a timed-out login.
    """

    def __init__(
        self,
        secret: str,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        clock: Callable[[], int] = _now_ms,
    ):
        if not secret:
            raise ValueError("CookiePkceStore requires a non-empty secret")
        super().__init__(clock=clock)
        self.cookie_name = cookie_name
        self._key = secret.encode("utf-8")
        # state -> expires_at of entries already exchanged; a still-valid cookie
        # for one of these must not load it again.
        self._consumed: Dict[str, int] = {}

    def set(self, state: str, verifier: str, ttl_ms: int) -> None:
        with self._lock:
            self._evict_consumed()
        super().set(state, verifier, ttl_ms)

    def delete(self, state: str) -> None:
        with self._lock:
            self._evict_consumed()
            entry = self._entries.pop(state, None)
            if entry is not None:
                self._consumed[state] = entry.expires_at

    def encode(self, state: str, ttl_ms: int) -> str:
        """Signed cookie value for the entry stored under ``state``."""
        entry = self._get_entry(state)
        if entry is None:
            raise LookupError(f"No PKCE entry for state {state!r}; call init_login() first")

        expires_at = min(entry.expires_at, self._clock() + ttl_ms)
        payload_json = json.dumps(
            {"state": entry.state, "verifier": entry.verifier, "expiresAt": expires_at},
            separators=(",", ":"),
        )
        payload = base64url_encode(payload_json.encode("utf-8"))
        return f"{payload}.{self._sign(payload)}"

    def decode_and_load(self, cookie_value: str) -> Optional[str]:
        """Verify a cookie value and load its entry; ``None`` on any failure."""
        payload, sep, signature = cookie_value.rpartition(".")
        if not sep or not payload or not signature:
            return None

        try:
            if not hmac.compare_digest(self._sign(payload).encode("ascii"), signature.encode("utf-8")):
                return None
            data = json.loads(base64url_decode(payload).decode("utf-8"))
        except (TypeError, ValueError):
            return None

        if not isinstance(data, dict) or set(data) != _PAYLOAD_FIELDS:
            return None
        state = data["state"]
        verifier = data["verifier"]
        expires_at = data["expiresAt"]
        if not isinstance(state, str) or not isinstance(verifier, str):
            return None
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return None

        entry = PkceEntry(state, verifier, expires_at)
        if entry.is_expired(self._clock()):
            return None

        with self._lock:
            if state in self._consumed:
                return None
            self._entries[state] = entry
        return verifier

    def set_cookie_header(self, state: str, ttl_ms: int, secure: bool = True) -> str:
        """``Set-Cookie`` header value carrying the signed verifier."""
        flags = [
            f"{self.cookie_name}={self.encode(state, ttl_ms)}",
            "HttpOnly",
            "Path=/",
            f"Max-Age={ttl_ms // 1000}",
            "SameSite=Lax",
        ]
        if secure:
            flags.append("Secure")
        return "; ".join(flags)

    def clear_cookie_header(self, secure: bool = True) -> str:
        """``Set-Cookie`` header value that removes the verifier cookie."""
        flags = [f"{self.cookie_name}=", "HttpOnly", "Path=/", "Max-Age=0", "SameSite=Lax"]
        if secure:
            flags.append("Secure")
        return "; ".join(flags)

    def load_from_cookie_header(self, cookie_header: Optional[str]) -> Optional[str]:
        """Read this store's cookie out of a raw ``Cookie`` header and load it."""
        raw = parse_cookie_value(cookie_header or "", self.cookie_name)
        if not raw:
            return None
        return self.decode_and_load(raw)

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return base64url_encode(digest)

    def _evict_consumed(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        for state in [state for state, expires_at in self._consumed.items() if now > expires_at]:
            del self._consumed[state]


def parse_cookie_value(header: str, name: str) -> Optional[str]:
    for part in header.split(";"):
        key, sep, value = part.partition("=")
        if sep and key.strip() == name:
            return value.strip()
    return None
