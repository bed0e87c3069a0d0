"""
PKCE (RFC 7636) primitives and authorize URL construction.
"""

import base64
import hashlib
import secrets
import uuid
from typing import Optional
from urllib.parse import urlencode


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def generate_code_verifier() -> str:
    """Random verifier of 86 URL-safe characters (RFC 7636 allows 43-128)."""
    return secrets.token_urlsafe(64)


def generate_code_challenge(verifier: str) -> str:
    """S256 transform: base64url(sha256(verifier)) without padding."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state(session_id: Optional[str] = None) -> str:
    """Random CSRF state, optionally scoped to a caller session."""
    state = str(uuid.uuid4())
    if session_id:
        return f"{session_id}:{state}"
    return state


def build_authorization_url(
    authorize_endpoint: str,
    client_id: str,
    redirect_uri: str,
    *,
    state: str,
    code_challenge: str,
) -> str:
    query = urlencode({
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    })
    return f"{authorize_endpoint}?{query}"
