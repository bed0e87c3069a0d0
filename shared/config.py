"""
Shared configuration management for the SoundCloud Access Gateway.
"""

from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Gateway settings loaded from ``SC_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="SC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # OAuth client registration
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    redirect_uri: Optional[str] = Field(default=None)

    # PKCE verifier storage
    pkce_secret: Optional[str] = Field(default=None)
    pkce_ttl_ms: int = Field(default=600_000)
    pkce_cookie_name: str = Field(default="sc_pkce")

    # Upstream endpoints
    api_base_url: str = Field(default="https://api.soundcloud.com")
    auth_base_url: str = Field(default="https://secure.soundcloud.com")
    http_timeout: float = Field(default=10.0)

    # Routing policy
    mount_prefix: str = Field(default="/api/soundcloud")
    allowlist: Optional[List[str]] = Field(default=None)
    denylist: Optional[List[str]] = Field(default=None)
    cache_headers: Dict[str, str] = Field(default_factory=dict)
    cors_origin: Optional[List[str]] = Field(default=None)
    cors_methods: Optional[List[str]] = Field(default=None)
    csrf_protection: bool = Field(default=False)

    @property
    def is_production(self) -> bool:
        return self.env == "production"


def get_settings(**overrides) -> GatewaySettings:
    """Build settings from the environment, applying explicit overrides."""
    return GatewaySettings(**overrides)
