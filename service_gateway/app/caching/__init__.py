"""
Gateway caching package.

Holds the service-level token cache. Response caching is left to HTTP
caches through the Cache-Control policy.
"""

from .token_cache import ServiceToken, ServiceTokenCache

__all__ = ["ServiceToken", "ServiceTokenCache"]
