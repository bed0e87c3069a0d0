"""
Authentication helpers for the Access Gateway service.
"""

from .manager import AuthManager, LoginResult, UserToken
from .stores import CookiePkceStore, MemoryPkceStore, PkceStore

__all__ = [
    "AuthManager",
    "CookiePkceStore",
    "LoginResult",
    "MemoryPkceStore",
    "PkceStore",
    "UserToken",
]
