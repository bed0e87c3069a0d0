"""
Adapters package for the Gateway Service.

Contains the HTTP client wrapper for the upstream SoundCloud API. The
adapter encapsulates:

- Base URLs and request shapes
- Upstream request telemetry
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .soundcloud_client import SoundCloudClient, SoundCloudCredentials

__all__ = [
    "SoundCloudClient",
    "SoundCloudCredentials",
]
