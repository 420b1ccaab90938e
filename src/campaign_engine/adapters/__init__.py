"""Adapters for external services."""

from campaign_engine.adapters.ad_platform.base import AdPlatformClient

__all__ = [
    "AdPlatformClient",
]
