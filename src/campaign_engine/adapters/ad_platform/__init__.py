"""Ad platform clients."""

from campaign_engine.adapters.ad_platform.base import (
    AccountInfo,
    AdPlatformClient,
    PlatformResponse,
)
from campaign_engine.adapters.ad_platform.meta import MetaGraphClient
from campaign_engine.adapters.ad_platform.stub import StubAdPlatformClient
from campaign_engine.config import settings


def get_ad_platform_client(provider: str | None = None) -> AdPlatformClient:
    """Build the ad platform client selected by settings."""
    provider = provider or settings.ad_platform_provider
    if provider == "meta":
        return MetaGraphClient()
    if provider == "stub":
        return StubAdPlatformClient()
    raise ValueError(f"Unknown ad platform provider: {provider}")


__all__ = [
    # Base
    "AccountInfo",
    "AdPlatformClient",
    "PlatformResponse",
    # Implementations
    "MetaGraphClient",
    "StubAdPlatformClient",
    "get_ad_platform_client",
]
