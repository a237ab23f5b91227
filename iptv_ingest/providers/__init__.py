"""Upstream IPTV provider implementations."""

from ..config import Settings
from ..models.provider import M3U, XTREAM, ProviderConfig
from ..services.fetcher import Fetcher
from .base import BaseIPTVProvider
from .m3u import M3UProvider, parse_m3u
from .xtream import XtreamProvider


def create_provider(config: ProviderConfig, fetcher: Fetcher, settings: Settings) -> BaseIPTVProvider:
    """Instantiate the implementation for a provider document's type."""
    if config.type == XTREAM:
        return XtreamProvider(config, fetcher, settings.xtream_concurrency)
    if config.type == M3U:
        return M3UProvider(config, fetcher, settings.m3u_concurrency)
    raise ValueError(f"Unsupported provider type: {config.type}")


__all__ = [
    "BaseIPTVProvider",
    "M3UProvider",
    "XtreamProvider",
    "create_provider",
    "parse_m3u",
]
