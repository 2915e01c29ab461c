"""
Discovery module for finding feeds from arbitrary URLs.

A URL can be a website, an Apple Podcasts page, a Reddit community, or a feed itself. Discovery
services are tried in priority order, domain specific services first, and the first one that finds
feeds wins.

Usage:
    from luotain.discovery import discover_feeds

    feeds = discover_feeds("https://example.com/")

Custom services can be added to the registry:
    from luotain.discovery import DiscoveryService, registry

    registry.register(MyDiscoveryService())
"""

from ..feed import DiscoveredFeed
from ._base import DiscoveryContext, DiscoveryService, FeedValidator
from ._errors import FeedDiscoveryError, FeedValidationError, NoFeedsFoundError
from ._registry import DiscoveryRegistry, create_default_registry, registry
from ._validator import create_feed_validator
from .apple import AppleDiscoveryService
from .reddit import RedditDiscoveryService
from .standard import StandardDiscoveryService


def discover_feeds(url: str) -> list[DiscoveredFeed]:
    """
    Discover feeds from a URL.

    :param url: Website, podcast, community or feed URL
    :return: Discovered feeds, never empty
    :raises NoFeedsFoundError: If no feeds were found
    """
    return registry.discover(url)


__all__ = [
    # Base classes
    "DiscoveryService",
    "DiscoveryContext",
    "DiscoveryRegistry",
    "FeedValidator",

    # Concrete services
    "AppleDiscoveryService",
    "RedditDiscoveryService",
    "StandardDiscoveryService",

    # Registry instance
    "registry",
    "create_default_registry",
    "create_feed_validator",
    "discover_feeds",

    # Errors
    "FeedDiscoveryError",
    "FeedValidationError",
    "NoFeedsFoundError",
]
