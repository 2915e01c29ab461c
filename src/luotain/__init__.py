"""
Feed discovery for RSS, Atom, RDF and JSON feeds.
"""

from .discovery import NoFeedsFoundError, discover_feeds
from .feed import DiscoveredFeed, FeedType

__all__ = [
    "DiscoveredFeed",
    "FeedType",
    "NoFeedsFoundError",
    "discover_feeds",
]
