from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterable, Optional, Protocol

import requests

from ..feed import DiscoveredFeed


class FeedValidator(Protocol):
    """
    Feed validator bound to the deduplication sets of one discovery request.
    """

    def __call__(self, feed_url: str) -> Optional[DiscoveredFeed]:
        """Validate a single candidate, None if it's not a new feed"""
        ...

    def validate_many(self, feed_urls: Iterable[str]) -> list[DiscoveredFeed]:
        """Validate candidates concurrently, earlier candidates win duplicates"""
        ...


@dataclass
class DiscoveryContext:
    """
    State shared by the discovery services during a single discovery request.

    Created by the registry for every call and never reused.
    """
    seen_urls: set[str]
    "Normalized URLs already discovered or being discovered."
    seen_feed_ids: set[str]
    "Atom feed ids already discovered."
    validate_feed: FeedValidator
    "Shared feed validator bound to the sets above."
    session: requests.Session
    lock: Lock = field(default_factory=Lock)


class DiscoveryService(ABC):
    """Base class for discovering feeds from a class of URLs"""

    priority: int = 50
    "Execution priority, lower runs first."

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def can_handle(self, url: str) -> bool:
        """Check, without any I/O, if this service applies to the URL"""

    @abstractmethod
    def discover(self, url: str, context: DiscoveryContext) -> list[DiscoveredFeed]:
        """Discover feeds from the URL, or return an empty list"""

    def __repr__(self) -> str:
        return f"{self.name}(priority={self.priority})"
