from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_FEED_TITLE = "Untitled Feed"


class FeedType(str, Enum):
    """
    Syndication format of a discovered feed.
    """
    RSS = "rss"
    ATOM = "atom"
    RDF = "rdf"
    "RSS 1.0 and 0.90, which are RDF documents."
    JSON = "json"
    "https://www.jsonfeed.org/"


class DiscoveredFeed(BaseModel):
    """
    Feed found during discovery.

    `url` is the address the feed was requested from, before any redirects. That's the address
    a user recognizes and resubscribes to; CDN and tracking redirect targets are not stored.
    """
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    url: str
    title: str = Field(DEFAULT_FEED_TITLE)
    type: FeedType
    description: Optional[str] = Field(None)
    icon_url: Optional[str] = Field(None, description="Artwork or community icon, when the source has one.")

    def __str__(self) -> str:
        return f"{self.title} ({self.type.value}): {self.url}"
