"""Apple Podcasts discoverer using the iTunes lookup API."""

import re
from typing import Optional
from urllib.parse import urlencode, urlsplit

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field
from requests.exceptions import RequestException
from structlog import get_logger

from ..feed import DiscoveredFeed
from ..fetch import JSON_ACCEPT, fetch
from ..settings import get_settings
from ..utils import is_subdomain_of, strip_html
from ._base import DiscoveryContext, DiscoveryService

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

APPLE_DOMAIN = "apple.com"

PODCAST_ID_PATTERN = re.compile(r"/id(\d+)(?:\?|$)")
""" `/id1234567890` at the end of the path, optionally followed by a query string. """

ARTWORK_FIELDS = ("artworkUrl600", "artworkUrl100", "artworkUrl60", "artworkUrl30")
""" Artwork fields from the largest to the smallest. """


class ITunesPodcast(BaseModel):
    """
    Single result of the iTunes lookup API. Only the fields discovery needs.
    """
    model_config = ConfigDict(extra="ignore")

    wrapper_type: Optional[str] = Field(None, alias="wrapperType")
    kind: Optional[str] = None
    collection_id: Optional[int] = Field(None, alias="collectionId")
    collection_name: Optional[str] = Field(None, alias="collectionName")
    feed_url: Optional[str] = Field(None, alias="feedUrl")
    artwork_url_600: Optional[str] = Field(None, alias="artworkUrl600")
    artwork_url_100: Optional[str] = Field(None, alias="artworkUrl100")
    artwork_url_60: Optional[str] = Field(None, alias="artworkUrl60")
    artwork_url_30: Optional[str] = Field(None, alias="artworkUrl30")
    long_description: Optional[str] = Field(None, alias="longDescription")
    short_description: Optional[str] = Field(None, alias="shortDescription")

    @property
    def is_podcast(self) -> bool:
        return self.wrapper_type == "track" and self.kind == "podcast"

    @property
    def artwork_url(self) -> Optional[str]:
        """Largest available artwork."""
        return (
            self.artwork_url_600
            or self.artwork_url_100
            or self.artwork_url_60
            or self.artwork_url_30
        )


class ITunesLookupResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result_count: int = Field(0, alias="resultCount")
    results: list[ITunesPodcast] = Field(default_factory=list)


def extract_podcast_id(url: str) -> Optional[str]:
    """
    Extract the podcast id from an Apple Podcasts URL.

    Supports URLs like:
    - https://podcasts.apple.com/us/podcast/name/id1234567890
    - https://itunes.apple.com/us/podcast/name/id1234567890?mt=2
    """
    match = PODCAST_ID_PATTERN.search(url)
    return match.group(1) if match else None


class AppleDiscoveryService(DiscoveryService):
    """
    Discover podcast feeds from Apple Podcasts URLs.

    The podcast id from the URL is looked up from the iTunes API, which knows the RSS feed URL.
    Metadata from the API is richer than what most podcast feeds declare, so it overrides the
    title and description, and provides the artwork.
    """

    priority = 10

    def can_handle(self, url: str) -> bool:
        hostname = urlsplit(url).hostname
        return bool(hostname) and is_subdomain_of(hostname, APPLE_DOMAIN)

    def discover(self, url: str, context: DiscoveryContext) -> list[DiscoveredFeed]:
        with tracer.start_as_current_span("feed.discovery.apple") as span:
            span.set_attribute("input_url", url)
            try:
                return self._discover(url, context)
            except Exception:
                logger.exception("Apple Podcast discovery failed", url=url)
                return []

    def _discover(self, url: str, context: DiscoveryContext) -> list[DiscoveredFeed]:
        podcast_id = extract_podcast_id(url)
        if not podcast_id:
            # Not a podcast page, let standard discovery handle it
            logger.debug("No podcast id in URL", url=url)
            return []

        podcast = self._lookup(podcast_id, context)
        if podcast is None:
            return []

        feed = context.validate_feed(podcast.feed_url)
        if feed is None:
            logger.warning(
                "Feed validation failed for iTunes feed",
                podcast_id=podcast_id,
                podcast_name=podcast.collection_name,
                feed_url=podcast.feed_url,
            )
            return []

        description = strip_html(podcast.long_description or podcast.short_description) or feed.description
        return [
            feed.model_copy(update={
                "title": podcast.collection_name or feed.title,
                "description": description,
                "icon_url": podcast.artwork_url or feed.icon_url,
            })
        ]

    def _lookup(self, podcast_id: str, context: DiscoveryContext) -> Optional[ITunesPodcast]:
        """
        Look up a podcast from the iTunes API.

        :return: Podcast with a feed URL, or None
        """
        settings = get_settings()
        api_url = f"{settings.ITUNES_LOOKUP_URL}?{urlencode({'id': podcast_id, 'entity': 'podcast'})}"

        logger.debug("Looking up podcast from iTunes", podcast_id=podcast_id, api_url=api_url)
        try:
            response = fetch(context.session, api_url, accept=JSON_ACCEPT, timeout=settings.REQUEST_TIMEOUT)
        except RequestException as e:
            logger.warning("iTunes lookup failed", podcast_id=podcast_id, error=str(e))
            return None

        data = ITunesLookupResponse.model_validate_json(response.content)

        if data.result_count == 0 or not data.results:
            logger.debug("iTunes returned no results", podcast_id=podcast_id)
            return None

        podcast = data.results[0]
        if not podcast.is_podcast:
            logger.debug(
                "iTunes result is not a podcast",
                podcast_id=podcast_id,
                wrapper_type=podcast.wrapper_type,
                kind=podcast.kind,
            )
            return None

        if not podcast.feed_url:
            logger.warning("iTunes result missing feedUrl", podcast_id=podcast_id, podcast_name=podcast.collection_name)
            return None

        return podcast
