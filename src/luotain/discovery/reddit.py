"""
Reddit discoverer for subreddit and user feeds.
"""

import re
from typing import Optional
from urllib.parse import urlsplit

from opentelemetry import trace
from requests.exceptions import RequestException
from structlog import get_logger

from ..feed import DiscoveredFeed
from ..fetch import JSON_ACCEPT, fetch
from ..settings import get_settings
from ..utils import is_subdomain_of
from ._base import DiscoveryContext, DiscoveryService

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

REDDIT_DOMAIN = "reddit.com"

SUBREDDIT_PATTERN = re.compile(r"^/r/([\w-]{3,21})(?:/|$)")
USER_PATTERN = re.compile(r"^/(?:user|u)/([\w-]{3,20})(?:/|$)")


class RedditDiscoveryService(DiscoveryService):
    """
    Discover feeds from Reddit community and user pages.

    The feed URL is derived from the path, `/r/<name>/.rss` or `/user/<name>/.rss`, keeping the
    host the user gave (`old.reddit.com`, `www.reddit.com`, ...). Community icons are looked up
    from the subreddit's `about.json`.
    """

    priority = 10

    def can_handle(self, url: str) -> bool:
        parts = urlsplit(url)
        if not parts.hostname or not is_subdomain_of(parts.hostname, REDDIT_DOMAIN):
            return False
        return bool(SUBREDDIT_PATTERN.match(parts.path) or USER_PATTERN.match(parts.path))

    def discover(self, url: str, context: DiscoveryContext) -> list[DiscoveredFeed]:
        with tracer.start_as_current_span("feed.discovery.reddit") as span:
            span.set_attribute("url", url)
            try:
                return self._discover(url, context, span)
            except Exception:
                logger.exception("Reddit feed discovery failed", url=url)
                return []

    def _discover(self, url: str, context: DiscoveryContext, span: trace.Span) -> list[DiscoveredFeed]:
        parts = urlsplit(url)
        base_url = f"{parts.scheme}://{parts.hostname}"

        icon_url = None
        if match := SUBREDDIT_PATTERN.match(parts.path):
            subreddit = match.group(1)
            feed_url = f"{base_url}/r/{subreddit}/.rss"
            span.set_attribute("feed_type", "subreddit")
            span.set_attribute("subreddit", subreddit)
        elif match := USER_PATTERN.match(parts.path):
            username = match.group(1)
            feed_url = f"{base_url}/user/{username}/.rss"
            subreddit = None
            span.set_attribute("feed_type", "user")
            span.set_attribute("username", username)
        else:
            logger.debug("Not a subreddit or user URL", url=url)
            return []

        feed = context.validate_feed(feed_url)
        if feed is None:
            logger.debug("Reddit feed validation failed", feed_url=feed_url)
            return []

        if subreddit:
            icon_url = self.get_subreddit_icon(subreddit, context)

        return [feed.model_copy(update={"icon_url": icon_url or feed.icon_url})]

    def get_subreddit_icon(self, subreddit: str, context: DiscoveryContext) -> Optional[str]:
        """
        Fetch the subreddit icon from Reddit's about.json.

        `community_icon` is the current icon, `icon_img` the legacy one.

        :return: Icon URL without query string, or None
        """
        settings = get_settings()
        about_url = settings.REDDIT_ABOUT_URL.format(subreddit=subreddit)

        try:
            response = fetch(context.session, about_url, accept=JSON_ACCEPT, timeout=settings.ICON_TIMEOUT)
            data = response.json().get("data") or {}
            icon_url = data.get("community_icon") or data.get("icon_img")
        except (RequestException, ValueError, AttributeError) as e:
            logger.warning("Failed to fetch subreddit icon", subreddit=subreddit, error=str(e))
            return None

        if not icon_url or not isinstance(icon_url, str):
            return None

        # Icons come with signed, HTML-escaped query strings
        icon_url, *_ = icon_url.split("?")
        return icon_url
