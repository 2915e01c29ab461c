"""
Standard discovery for any website.

Tries the URL itself as a feed, then `<link rel="alternate">` tags in the page, then common
feed URL conventions.
"""

from urllib.parse import urlsplit, urlunsplit

from lxml import etree, html
from opentelemetry import trace
from requests.exceptions import RequestException
from structlog import get_logger

from ..feed import DiscoveredFeed
from ..fetch import HTML_ACCEPT, fetch
from ._base import DiscoveryContext, DiscoveryService

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

FEED_LINK_TYPES = frozenset({
    "application/rss+xml",
    "application/atom+xml",
    "application/feed+json",
})
""" Link types that always denote a feed. """

JSON_LINK_TYPE = "application/json"
""" Only a feed when the link is `rel="alternate"`. """

FEED_EXTENSIONS = (".rss", ".atom", ".xml")

COMMON_FEED_PATHS = (
    "/feed",
    "/rss",
    "/atom",
    "/atom.xml",
    "/feed.xml",
    "/rss.xml",
    "/index.xml",
    "/feeds/posts/default",
    "/feeds/all.atom",
    "/feed/atom/",
    "/blog/feed",
    "/blog/rss",
    "/blog/rss.xml",
    "/blog/feed.xml",
    "/blog/atom.xml",
)
""" Feed paths relative to the site root. """

RELATIVE_FEED_PATHS = (
    "feed",
    "rss",
    "atom",
    "atom.xml",
    "feed.xml",
    "rss.xml",
    "index.xml",
)
""" Feed paths relative to the input URL's path, e.g. `/blog/` -> `/blog/rss.xml`. """


def extract_feed_links(document: bytes, base_url: str) -> list[str]:
    """
    Extract absolute feed URLs from `<link>` tags of an HTML document.

    :param document: HTML document
    :param base_url: URL the document was fetched from, `<base href>` takes precedence
    :return: Feed URLs in document order
    """
    try:
        tree = html.document_fromstring(document)
    except (etree.ParserError, ValueError) as e:
        logger.debug("Failed to parse HTML", url=base_url, error=str(e))
        return []

    tree.make_links_absolute(base_url, resolve_base_href=True, handle_failures="discard")

    links = []
    for link in tree.iter("link"):
        link_type = (link.get("type") or "").split(";")[0].strip().lower()
        rels = (link.get("rel") or "").lower().split()
        href = (link.get("href") or "").strip()
        if not href:
            continue

        if link_type in FEED_LINK_TYPES or (link_type == JSON_LINK_TYPE and "alternate" in rels):
            links.append(href)

    return links


def convention_candidates(url: str) -> list[str]:
    """
    Candidate feed URLs from common conventions for the given page URL.
    """
    parts = urlsplit(url)
    base_url = urlunsplit((parts.scheme, parts.netloc, "", "", ""))
    path = parts.path or "/"

    candidates = []

    # Mastodon style `@user.rss`
    if path != "/" and not path.endswith(FEED_EXTENSIONS):
        trimmed = path.rstrip("/")
        candidates.extend(f"{base_url}{trimmed}{ext}" for ext in FEED_EXTENSIONS)

    candidates.extend(f"{base_url}{feed_path}" for feed_path in COMMON_FEED_PATHS)

    if path != "/":
        directory = path if path.endswith("/") else f"{path}/"
        candidates.extend(f"{base_url}{directory}{feed_path}" for feed_path in RELATIVE_FEED_PATHS)

    return candidates


class StandardDiscoveryService(DiscoveryService):
    """
    Discover feeds from any website using standard conventions.

    This is the fallback service, it runs after the domain specific services.
    """

    priority = 100

    def can_handle(self, url: str) -> bool:
        parts = urlsplit(url)
        return parts.scheme in ("http", "https") and bool(parts.netloc)

    def discover(self, url: str, context: DiscoveryContext) -> list[DiscoveredFeed]:
        with tracer.start_as_current_span("feed.discovery.standard") as span:
            span.set_attribute("url", url)

            # Many "website" URLs are feeds already
            if feed := context.validate_feed(url):
                return [feed]

            links = self._page_links(url, context)
            span.set_attribute("html_links", len(links))

            # Advertised links go first, so they win over conventions redirecting to the same feed
            feeds = context.validate_feed.validate_many(links)
            feeds += context.validate_feed.validate_many(convention_candidates(url))

            span.set_attribute("feeds_found", len(feeds))
            return feeds

    def _page_links(self, url: str, context: DiscoveryContext) -> list[str]:
        try:
            response = fetch(context.session, url, accept=HTML_ACCEPT)
        except RequestException as e:
            logger.debug("Failed to fetch page for feed links", url=url, error=str(e))
            return []

        links = extract_feed_links(response.content, response.url)
        logger.debug("Found feed links in page", url=url, links=links)
        return links
