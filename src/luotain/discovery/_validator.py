"""
Shared feed validation for discovery services.

Fetches a candidate URL, parses it as a feed, deduplicates it against the discovery context
and extracts the metadata for a :class:`~luotain.feed.DiscoveredFeed`.

Validation is split in two steps: fetching and parsing runs concurrently, accepting a parsed
feed into the deduplication sets happens under the lock. :meth:`validate_many` accepts in
candidate order, so the earliest of several candidates for the same feed is the one returned.
"""
from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from dataclasses import dataclass
from io import BytesIO
from threading import Lock
from typing import Iterable, Optional

import feedparser
import requests
from opentelemetry import trace
from requests.exceptions import RequestException
from structlog import get_logger

from ..feed import DEFAULT_FEED_TITLE, DiscoveredFeed, FeedType
from ..fetch import FEED_ACCEPT, FetchedResponse, create_session, fetch
from ..settings import get_settings
from ..utils import normalize_feed_url, strip_html
from ._base import FeedValidator
from ._errors import FeedValidationError

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

RDF_VERSIONS = frozenset({"rss090", "rss10"})
JSON_FEED_CONTENT_TYPE = "application/feed+json"


def feed_type_from_version(version: str | None) -> Optional[FeedType]:
    """
    Map a :mod:`feedparser` version string to a feed type.

    :return: Feed type, or None if the document is not a supported feed
    """
    version = version or ""
    if version.startswith("atom"):
        return FeedType.ATOM
    if version in RDF_VERSIONS:
        return FeedType.RDF
    if version.startswith("rss"):
        return FeedType.RSS
    if version.startswith("json"):
        return FeedType.JSON
    return None


def parse_feed(response: FetchedResponse) -> feedparser.FeedParserDict:
    """
    Parse a fetched document with feedparser.

    JSON Feed is only recognized by feedparser from the content type, so bodies that look like
    JSON are labelled as such.
    """
    content_type = response.content_type or "application/xml"
    if response.content.lstrip(b"\xef\xbb\xbf \t\r\n")[:1] == b"{":
        content_type = JSON_FEED_CONTENT_TYPE

    return feedparser.parse(
        BytesIO(response.content),
        response_headers={
            "content-type": content_type,
            "content-location": response.url,
        },
    )


@dataclass(frozen=True)
class _ParsedCandidate:
    """Fetched and parsed feed, not yet checked against the deduplication sets."""
    input_key: str
    final_key: str
    final_url: str
    feed: DiscoveredFeed
    feed_id: Optional[str]


class _BoundFeedValidator:
    """
    Feed validator bound to the deduplication sets of one discovery request.

    Reads and updates of the sets happen under `lock`, so candidates can be validated from
    several threads.
    """

    def __init__(
        self,
        seen_urls: set[str],
        seen_feed_ids: set[str],
        session: requests.Session,
        lock: Lock,
    ):
        self.seen_urls = seen_urls
        self.seen_feed_ids = seen_feed_ids
        self.session = session
        self.lock = lock
        self._in_flight: set[str] = set()

    def __call__(self, feed_url: str) -> Optional[DiscoveredFeed]:
        try:
            return self.validate(feed_url)
        except FeedValidationError as e:
            logger.debug("Feed candidate rejected", url=e.url, reason=e.reason)
            return None

    def validate(self, feed_url: str) -> DiscoveredFeed:
        """
        Validate a candidate feed URL.

        :raises FeedValidationError: If the URL is not a feed, or is a duplicate.
        """
        return self._accept(self._prepare(feed_url))

    def validate_many(self, feed_urls: Iterable[str]) -> list[DiscoveredFeed]:
        """
        Validate candidate feed URLs concurrently.

        Candidates are fetched in parallel, but accepted in the given order: when several
        candidates turn out to be the same feed, the earliest one is returned regardless of
        which response arrived first.

        :return: New feeds in candidate order
        """
        # One candidate per normalized URL, the first spelling wins
        candidates: dict[str, str] = {}
        for feed_url in feed_urls:
            candidates.setdefault(normalize_feed_url(feed_url), feed_url)
        if not candidates:
            return []

        # Workers run in copies of this context to see the active settings and span
        max_workers = min(get_settings().MAX_WORKERS, len(candidates))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(copy_context().run, self._try_prepare, feed_url)
                for feed_url in candidates.values()
            ]
            prepared = [future.result() for future in futures]

        feeds = []
        for candidate in prepared:
            if candidate is None:
                continue
            try:
                feeds.append(self._accept(candidate))
            except FeedValidationError as e:
                logger.debug("Feed candidate rejected", url=e.url, reason=e.reason)
        return feeds

    def _try_prepare(self, feed_url: str) -> Optional[_ParsedCandidate]:
        try:
            return self._prepare(feed_url)
        except FeedValidationError as e:
            logger.debug("Feed candidate rejected", url=e.url, reason=e.reason)
            return None

    def _prepare(self, feed_url: str) -> _ParsedCandidate:
        input_key = normalize_feed_url(feed_url)

        with self.lock:
            if input_key in self.seen_urls:
                raise FeedValidationError(feed_url, "already discovered")
            if input_key in self._in_flight:
                raise FeedValidationError(feed_url, "already being validated")
            self._in_flight.add(input_key)

        try:
            with tracer.start_as_current_span("feed.validate", kind=trace.SpanKind.CLIENT) as span:
                span.set_attribute("feed.url", feed_url)
                return self._fetch_and_parse(feed_url, input_key)
        finally:
            with self.lock:
                self._in_flight.discard(input_key)

    def _fetch_and_parse(self, feed_url: str, input_key: str) -> _ParsedCandidate:
        try:
            response = fetch(self.session, feed_url, accept=FEED_ACCEPT)
        except RequestException as e:
            raise FeedValidationError(feed_url, f"request failed: {e}") from e

        final_key = normalize_feed_url(response.url)
        with self.lock:
            if final_key in self.seen_urls:
                raise FeedValidationError(feed_url, f"redirects to already discovered {response.url}")

        try:
            parsed = parse_feed(response)
        except Exception as e:
            self._mark_seen(input_key, final_key)
            raise FeedValidationError(feed_url, f"parser failed: {e}") from e

        feed_type = feed_type_from_version(parsed.get("version"))
        if feed_type is None:
            # Later candidates ending up here are not feeds either
            self._mark_seen(input_key, final_key)
            raise FeedValidationError(feed_url, "not a feed")

        feed = parsed.get("feed", {})

        # Only Atom has a reliable feed level identifier
        feed_id = None
        if feed_type is FeedType.ATOM:
            feed_id = str(feed.get("id") or "").strip() or None

        title = str(feed.get("title") or "").strip() or DEFAULT_FEED_TITLE

        description = None
        if raw_description := feed.get("description") or feed.get("subtitle"):
            description = strip_html(str(raw_description)) or None

        return _ParsedCandidate(
            input_key=input_key,
            final_key=final_key,
            final_url=response.url,
            feed=DiscoveredFeed(
                url=feed_url,
                title=title,
                type=feed_type,
                description=description,
            ),
            feed_id=feed_id,
        )

    def _accept(self, candidate: _ParsedCandidate) -> DiscoveredFeed:
        feed_url = candidate.feed.url

        with self.lock:
            if candidate.input_key in self.seen_urls:
                raise FeedValidationError(feed_url, "already discovered")
            if candidate.final_key in self.seen_urls:
                raise FeedValidationError(feed_url, f"redirects to already discovered {candidate.final_url}")
            self.seen_urls.add(candidate.input_key)
            self.seen_urls.add(candidate.final_key)

            if candidate.feed_id is not None:
                if candidate.feed_id in self.seen_feed_ids:
                    raise FeedValidationError(feed_url, f"feed id {candidate.feed_id!r} already discovered")
                self.seen_feed_ids.add(candidate.feed_id)

        logger.debug("Validated feed", url=feed_url, final_url=candidate.final_url, type=candidate.feed.type.value)
        return candidate.feed

    def _mark_seen(self, *keys: str):
        with self.lock:
            self.seen_urls.update(keys)


def create_feed_validator(
    seen_urls: set[str],
    seen_feed_ids: set[str],
    session: Optional[requests.Session] = None,
    lock: Optional[Lock] = None,
) -> FeedValidator:
    """
    Create a feed validator bound to deduplication sets.

    The returned callable returns the discovered feed, or None if the URL is unreachable, not a
    feed, or a duplicate of something already in the sets. It never raises for those.

    :param seen_urls: Normalized URLs already discovered
    :param seen_feed_ids: Atom feed ids already discovered
    :param session: Session for requests, a new one is created if not given
    :param lock: Lock guarding the sets
    """
    return _BoundFeedValidator(
        seen_urls,
        seen_feed_ids,
        session if session is not None else create_session(),
        lock if lock is not None else Lock(),
    )
