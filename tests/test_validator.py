"""
Tests for feed validation and deduplication.
"""
import time
from threading import Lock

import pytest
import requests
import responses

from luotain.discovery import FeedValidationError, create_feed_validator
from luotain.discovery._validator import feed_type_from_version
from luotain.feed import DEFAULT_FEED_TITLE, FeedType
from luotain.fetch import create_session
from luotain.settings import settings_var

from .samples import (
    ATOM_FEED,
    HTML_PAGE,
    JSON_FEED,
    OTHER_ATOM_FEED,
    RDF_FEED,
    RSS_FEED,
    UNTITLED_RSS_FEED,
    add_feed,
    add_redirect,
)


@pytest.fixture
def seen_urls():
    return set()


@pytest.fixture
def seen_feed_ids():
    return set()


@pytest.fixture
def validate(seen_urls, seen_feed_ids):
    return create_feed_validator(seen_urls, seen_feed_ids)


class TestFeedTypeFromVersion:
    """Tests for mapping feedparser versions to feed types."""

    @pytest.mark.parametrize("version, expected", [
        ("rss20", FeedType.RSS),
        ("rss092", FeedType.RSS),
        ("rss091u", FeedType.RSS),
        ("atom10", FeedType.ATOM),
        ("atom03", FeedType.ATOM),
        ("rss10", FeedType.RDF),
        ("rss090", FeedType.RDF),
        ("json11", FeedType.JSON),
        ("json1", FeedType.JSON),
    ])
    def test_known_versions(self, version, expected):
        assert feed_type_from_version(version) is expected

    @pytest.mark.parametrize("version", ["", None, "cdf"])
    def test_unknown_versions(self, version):
        assert feed_type_from_version(version) is None


class TestFeedTypes:
    """Each supported format validates with its type."""

    def test_rss(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml", RSS_FEED)

        feed = validate("https://example.com/feed.xml")

        assert feed is not None
        assert feed.type is FeedType.RSS
        assert feed.title == "Example Blog"
        assert feed.url == "https://example.com/feed.xml"
        assert feed.icon_url is None

    def test_rss_description_is_plain_text(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml", RSS_FEED)

        feed = validate("https://example.com/feed.xml")

        assert "examples" in feed.description
        assert "<b>" not in feed.description

    def test_atom(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/atom.xml", ATOM_FEED, "application/atom+xml")

        feed = validate("https://example.com/atom.xml")

        assert feed.type is FeedType.ATOM
        assert feed.title == "Example Atom"
        assert feed.description == "Atom subtitle"

    def test_rdf(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/index.rdf", RDF_FEED, "application/rdf+xml")

        feed = validate("https://example.com/index.rdf")

        assert feed.type is FeedType.RDF
        assert feed.title == "Example RDF"

    def test_json_feed(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.json", JSON_FEED, "application/feed+json")

        feed = validate("https://example.com/feed.json")

        assert feed.type is FeedType.JSON
        assert feed.title == "Example JSON"
        assert feed.description == "JSON description"

    def test_json_feed_served_as_plain_json(self, mocked_responses, validate):
        """JSON Feed is recognized from the body when served as `application/json`."""
        add_feed(mocked_responses, "https://example.com/feed.json", JSON_FEED, "application/json")

        feed = validate("https://example.com/feed.json")

        assert feed.type is FeedType.JSON

    def test_missing_title(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml", UNTITLED_RSS_FEED)

        feed = validate("https://example.com/feed.xml")

        assert feed.title == DEFAULT_FEED_TITLE
        assert feed.description is None


class TestRejections:
    """Unreachable and non-feed candidates give None."""

    def test_html_page(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/", HTML_PAGE, "text/html")

        assert validate("https://example.com/") is None

    def test_garbage(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed", "not a feed at all", "text/plain")

        assert validate("https://example.com/feed") is None

    @pytest.mark.parametrize("status", [404, 410, 500, 503])
    def test_error_status(self, mocked_responses, validate, status):
        mocked_responses.add(responses.GET, "https://example.com/feed.xml", status=status, body=RSS_FEED)

        assert validate("https://example.com/feed.xml") is None

    def test_connection_error(self, mocked_responses, validate):
        mocked_responses.add(
            responses.GET,
            "https://example.com/feed.xml",
            body=requests.exceptions.ConnectionError("refused"),
        )

        assert validate("https://example.com/feed.xml") is None

    def test_timeout(self, mocked_responses, validate):
        mocked_responses.add(
            responses.GET,
            "https://example.com/feed.xml",
            body=requests.exceptions.ConnectTimeout(),
        )

        assert validate("https://example.com/feed.xml") is None

    def test_too_large(self, mocked_responses, validate, settings):
        add_feed(mocked_responses, "https://example.com/feed.xml", RSS_FEED)

        token = settings_var.set(settings.model_copy(update={"MAX_RESPONSE_SIZE": 64}))
        try:
            assert validate("https://example.com/feed.xml") is None
        finally:
            settings_var.reset(token)

    def test_validate_raises_with_reason(self, mocked_responses, validate):
        """The non-swallowing entry point reports why a candidate was rejected."""
        add_feed(mocked_responses, "https://example.com/", HTML_PAGE, "text/html")

        with pytest.raises(FeedValidationError) as exc_info:
            validate.validate("https://example.com/")

        assert exc_info.value.url == "https://example.com/"
        assert exc_info.value.reason == "not a feed"


class TestDeduplication:
    """Duplicate feeds are rejected within one discovery request."""

    def test_same_url_twice(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml")

        assert validate("https://example.com/feed.xml") is not None
        assert validate("https://example.com/feed.xml") is None
        assert len(mocked_responses.calls) == 1

    def test_tracking_params_variant(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml")

        assert validate("https://example.com/feed.xml?utm_source=newsletter") is not None
        assert validate("https://example.com/feed.xml") is None

    def test_trailing_slash_variant(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed")
        add_feed(mocked_responses, "https://example.com/feed/")

        assert validate("https://example.com/feed") is not None
        assert validate("https://example.com/feed/") is None

    def test_redirect_keeps_input_url(self, mocked_responses, validate):
        """The discovered URL is the one that was given, not the redirect target."""
        add_redirect(mocked_responses, "https://example.com/rss", "https://example.com/feed.xml")
        add_feed(mocked_responses, "https://example.com/feed.xml")

        feed = validate("https://example.com/rss")

        assert feed.url == "https://example.com/rss"

    def test_redirect_marks_both_urls_seen(self, mocked_responses, validate, seen_urls):
        add_redirect(mocked_responses, "https://example.com/rss", "https://example.com/feed.xml")
        add_feed(mocked_responses, "https://example.com/feed.xml")

        assert validate("https://example.com/rss") is not None

        assert "https://example.com/rss" in seen_urls
        assert "https://example.com/feed.xml" in seen_urls
        assert validate("https://example.com/feed.xml") is None

    def test_redirect_to_discovered_feed(self, mocked_responses, validate):
        """A candidate redirecting to an already discovered feed is a duplicate."""
        add_feed(mocked_responses, "https://example.com/feed.xml")
        add_redirect(mocked_responses, "https://example.com/rss", "https://example.com/feed.xml")

        assert validate("https://example.com/feed.xml") is not None
        assert validate("https://example.com/rss") is None

    def test_atom_same_id(self, mocked_responses, validate, seen_feed_ids):
        """Two URLs serving the same Atom feed are one feed."""
        add_feed(mocked_responses, "https://example.com/atom.xml", ATOM_FEED, "application/atom+xml")
        add_feed(mocked_responses, "https://example.com/feeds/all.atom", ATOM_FEED, "application/atom+xml")

        assert validate("https://example.com/atom.xml") is not None
        assert validate("https://example.com/feeds/all.atom") is None
        assert seen_feed_ids == {"urn:uuid:60a76c80-d399-11d9-b93c-0003939e0af6"}

    def test_atom_different_ids(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/atom.xml", ATOM_FEED, "application/atom+xml")
        add_feed(mocked_responses, "https://example.com/other.xml", OTHER_ATOM_FEED, "application/atom+xml")

        assert validate("https://example.com/atom.xml") is not None
        assert validate("https://example.com/other.xml") is not None

    def test_rss_not_deduplicated_by_content(self, mocked_responses, validate):
        """RSS has no feed id, identical documents at different URLs are separate feeds."""
        add_feed(mocked_responses, "https://example.com/feed.xml")
        add_feed(mocked_responses, "https://example.com/rss.xml")

        assert validate("https://example.com/feed.xml") is not None
        assert validate("https://example.com/rss.xml") is not None

    def test_sets_are_per_validator(self, mocked_responses):
        """Separate discovery requests don't share state."""
        add_feed(mocked_responses, "https://example.com/feed.xml")

        first = create_feed_validator(set(), set())
        second = create_feed_validator(set(), set())

        assert first("https://example.com/feed.xml") is not None
        assert second("https://example.com/feed.xml") is not None

    def test_failed_candidate_is_not_marked_seen(self, mocked_responses, validate, seen_urls):
        """Only fetched candidates are remembered, so a failed one can be retried."""
        mocked_responses.add(
            responses.GET,
            "https://example.com/feed.xml",
            body=requests.exceptions.ConnectionError("refused"),
        )

        assert validate("https://example.com/feed.xml") is None
        assert seen_urls == set()

    def test_uses_given_lock(self, mocked_responses, seen_urls, seen_feed_ids):
        """A caller's lock guards the sets, so other code can share them safely."""
        add_feed(mocked_responses, "https://example.com/feed.xml")
        lock = Lock()

        validate = create_feed_validator(seen_urls, seen_feed_ids, lock=lock)

        assert validate.lock is lock
        assert validate("https://example.com/feed.xml") is not None
        assert not lock.locked()


class TestValidateMany:
    """Candidates validated together keep their order."""

    def test_returns_feeds_in_candidate_order(self, mocked_responses, validate):
        add_feed(mocked_responses, "https://example.com/feed.xml")
        add_feed(mocked_responses, "https://example.com/atom.xml", ATOM_FEED, "application/atom+xml")
        add_feed(mocked_responses, "https://example.com/feed.json", JSON_FEED, "application/feed+json")

        feeds = validate.validate_many([
            "https://example.com/feed.json",
            "https://example.com/missing.xml",
            "https://example.com/feed.xml",
            "https://example.com/atom.xml",
        ])

        assert [feed.url for feed in feeds] == [
            "https://example.com/feed.json",
            "https://example.com/feed.xml",
            "https://example.com/atom.xml",
        ]

    def test_earlier_candidate_wins_shared_redirect(self, mocked_responses, validate):
        """When two candidates redirect to the same feed, the first one is kept even if it answers last."""
        def slow_redirect(request):
            time.sleep(0.2)
            return 301, {"Location": "https://cdn.example.net/feed.xml"}, ""

        mocked_responses.add_callback(responses.GET, "https://example.com/a", callback=slow_redirect)
        add_redirect(mocked_responses, "https://example.com/b", "https://cdn.example.net/feed.xml")
        add_feed(mocked_responses, "https://cdn.example.net/feed.xml")

        feeds = validate.validate_many(["https://example.com/a", "https://example.com/b"])

        assert [feed.url for feed in feeds] == ["https://example.com/a"]

    def test_earlier_candidate_wins_shared_atom_id(self, mocked_responses, validate):
        def slow_atom(request):
            time.sleep(0.2)
            return 200, {"Content-Type": "application/atom+xml"}, ATOM_FEED

        mocked_responses.add_callback(responses.GET, "https://example.com/atom.xml", callback=slow_atom)
        add_feed(mocked_responses, "https://example.com/feeds/all.atom", ATOM_FEED, "application/atom+xml")

        feeds = validate.validate_many(["https://example.com/atom.xml", "https://example.com/feeds/all.atom"])

        assert [feed.url for feed in feeds] == ["https://example.com/atom.xml"]

    def test_normalized_duplicates_fetched_once(self, mocked_responses, validate):
        """Spellings of the same URL are one candidate, the first spelling is reported."""
        add_feed(mocked_responses, "https://example.com/feed.xml")

        feeds = validate.validate_many([
            "https://example.com/feed.xml?utm_source=newsletter",
            "https://example.com/feed.xml",
        ])

        assert [feed.url for feed in feeds] == ["https://example.com/feed.xml?utm_source=newsletter"]
        assert len(mocked_responses.calls) == 1

    def test_empty(self, validate):
        assert validate.validate_many([]) == []


class TestSlowServer:
    """Validation gives up on feeds that take too long."""

    def test_slow_body_is_rejected_in_time(self, slow_server, settings, seen_urls, seen_feed_ids):
        token = settings_var.set(settings.model_copy(update={"REQUEST_TIMEOUT": 1.0}))
        try:
            with create_session() as session:
                session.trust_env = False
                validate = create_feed_validator(seen_urls, seen_feed_ids, session=session)
                started = time.monotonic()
                assert validate(slow_server) is None
                elapsed = time.monotonic() - started
        finally:
            settings_var.reset(token)

        assert elapsed < 5
        assert seen_urls == set()
