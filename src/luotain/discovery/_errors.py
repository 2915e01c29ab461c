NO_FEEDS_FOUND_MESSAGE = "No RSS or Atom feeds found on this website"


class FeedDiscoveryError(Exception):
    """Base class for feed discovery errors."""


class NoFeedsFoundError(FeedDiscoveryError):
    """
    Raised when no discovery service found a feed for the URL.

    This is the only failure :func:`luotain.discover_feeds` reports for a URL without feeds.
    Callers serving HTTP should map :attr:`code` to a 404.
    """

    code = "NOT_FOUND"

    def __init__(self, url: str, message: str = NO_FEEDS_FOUND_MESSAGE):
        super().__init__(message)
        self.url = url
        self.message = message


class FeedValidationError(FeedDiscoveryError):
    """
    Candidate URL is not a usable feed. Never escapes the feed validator.
    """

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
