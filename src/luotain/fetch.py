"""
Bounded HTTP fetching for discovery.

Every request made during discovery goes through :func:`fetch`, which enforces a total deadline,
a response size cap and the redirect limit. User supplied URLs and third party APIs are untrusted:
they may hang, redirect forever or stream endless bodies.
"""
import json
import socket
import time
from dataclasses import dataclass
from threading import Event, Timer
from typing import Mapping, Optional

import requests
from requests.exceptions import RequestException
from requests.structures import CaseInsensitiveDict
from structlog import get_logger

from .settings import get_settings

logger = get_logger(__name__)

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/feed+json, application/xml, text/xml, */*"
HTML_ACCEPT = "text/html,application/xhtml+xml"
JSON_ACCEPT = "application/json"

_CHUNK_SIZE = 64 * 1024


class ResponseTooLarge(RequestException):
    """
    Raised when the response body exceeds the configured size limit.
    """

    pass


@dataclass(frozen=True)
class FetchedResponse:
    """
    Fully read response body with the final URL after redirects.
    """
    url: str
    status_code: int
    headers: CaseInsensitiveDict
    content: bytes

    @property
    def content_type(self) -> str:
        content_type, *_ = self.headers.get("Content-Type", "").split(";")
        return content_type.strip().lower()

    def json(self):
        """Decode the body as JSON."""
        return json.loads(self.content)


def get_user_agent() -> str:
    """
    Return the user-agent string to be used for requests.
    """

    return get_settings().BOT_USER_AGENT


def create_session() -> requests.Session:
    """
    Create a session with the bot user agent and redirect limit.
    """
    session = requests.Session()
    session.headers.update({
        "User-Agent": get_user_agent(),
    })
    session.max_redirects = get_settings().MAX_REDIRECTS
    return session


def _abort_response(response: requests.Response, expired: Event):
    """
    Cut the connection of a response that's still being read.

    Shutting down the socket wakes up a read blocked in another thread.
    """
    expired.set()
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Could not shut down connection", url=response.url, error=str(e))


def fetch(
    session: requests.Session,
    url: str,
    *,
    accept: str = FEED_ACCEPT,
    timeout: Optional[float] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> FetchedResponse:
    """
    GET `url` and read the whole body within the deadline.

    :param session: Session to issue the request with
    :param url: URL to fetch, redirects are followed
    :param accept: Value for the `Accept` header
    :param timeout: Total deadline in seconds, defaults to `REQUEST_TIMEOUT`
    :param headers: Extra request headers
    :raises requests.HTTPError: On non-2xx responses
    :raises requests.Timeout: When the deadline passes
    :raises ResponseTooLarge: When the body is larger than `MAX_RESPONSE_SIZE`
    :raises requests.RequestException: On any other network failure
    """
    settings = get_settings()
    if timeout is None:
        timeout = settings.REQUEST_TIMEOUT
    deadline = time.monotonic() + timeout

    request_headers = {"Accept": accept}
    if headers:
        request_headers.update(headers)

    response = session.get(url, headers=request_headers, timeout=timeout, stream=True)
    with response:
        response.raise_for_status()

        declared_size = response.headers.get("Content-Length", "")
        if declared_size.isdigit() and int(declared_size) > settings.MAX_RESPONSE_SIZE:
            raise ResponseTooLarge(f"Response of {declared_size} bytes is too large", response=response)

        # A slow body never trips the per-read timeout, the watchdog cuts the connection instead
        expired = Event()
        watchdog = Timer(max(deadline - time.monotonic(), 0), _abort_response, args=(response, expired))
        watchdog.daemon = True
        watchdog.start()

        body = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > settings.MAX_RESPONSE_SIZE:
                    raise ResponseTooLarge("Response body exceeded size limit", response=response)
                if time.monotonic() > deadline:
                    raise requests.Timeout(f"Reading {url} took longer than {timeout}s")
        except RequestException as e:
            if expired.is_set() and not isinstance(e, requests.Timeout):
                raise requests.Timeout(f"Reading {url} took longer than {timeout}s") from e
            raise
        finally:
            watchdog.cancel()

        # Shutting down the socket can also look like a clean end of body
        if expired.is_set():
            raise requests.Timeout(f"Reading {url} took longer than {timeout}s")

    logger.debug("Fetched", url=url, final_url=response.url, status=response.status_code, size=len(body))

    return FetchedResponse(
        url=response.url,
        status_code=response.status_code,
        headers=response.headers,
        content=bytes(body),
    )
