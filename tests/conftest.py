"""
Root pytest configuration for luotain tests.

Provides test settings, mocked HTTP and a slow local server.
"""
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Event, Thread

import pytest
import responses

from luotain.settings import Settings, settings_var

from .samples import TEST_USER_AGENT


@pytest.fixture(autouse=True)
def settings():
    """
    Settings for tests, tracing disabled and a fixed user agent.
    """
    test_settings = Settings(
        TRACING_ENABLED=False,
        BOT_USER_AGENT=TEST_USER_AGENT,
        MAX_WORKERS=4,
    )
    token = settings_var.set(test_settings)
    yield test_settings
    settings_var.reset(token)


@pytest.fixture
def mocked_responses():
    """
    Mocked HTTP. Unregistered URLs raise a connection error.
    """
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps



class _SlowBodyHandler(BaseHTTPRequestHandler):
    """
    Promises a body of 1000 bytes and sends one byte at a time, slowly.
    """

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "application/rss+xml")
        self.send_header("Content-Length", "1000")
        self.end_headers()

        try:
            for _ in range(1000):
                if self.server.stopped.wait(0.2):
                    break
                self.wfile.write(b" ")
                self.wfile.flush()
        except OSError:
            # Client hung up
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_server():
    """
    Local HTTP server that drips its response body. Yields the server URL.
    """
    server = ThreadingHTTPServer(("127.0.0.1", 0), _SlowBodyHandler)
    server.daemon_threads = True
    server.stopped = Event()
    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()

    host, port = server.server_address[:2]
    yield f"http://{host}:{port}/feed.xml"

    server.stopped.set()
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)
