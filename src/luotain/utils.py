import logging
import os
import re
from importlib import import_module
from importlib.metadata import PackageNotFoundError, metadata
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import structlog
from lxml import etree, html
from opentelemetry import trace
from opentelemetry.sdk.resources import (
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
    get_aggregated_resources,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from url_normalize import url_normalize

from .settings import get_settings

logger = structlog.get_logger(__name__)

TRACKING_PARAMS = frozenset({
    # UTM parameters
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    # Social media tracking
    "ref",
    "source",
    "fbclid",
    "gclid",
    "gclsrc",
    # Google Analytics
    "_ga",
    "_gid",
})
""" Query parameters dropped when comparing feed URLs. """

EXTRA_RESOURCE_DETECTOR = [
    ("opentelemetry.resource.detector.container", "ContainerResourceDetector")
]
""" List of extra resource detectors to use, if available. """

EXTRA_INSTRUMENTOR = [
    ("opentelemetry.instrumentation.urllib3", "URLLib3Instrumentor"),
    ("opentelemetry.instrumentation.requests", "RequestsInstrumentor"),
]
""" List of extra instrumentors to use, if available. """

_WHITESPACE = re.compile(r"\s+")


def normalize_feed_url(url: str) -> str:
    """
    Normalize a feed URL for deduplication.

    Lowercases scheme and host, removes default ports and fragments, strips the trailing slash
    from non-root paths, drops tracking query parameters and sorts the remaining ones.

    The normalized form is only used as a comparison key, never as the stored feed URL.

    :param url: URL to normalize
    :return: Normalized URL, or the original URL if it can't be parsed
    """
    try:
        parts = urlsplit(url_normalize(url.strip()))
    except ValueError:
        logger.debug("URL normalization failed", url=url)
        return url

    path = parts.path
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    params.sort(key=lambda item: item[0])
    query = urlencode(params, quote_via=quote)

    return urlunsplit((parts.scheme, parts.netloc.lower(), path, query, ""))


def is_subdomain_of(domain: str, base_domain: str) -> bool:
    """
    Check if `domain` equals `base_domain` or is one of its subdomains.

    >>> is_subdomain_of("podcasts.apple.com", "apple.com")
    True
    >>> is_subdomain_of("notapple.com", "apple.com")
    False
    """
    domain = domain.lower().strip().rstrip(".")
    base_domain = base_domain.lower().strip().rstrip(".")
    return domain == base_domain or domain.endswith(f".{base_domain}")


def strip_html(text: str | None) -> str:
    """
    Strip tags from an HTML fragment and return plain text.

    Entities are decoded and whitespace is collapsed.
    """
    if not text or not text.strip():
        return ""

    try:
        fragment = html.fragment_fromstring(text, create_parent="div")
    except (etree.ParserError, ValueError):
        return _WHITESPACE.sub(" ", text).strip()

    # Script and style contents are not text
    for element in fragment.xpath(".//script|.//style"):
        element.drop_tree()

    return _WHITESPACE.sub(" ", fragment.text_content()).strip()


def setup_logging(debug: bool | None = None):
    settings = get_settings()
    if debug is None:
        debug = settings.DEBUG

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_open_telemetry_spans,  # Add OpenTelemetry context to logs
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        pass_foreign_args=True,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer()
        ],
    )
    handler = logging.StreamHandler()

    # Use OUR `ProcessorFormatter` to format all `logging` entries.
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.LOGGING_LEVEL)

    # Set the top-level module to DEBUG if debug is True
    if debug:
        logging.getLogger(__package__).setLevel(logging.DEBUG)


def add_open_telemetry_spans(_, __, event_dict):
    span = trace.get_current_span()
    if not span.is_recording():
        event_dict["span"] = None
        return event_dict

    ctx = span.get_span_context()
    parent = getattr(span, "parent", None)

    event_dict["span"] = {
        "span_id": hex(ctx.span_id),
        "trace_id": hex(ctx.trace_id),
        "parent_span_id": None if not parent else hex(parent.span_id),
    }

    return event_dict


def setup_tracing(name: str = __package__):
    """
    Setup OpenTelemetry tracing.

    Tracing is enabled by default, but can be disabled by setting `LUOTAIN_TRACING_ENABLED` to `False`.
    Spans are exported only when `OTEL_EXPORTER_OTLP_ENDPOINT` is set.
    """

    if not get_settings().TRACING_ENABLED:
        logger.debug("Tracing is disabled")
        return None

    try:
        version = metadata(name)["Version"]
    except PackageNotFoundError:
        version = "0.0.0"

    # Collect resources
    resource = Resource.create({
        SERVICE_NAME: name,
        SERVICE_VERSION: version,
    })
    resources = []
    for detector_pkg, cls in EXTRA_RESOURCE_DETECTOR:
        try:
            mod = import_module(detector_pkg)
            detector_cls = getattr(mod, cls)
            resources.append(detector_cls().detect())
        except ImportError as e:
            logger.debug("Detector %s.%s not found: %s", detector_pkg, cls, e)
    resource = get_aggregated_resources(resources, resource)

    trace_provider = TracerProvider(resource=resource)

    # Setup exporter to send traces to otel endpoint
    if otel_endpoint := os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        logger.debug("Setting tracing target to %s", otel_endpoint)
        exporter = OTLPSpanExporter(endpoint=otel_endpoint)
        trace_provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(name, version, tracer_provider=trace_provider)

    for instrumentor_pkg, cls in EXTRA_INSTRUMENTOR:
        try:
            mod = import_module(instrumentor_pkg)
            instrumentor_cls = getattr(mod, cls)
            instrumentor_cls().instrument()
        except ImportError as e:
            logger.debug("Instrumentor %s.%s not found: %s", instrumentor_pkg, cls, e)

    return tracer
