"""
Registry for discovery services.

This module provides the registry that holds discovery services in priority order and runs them
for a URL until one of them finds feeds.
"""

from threading import Lock

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from structlog import get_logger

from ..feed import DiscoveredFeed
from ..fetch import create_session
from ._base import DiscoveryContext, DiscoveryService
from ._errors import NoFeedsFoundError
from ._validator import create_feed_validator

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class DiscoveryRegistry:
    """
    Registry for discovery services.

    Services run in ascending :attr:`~DiscoveryService.priority` order, services with equal
    priority in registration order. The first service that finds feeds wins; later services are
    not run. A failing service is logged and skipped.
    """

    def __init__(self):
        self._services: list[DiscoveryService] = []

    def register(self, service: DiscoveryService) -> DiscoveryService:
        """
        Register a discovery service instance.

        Usage:
            registry.register(AppleDiscoveryService())

            # Custom service, runs between Apple (10) and the standard fallback (100):
            class YouTubeDiscoveryService(DiscoveryService):
                priority = 20
                ...

            registry.register(YouTubeDiscoveryService())

        :param service: Discovery service to register.
        :return: The registered service.
        """
        for existing in self._services:
            if existing is service:
                logger.warning("Discovery service already registered", service=service.name)
                return service

        self._services.append(service)
        # Stable sort, equal priorities keep their registration order
        self._services.sort(key=lambda s: s.priority)

        logger.debug("Registered discovery service", service=service.name, priority=service.priority)
        return service

    @property
    def services(self) -> tuple[DiscoveryService, ...]:
        """Registered services in execution order."""
        return tuple(self._services)

    def clear(self):
        """Clear all registered services (useful for testing)."""
        self._services.clear()
        logger.debug("Cleared all registered discovery services")

    def __contains__(self, service: DiscoveryService) -> bool:
        return any(existing is service for existing in self._services)

    def __len__(self) -> int:
        return len(self._services)

    def discover(self, url: str) -> list[DiscoveredFeed]:
        """
        Discover feeds from a URL.

        Executes the discovery services in priority order:
        1. Services that can't handle the URL are skipped.
        2. If a service finds feeds, they are returned immediately.
        3. If a service returns nothing or raises, the next service is tried.
        4. If no service finds feeds, :class:`NoFeedsFoundError` is raised.

        :param url: URL to discover feeds from
        :return: Discovered feeds, never empty
        :raises NoFeedsFoundError: If no feeds were found
        """
        log = logger.bind(url=url)

        with tracer.start_as_current_span("feed.discovery") as span, create_session() as session:
            span.set_attribute("url", url)
            span.set_attribute("service_count", len(self._services))

            seen_urls: set[str] = set()
            seen_feed_ids: set[str] = set()
            lock = Lock()
            context = DiscoveryContext(
                seen_urls=seen_urls,
                seen_feed_ids=seen_feed_ids,
                validate_feed=create_feed_validator(seen_urls, seen_feed_ids, session=session, lock=lock),
                session=session,
                lock=lock,
            )

            log.info("Starting feed discovery", service_count=len(self._services))

            for service in self._services:
                if not service.can_handle(url):
                    log.debug("Discovery service can't handle URL", service=service.name)
                    continue

                log.debug("Trying discovery service", service=service.name, priority=service.priority)

                try:
                    feeds = service.discover(url, context)
                except Exception:
                    span.set_attribute(f"service_{service.name}_failed", True)
                    log.exception("Discovery service failed", service=service.name, priority=service.priority)
                    continue

                if feeds:
                    span.set_attribute("service_used", service.name)
                    span.set_attribute("feeds_found", len(feeds))
                    log.info(
                        "Discovery service found feeds",
                        service=service.name,
                        feeds_found=len(feeds),
                        feed_urls=[feed.url for feed in feeds],
                    )
                    return feeds

            span.set_attribute("feeds_found", 0)
            span.set_status(Status(StatusCode.ERROR, "No feeds found"))
            log.info("No feeds found")

        raise NoFeedsFoundError(url)

    def __repr__(self) -> str:
        names = ", ".join(repr(service) for service in self._services)
        return f"DiscoveryRegistry({names})"


def create_default_registry() -> DiscoveryRegistry:
    """
    Create a registry with the default discovery services.

    - :class:`~luotain.discovery.apple.AppleDiscoveryService` (priority 10)
    - :class:`~luotain.discovery.reddit.RedditDiscoveryService` (priority 10)
    - :class:`~luotain.discovery.standard.StandardDiscoveryService` (priority 100)
    """
    from .apple import AppleDiscoveryService
    from .reddit import RedditDiscoveryService
    from .standard import StandardDiscoveryService

    default_registry = DiscoveryRegistry()
    default_registry.register(AppleDiscoveryService())
    default_registry.register(RedditDiscoveryService())
    default_registry.register(StandardDiscoveryService())
    return default_registry


# Global registry instance
registry = create_default_registry()
