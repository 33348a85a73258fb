import logging
from urllib.parse import urlsplit

from fastapi import Request

from songproxy.api.settings import Settings
from songproxy.exceptions import ProviderConfigurationError
from songproxy.infrastructure.providers import InlineProvider, PollingProvider
from songproxy.infrastructure.storage import ArtifactStore
from songproxy.services.task_tracker import TaskTracker

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tracker(request: Request) -> TaskTracker:
    return request.app.state.tracker


def get_store(request: Request) -> ArtifactStore:
    return request.app.state.tracker.store


def polling_provider(tracker: TaskTracker) -> PollingProvider:
    for provider in tracker.providers.values():
        if isinstance(provider, PollingProvider):
            return provider
    raise ProviderConfigurationError("No polling provider is configured")


def get_polling_provider(request: Request) -> PollingProvider:
    return polling_provider(get_tracker(request))


def inline_provider_for(task_id: str, tracker: TaskTracker) -> InlineProvider | None:
    """Return the inline provider whose id prefix *task_id* carries, if any."""
    for provider in tracker.providers.values():
        if isinstance(provider, InlineProvider) and task_id.startswith(f"{provider.task_prefix}-"):
            return provider
    return None


def is_allowed_track_url(url: str, allowed_hosts: tuple[str, ...]) -> bool:
    """True if *url* is http(s) on an allowed host or one of its subdomains."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not hostname:
        return False
    hostname = hostname.lower().rstrip(".")
    return any(hostname == host or hostname.endswith(f".{host}") for host in allowed_hosts)
