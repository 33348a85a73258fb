"""Music generation provider clients (Sonauto, ACE-Step)."""

# Re-export for easier access, e.g. `from songproxy.infrastructure.providers import SonautoClient`
from .acestep import AceStepClient
from .base import (
    GeneratedAudio,
    InlineProvider,
    PollingProvider,
    ProviderClient,
    ProviderState,
    ProviderStatus,
)
from .sonauto import SonautoClient

__all__ = [
    "AceStepClient",
    "GeneratedAudio",
    "InlineProvider",
    "PollingProvider",
    "ProviderClient",
    "ProviderState",
    "ProviderStatus",
    "SonautoClient",
]
