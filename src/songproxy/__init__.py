"""
songproxy – async proxy for Sonauto and ACE-Step music generation.

This top-level package exposes the request and task models shared by the
API layer and the task tracker.
"""

__version__ = "0.1.0"

from .models import (  # noqa: E402
    GenerationMode,
    GenerationRequest,
    ProviderName,
    TaskInfo,
    TaskState,
)

__all__ = [
    "GenerationMode",
    "GenerationRequest",
    "ProviderName",
    "TaskInfo",
    "TaskState",
    "__version__",
]
