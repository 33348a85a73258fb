from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from songproxy.exceptions import ProviderTransportError
from songproxy.models import GenerationRequest, ProviderName

logger = logging.getLogger(__name__)


class ProviderState(str, Enum):
    """Normalized upstream job state."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class ProviderStatus:
    """Result of one status query against a polling provider."""

    state: ProviderState
    result_urls: tuple[str, ...] = ()
    error_detail: str | None = None
    raw_status: str | None = None


@dataclass(frozen=True)
class GeneratedAudio:
    """Audio returned inline by a synchronous provider."""

    audio: bytes = field(repr=False)
    content_type: str = "audio/mpeg"


def parse_json_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; anything else is wrapped as ``{"_raw": text}``."""
    text = response.text
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"_raw": text}
    if not isinstance(parsed, dict):
        return {"_raw": text}
    return parsed


def describe_body(body: dict[str, Any]) -> str:
    if "_raw" in body:
        return str(body["_raw"])
    return json.dumps(body)


class ProviderClient(ABC):
    """Base class for HTTP music generation providers."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float = 60.0) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    @abstractmethod
    def name(self) -> ProviderName:
        """Return the provider this client talks to."""

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded body.

        Raises:
            ProviderTransportError: network failure or non-2xx response
        """
        try:
            response = await self._client.request(method, url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ProviderTransportError(f"{self.name.value} unreachable: {e}") from e

        body = parse_json_body(response)
        if not response.is_success:
            detail = describe_body(body)
            raise ProviderTransportError(
                f"API error ({response.status_code}): {detail}",
                status_code=response.status_code,
                detail=detail,
            )
        return body

    async def close(self) -> None:
        await self._client.aclose()


class PollingProvider(ProviderClient):
    """Provider that accepts a job and reports its progress on request."""

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> str:
        """Submit a generation job and return the upstream task id."""

    @abstractmethod
    async def fetch_status(self, task_id: str) -> ProviderStatus:
        """Query the upstream state of *task_id*."""

    @abstractmethod
    async def download(self, url: str) -> bytes:
        """Fetch a finished output."""

    @abstractmethod
    async def open_stream(self, url: str) -> httpx.Response:
        """Open a streamed download of a finished output; the caller closes it."""


class InlineProvider(ProviderClient):
    """Provider that returns the finished audio in the submission response."""

    task_prefix: str

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GeneratedAudio:
        """Run a generation to completion in one round trip."""
