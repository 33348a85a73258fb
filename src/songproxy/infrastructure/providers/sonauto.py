from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from songproxy.exceptions import (
    ProviderConfigurationError,
    ProviderResponseError,
    ProviderTransportError,
)
from songproxy.infrastructure.providers.base import (
    PollingProvider,
    ProviderState,
    ProviderStatus,
    describe_body,
)
from songproxy.models import (
    DEFAULT_INSTRUMENTAL_PROMPT,
    DEFAULT_TAGS,
    GenerationMode,
    GenerationRequest,
    ProviderName,
)

logger = logging.getLogger(__name__)


class SonautoClient(PollingProvider):
    """Client for the Sonauto generations API.

    Jobs are submitted with ``POST /generations`` and polled with
    ``GET /generations/{task_id}`` until the status is SUCCESS or FAILURE.
    """

    name = ProviderName.SONAUTO

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.sonauto.ai/v1",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderConfigurationError(
                "Missing Sonauto API key (EXPO_PUBLIC_SONAUTO_API_KEY)"
            )
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        """Translate a generation request into the Sonauto request body."""
        payload: dict[str, Any] = {
            "num_songs": request.num_songs,
            "output_format": "mp3",
            "balance_strength": request.balance_strength,
        }
        if request.mode is GenerationMode.INSTRUMENTAL:
            payload.update(
                prompt=request.prompt or DEFAULT_INSTRUMENTAL_PROMPT,
                instrumental=True,
                prompt_strength=request.prompt_strength or 2.0,
            )
        elif request.mode is GenerationMode.PROMPT:
            payload.update(
                prompt=request.prompt,
                tags=request.tags or DEFAULT_TAGS,
                instrumental=False,
                prompt_strength=request.prompt_strength or 2.0,
            )
        else:
            payload.update(
                lyrics=request.lyrics,
                tags=request.tags or DEFAULT_TAGS,
                instrumental=False,
                prompt_strength=request.prompt_strength or 1.6,
            )
        return payload

    async def submit(self, request: GenerationRequest) -> str:
        headers = self._headers()
        logger.info(f"Submitting Sonauto generation (mode={request.mode.value})")
        body = await self._request(
            "POST", f"{self.base_url}/generations", headers=headers, payload=self.build_payload(request)
        )
        task_id = body.get("task_id") or body.get("id")
        if not task_id:
            logger.error(f"Unexpected generation response: {body}")
            raise ProviderResponseError(f"Invalid generation response: {describe_body(body)}")
        return str(task_id)

    async def fetch_status(self, task_id: str) -> ProviderStatus:
        # Client-supplied id; keep it a single path segment.
        url = f"{self.base_url}/generations/{quote(task_id, safe='')}"
        body = await self._request("GET", url, headers=self._headers())
        raw_status = body.get("status")
        if raw_status is None:
            raise ProviderResponseError(f"Status response without status: {describe_body(body)}")

        raw_status = str(raw_status).upper()
        if raw_status == "SUCCESS":
            return ProviderStatus(
                state=ProviderState.SUCCESS,
                result_urls=tuple(body.get("song_paths") or ()),
                raw_status=raw_status,
            )
        if raw_status == "FAILURE":
            detail = body.get("error_message") or body.get("error") or "Generation failed"
            return ProviderStatus(
                state=ProviderState.FAILURE, error_detail=str(detail), raw_status=raw_status
            )
        return ProviderStatus(state=ProviderState.PENDING, raw_status=raw_status)

    async def download(self, url: str) -> bytes:
        response = await self.open_stream(url)
        try:
            return await response.aread()
        except httpx.HTTPError as e:
            raise ProviderTransportError(f"Download interrupted: {e}") from e
        finally:
            await response.aclose()

    async def open_stream(self, url: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        request = self._client.build_request("GET", url, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ProviderTransportError(f"Download failed: {e}") from e

        if not response.is_success:
            await response.aclose()
            raise ProviderTransportError(
                f"Download failed ({response.status_code})", status_code=response.status_code
            )
        return response
