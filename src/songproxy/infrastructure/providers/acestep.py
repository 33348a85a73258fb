from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any

import httpx

from songproxy.exceptions import ProviderBusinessError, ProviderResponseError
from songproxy.infrastructure.providers.base import GeneratedAudio, InlineProvider, describe_body
from songproxy.models import GenerationMode, GenerationRequest, ProviderName

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<ctype>[\w.+/-]+)?(?:;[\w=.-]+)*;base64,(?P<data>.*)$", re.DOTALL)


def decode_data_url(url: str) -> GeneratedAudio:
    """Decode a ``data:audio/...;base64,...`` URL into raw audio bytes."""
    match = _DATA_URL_RE.match(url)
    if not match:
        raise ProviderResponseError("Audio URL is not a base64 data URL")
    try:
        audio = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProviderResponseError(f"Audio payload is not valid base64: {e}") from e
    return GeneratedAudio(audio=audio, content_type=match.group("ctype") or "audio/mpeg")


class AceStepClient(InlineProvider):
    """Client for the ACE-Step OpenRouter-compatible chat completions endpoint.

    The whole generation happens in one request; the response carries the
    track as a base64 data URL.
    """

    name = ProviderName.ACESTEP
    task_prefix = "acestep"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.acemusic.ai",
        model: str = "acemusic/acestep-v1.5-turbo",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model

    def build_messages(self, request: GenerationRequest) -> list[dict[str, str]]:
        # The OpenRouter proxy reads <prompt>/<lyrics> tags out of the user message.
        if request.mode is GenerationMode.INSTRUMENTAL:
            content = (
                f"<prompt>{request.prompt or 'A calm instrumental composition'}</prompt>"
                "<lyrics>[inst]</lyrics>"
            )
        elif request.mode is GenerationMode.CUSTOM:
            prompt = f"<prompt>{request.prompt}</prompt>" if request.prompt else ""
            content = f"{prompt}<lyrics>{request.lyrics}</lyrics>"
        else:
            content = request.prompt or "A pop song"
        return [{"role": "user", "content": content}]

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.build_messages(request),
            "instrumental": request.is_instrumental,
            "duration": request.duration,
            "thinking": False,
        }

    async def generate(self, request: GenerationRequest) -> GeneratedAudio:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = self.build_payload(request)
        logger.info(f"ACE-Step calling backend (mode={request.mode.value}, duration={request.duration})")
        body = await self._request(
            "POST", f"{self.base_url}/v1/chat/completions", headers=headers, payload=payload
        )

        if body.get("error"):
            raise ProviderBusinessError(f"ACE-Step reported an error: {body['error']}")

        audio_url = self._extract_audio_url(body)
        if not audio_url:
            raise ProviderBusinessError(
                f"ACE-Step API returned no audio files in response: {describe_body(body)[:200]}"
            )
        return decode_data_url(audio_url)

    @staticmethod
    def _extract_audio_url(body: dict[str, Any]) -> str | None:
        try:
            audio = body["choices"][0]["message"]["audio"]
        except (KeyError, IndexError, TypeError):
            return None
        # Documented as a list of parts; some deployments return a single object.
        if isinstance(audio, list):
            audio = audio[0] if audio else None
        if not isinstance(audio, dict):
            return None
        audio_url = audio.get("audio_url")
        if isinstance(audio_url, dict):
            return audio_url.get("url")
        return audio_url
