"""
Keep-alive pinger.

Free hosting tiers put idle services to sleep; a periodic GET against the
public URL keeps the process (and its in-memory tasks) alive.
"""

import asyncio
import contextlib
import logging

import httpx

logger = logging.getLogger(__name__)


class KeepAlivePinger:
    """Ping *url* immediately and then every *interval* seconds."""

    def __init__(
        self,
        url: str,
        interval: float,
        timeout: float,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def ping(self) -> int | None:
        """Issue one ping; failures are logged, never raised."""
        try:
            response = await self._client.get(self.url, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.warning("Keep-alive: timeout")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Keep-alive: failed {e}")
            return None
        logger.info(f"Keep-alive ping status={response.status_code}")
        return response.status_code

    async def _loop(self) -> None:
        while True:
            await self.ping()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Keep-alive enabled: {self.url} every {self.interval:.0f}s")
        self._task = asyncio.create_task(self._loop(), name="keep-alive")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._client.aclose()
