"""Generation task tracking: submission, polling with backoff, artifact persistence."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from songproxy.api.settings import Settings
from songproxy.exceptions import (
    PersistenceError,
    ProviderBusinessError,
    ProviderConfigurationError,
    ProviderError,
    ProviderResponseError,
    ProviderTransportError,
    TaskTimeoutError,
    ValidationError,
)
from songproxy.infrastructure.providers import (
    InlineProvider,
    PollingProvider,
    ProviderClient,
    ProviderState,
    ProviderStatus,
)
from songproxy.infrastructure.storage import (
    ArtifactStore,
    inline_artifact_name,
    output_artifact_name,
)
from songproxy.models import GenerationRequest, ProviderName, Task, TaskInfo, TaskState

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float, factor: float, cap: float) -> float:
    """Seconds to wait after poll *attempt* (1-based)."""
    return min(base * factor**attempt, cap)


def download_path(task_id: str, index: int | None = None) -> str:
    """Client-facing download path for a locally stored artifact."""
    if index is None:
        return f"/download/{task_id}"
    return f"/download/{task_id}?index={index}"


class TaskTracker:
    """Owns every in-flight generation task and its background work.

    Polling providers get a per-task loop that re-arms itself after each status
    query; inline providers resolve in a single call. Tasks live in memory only
    and finished ones are evicted after ``settings.task_ttl_seconds``.
    """

    def __init__(
        self,
        settings: Settings,
        store: ArtifactStore,
        providers: dict[ProviderName, ProviderClient],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.providers = providers
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._running: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> TaskInfo | None:
        task = self._tasks.get(task_id)
        return task.snapshot() if task else None

    def __len__(self) -> int:
        return len(self._tasks)

    def prune(self, now: datetime | None = None) -> int:
        """Drop finished tasks older than the TTL; return how many were removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.task_ttl_seconds)
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.state.is_terminal and task.finished_at and task.finished_at <= cutoff
        ]
        for task_id in expired:
            del self._tasks[task_id]
        if expired:
            logger.debug(f"Evicted {len(expired)} finished task(s)")
        return len(expired)

    def _register(self, task: Task) -> None:
        self.prune()
        self._tasks[task.id] = task

    def _provider(self, name: ProviderName) -> ProviderClient:
        provider = self.providers.get(name)
        if provider is None:
            raise ValidationError(f"Unsupported provider: {name.value}")
        return provider

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: GenerationRequest) -> str:
        """Start a generation and return its task id without waiting for it.

        Raises:
            ProviderError: a polling provider rejected the submission
        """
        provider = self._provider(request.provider)

        if isinstance(provider, PollingProvider):
            task_id = await provider.submit(request)
            task = Task(id=task_id, mode=request.mode, provider=request.provider)
            self._register(task)
            logger.info(f"Task submitted {task_id}")
            self._spawn(task, self._poll(task, provider))
            return task_id

        if isinstance(provider, InlineProvider):
            task = Task(
                id=self._inline_task_id(provider.task_prefix),
                mode=request.mode,
                provider=request.provider,
            )
            self._register(task)
            logger.info(f"Task submitted ({provider.name.value}) {task.id}")
            self._spawn(task, self._generate_inline(task, provider, request))
            return task.id

        raise ValidationError(f"Unsupported provider: {request.provider.value}")

    def _inline_task_id(self, prefix: str) -> str:
        stamp = int(self._clock() * 1000)
        while True:
            task_id = f"{prefix}-{stamp}"
            if task_id not in self._tasks and not self.store.exists(inline_artifact_name(task_id)):
                return task_id
            stamp += 1

    def _spawn(self, task: Task, work: Awaitable[None]) -> None:
        runner = asyncio.create_task(self._run(task, work), name=f"task-{task.id}")
        self._running[task.id] = runner
        runner.add_done_callback(lambda _: self._running.pop(task.id, None))

    async def _run(self, task: Task, work: Awaitable[None]) -> None:
        try:
            await work
        except asyncio.CancelledError:
            logger.warning(f"Task {task.id} cancelled in state {task.state.value}")
            raise
        except Exception as e:
            logger.error(f"Task {task.id} crashed: {e!s}", exc_info=True)
            self._fail(task, str(e))

    async def wait(self, task_id: str) -> TaskInfo | None:
        """Wait for a task's background work to finish and return its final snapshot."""
        runner = self._running.get(task_id)
        if runner is not None:
            await asyncio.shield(runner)
        return self.get(task_id)

    async def shutdown(self) -> None:
        """Cancel in-flight background work (process shutdown only)."""
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
            logger.info(f"Cancelled {len(runners)} in-flight task(s)")

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def _fail(self, task: Task, error: str) -> None:
        if task.state.is_terminal:
            return
        task.advance(TaskState.FAILURE, error=error)
        logger.error(f"Generation failed {task.id}: {error}")

    # ------------------------------------------------------------------
    # Polling providers
    # ------------------------------------------------------------------

    async def _poll(self, task: Task, provider: PollingProvider) -> None:
        settings = self.settings
        task.advance(TaskState.PROCESSING)

        while task.attempts < settings.max_poll_attempts:
            task.attempts += 1
            try:
                status = await provider.fetch_status(task.id)
            except ProviderTransportError as e:
                if not e.is_transient:
                    self._fail(task, e.message)
                    return
                logger.warning(f"Poll {task.id} attempt {task.attempts} failed: {e.message}")
            except (ProviderConfigurationError, ProviderBusinessError) as e:
                self._fail(task, e.message)
                return
            except ProviderResponseError as e:
                logger.warning(f"Poll {task.id} attempt {task.attempts} unusable: {e.message}")
            else:
                logger.info(f"Poll {task.id} attempt={task.attempts} status={status.raw_status}")
                if status.state is ProviderState.SUCCESS:
                    await self._complete(task, provider, status)
                    return
                if status.state is ProviderState.FAILURE:
                    self._fail(task, status.error_detail or "Generation failed")
                    return

            if task.attempts < settings.max_poll_attempts:
                await self._sleep(
                    backoff_delay(
                        task.attempts,
                        settings.poll_base_delay,
                        settings.poll_backoff_factor,
                        settings.poll_max_delay,
                    )
                )

        timeout = TaskTimeoutError(f"Polling timeout after {task.attempts} attempts")
        task.advance(TaskState.TIMEOUT, error=timeout.message)
        logger.warning(f"{timeout.message} ({task.id})")

    async def _complete(self, task: Task, provider: PollingProvider, status: ProviderStatus) -> None:
        task.result_urls = list(status.result_urls)

        if self.settings.auto_download:
            for index, url in enumerate(status.result_urls, start=1):
                await self._save_output(task, provider, index, url)

        task.advance(TaskState.SUCCESS)
        logger.info(f"Generation completed {task.id} ({len(task.artifacts)} saved)")

    async def _save_output(self, task: Task, provider: PollingProvider, index: int, url: str) -> None:
        if index in task.attempted_outputs:
            return
        task.attempted_outputs.add(index)

        name = output_artifact_name(task.mode, task.id, index)
        try:
            data = await provider.download(url)
            stored = await self.store.save(name, data)
        except (ProviderError, PersistenceError) as e:
            logger.error(f"Save failed for {name}: {e.message}")
            return
        task.artifacts.append(stored.name)
        logger.info(f"Saved track {stored.name} (mirror: {stored.mirror_key or 'none'})")

    # ------------------------------------------------------------------
    # Inline providers
    # ------------------------------------------------------------------

    async def _generate_inline(
        self, task: Task, provider: InlineProvider, request: GenerationRequest
    ) -> None:
        task.advance(TaskState.PROCESSING)
        task.attempts = 1
        try:
            result = await provider.generate(request)
        except ProviderError as e:
            self._fail(task, e.message)
            return

        name = inline_artifact_name(task.id)
        task.attempted_outputs.add(1)
        try:
            stored = await self.store.save(name, result.audio, result.content_type)
        except PersistenceError as e:
            self._fail(task, e.message)
            return

        task.artifacts.append(stored.name)
        task.result_urls = [download_path(task.id)]
        task.advance(TaskState.SUCCESS)
        logger.info(f"{provider.name.value} done {stored.path}")
