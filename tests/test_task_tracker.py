"""Tests for the task tracker state machine, backoff and artifact persistence."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from songproxy.api.settings import Settings
from songproxy.exceptions import (
    PersistenceError,
    ProviderBusinessError,
    ProviderConfigurationError,
    ProviderResponseError,
    ProviderTransportError,
    ValidationError,
)
from songproxy.infrastructure.providers import (
    GeneratedAudio,
    InlineProvider,
    PollingProvider,
    ProviderState,
    ProviderStatus,
)
from songproxy.infrastructure.storage import ArtifactStore
from songproxy.models import GenerationRequest, ProviderName, TaskState
from songproxy.services.task_tracker import TaskTracker, backoff_delay

PENDING = ProviderStatus(state=ProviderState.PENDING, raw_status="PROCESSING")


def success(*urls):
    return ProviderStatus(state=ProviderState.SUCCESS, result_urls=urls, raw_status="SUCCESS")


class FakeSonauto(PollingProvider):
    name = ProviderName.SONAUTO

    def __init__(self, statuses=(), task_id="task-1"):
        super().__init__()
        self.task_id = task_id
        self.submit = AsyncMock(return_value=task_id)
        self.fetch_status = AsyncMock(side_effect=list(statuses))
        self.download = AsyncMock(side_effect=lambda url: f"audio:{url}".encode())
        self.open_stream = AsyncMock()

    # Abstract hooks are replaced by the mocks above.
    async def submit(self, request):  # pragma: no cover
        raise NotImplementedError

    async def fetch_status(self, task_id):  # pragma: no cover
        raise NotImplementedError

    async def download(self, url):  # pragma: no cover
        raise NotImplementedError

    async def open_stream(self, url):  # pragma: no cover
        raise NotImplementedError


class FakeAceStep(InlineProvider):
    name = ProviderName.ACESTEP
    task_prefix = "acestep"

    def __init__(self, result=None, error=None):
        super().__init__()
        self.generate = AsyncMock(
            return_value=result or GeneratedAudio(audio=b"inline-audio"), side_effect=error
        )

    async def generate(self, request):  # pragma: no cover
        raise NotImplementedError


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        output_dir=tmp_path,
        auto_download=True,
        max_poll_attempts=5,
        poll_base_delay_ms=4000,
        poll_backoff_factor=1.2,
        poll_max_delay_ms=20000,
        enable_keep_alive=False,
    )


@pytest.fixture
def sleep():
    return AsyncMock()


def make_tracker(settings, sleep, sonauto=None, acestep=None, store=None, clock=None):
    providers = {}
    if sonauto is not None:
        providers[ProviderName.SONAUTO] = sonauto
    if acestep is not None:
        providers[ProviderName.ACESTEP] = acestep
    kwargs = {"clock": clock} if clock else {}
    return TaskTracker(
        settings, store or ArtifactStore(settings.output_dir), providers, sleep=sleep, **kwargs
    )


CUSTOM = GenerationRequest(mode="custom", lyrics="hello", tags=["pop"])


class TestBackoff:
    def test_sequence_is_non_decreasing_and_capped(self):
        delays = [backoff_delay(n, 4.0, 1.2, 20.0) for n in range(1, 61)]
        assert delays == sorted(delays)
        assert max(delays) == 20.0
        assert delays[0] == pytest.approx(4.8)

    def test_cap_below_base(self):
        assert backoff_delay(1, 4.0, 1.2, 2.0) == 2.0


class TestPolling:
    @pytest.mark.asyncio
    async def test_custom_scenario_persists_one_artifact(self, settings, sleep):
        sonauto = FakeSonauto([PENDING, PENDING, success("https://cdn.sonauto.ai/a.mp3")])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        task_id = await tracker.submit(CUSTOM)
        assert task_id == "task-1"
        info = await tracker.wait(task_id)

        assert info.state is TaskState.SUCCESS
        assert info.attempts == 3
        assert info.artifacts == ("custom_lyrics_task-1_1.mp3",)
        assert info.result_urls == ("https://cdn.sonauto.ai/a.mp3",)
        assert (settings.output_dir / "custom_lyrics_task-1_1.mp3").read_bytes() == (
            b"audio:https://cdn.sonauto.ai/a.mp3"
        )
        assert [call.args[0] for call in sleep.await_args_list] == [
            pytest.approx(4.8),
            pytest.approx(5.76),
        ]

    @pytest.mark.asyncio
    async def test_state_history_is_monotonic(self, settings, sleep):
        sonauto = FakeSonauto([PENDING, success()])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        task_id = await tracker.submit(CUSTOM)
        await tracker.wait(task_id)

        history = tracker._tasks[task_id].history
        assert history == [TaskState.SUBMITTED, TaskState.PROCESSING, TaskState.SUCCESS]

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self, settings, sleep):
        sonauto = FakeSonauto([PENDING] * 10)
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.TIMEOUT
        assert info.attempts == settings.max_poll_attempts
        assert sonauto.fetch_status.await_count == settings.max_poll_attempts
        # No sleep after the final attempt.
        assert sleep.await_count == settings.max_poll_attempts - 1
        assert info.artifacts == ()

    @pytest.mark.asyncio
    async def test_upstream_failure(self, settings, sleep):
        failure = ProviderStatus(
            state=ProviderState.FAILURE, error_detail="moderation", raw_status="FAILURE"
        )
        sonauto = FakeSonauto([PENDING, failure])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.FAILURE
        assert info.error == "moderation"
        sonauto.download.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self, settings, sleep):
        sonauto = FakeSonauto(
            [
                ProviderTransportError("unreachable"),
                ProviderTransportError("API error (503)", status_code=503),
                ProviderResponseError("garbled"),
                success("https://cdn.sonauto.ai/a.mp3"),
            ]
        )
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.SUCCESS
        assert info.attempts == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ProviderTransportError("API error (404): gone", status_code=404),
            ProviderConfigurationError("Missing Sonauto API key"),
            ProviderBusinessError("rejected"),
        ],
    )
    async def test_persistent_errors_fail_task(self, settings, sleep, error):
        sonauto = FakeSonauto([error, success()])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.FAILURE
        assert info.error == error.message
        assert sonauto.fetch_status.await_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_does_not_escape(self, settings, sleep):
        sonauto = FakeSonauto([RuntimeError("bug")])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.FAILURE
        assert "bug" in info.error

    @pytest.mark.asyncio
    async def test_auto_download_disabled_keeps_upstream_urls(self, tmp_path, sleep):
        settings = Settings(_env_file=None, output_dir=tmp_path, auto_download=False)
        sonauto = FakeSonauto([success("https://cdn.sonauto.ai/a.mp3")])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.SUCCESS
        assert info.artifacts == ()
        assert info.result_urls == ("https://cdn.sonauto.ai/a.mp3",)
        sonauto.download.assert_not_awaited()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_artifact_does_not_abort_siblings(self, settings, sleep):
        sonauto = FakeSonauto(
            [success("https://cdn.sonauto.ai/a.mp3", "https://cdn.sonauto.ai/b.mp3")]
        )
        sonauto.download.side_effect = [ProviderTransportError("Download failed (500)"), b"second"]
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        info = await tracker.wait(await tracker.submit(CUSTOM))

        assert info.state is TaskState.SUCCESS
        assert info.artifacts == ("custom_lyrics_task-1_2.mp3",)
        assert sonauto.download.await_count == 2

    @pytest.mark.asyncio
    async def test_one_write_attempt_per_output(self, settings, sleep):
        store = AsyncMock(spec=ArtifactStore)
        store.save.side_effect = PersistenceError("disk full")
        sonauto = FakeSonauto([success("https://cdn.sonauto.ai/a.mp3")])
        tracker = make_tracker(settings, sleep, sonauto=sonauto, store=store)

        task_id = await tracker.submit(CUSTOM)
        await tracker.wait(task_id)
        task = tracker._tasks[task_id]
        # A repeated completion signal must not trigger a second save.
        await tracker._save_output(task, sonauto, 1, "https://cdn.sonauto.ai/a.mp3")

        assert store.save.await_count == 1
        assert task.attempted_outputs == {1}

    @pytest.mark.asyncio
    async def test_submit_error_creates_no_task(self, settings, sleep):
        sonauto = FakeSonauto()
        sonauto.submit.side_effect = ProviderTransportError("API error (500)", status_code=500)
        tracker = make_tracker(settings, sleep, sonauto=sonauto)

        with pytest.raises(ProviderTransportError):
            await tracker.submit(CUSTOM)
        assert len(tracker) == 0


class TestInlineGeneration:
    @pytest.mark.asyncio
    async def test_success_writes_named_artifact(self, settings, sleep):
        acestep = FakeAceStep()
        tracker = make_tracker(settings, sleep, acestep=acestep, clock=lambda: 1700000000.5)
        request = GenerationRequest(mode="instrumental", provider="acestep")

        task_id = await tracker.submit(request)
        assert task_id == "acestep-1700000000500"
        info = await tracker.wait(task_id)

        assert info.state is TaskState.SUCCESS
        assert info.artifacts == ("acestep-1700000000500.mp3",)
        assert info.result_urls == ("/download/acestep-1700000000500",)
        assert (settings.output_dir / "acestep-1700000000500.mp3").read_bytes() == b"inline-audio"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_colliding_timestamps_get_distinct_ids(self, settings, sleep):
        acestep = FakeAceStep()
        tracker = make_tracker(settings, sleep, acestep=acestep, clock=lambda: 1700000000.0)
        request = GenerationRequest(mode="instrumental", provider="acestep")

        first = await tracker.submit(request)
        second = await tracker.submit(request)

        assert first == "acestep-1700000000000"
        assert second == "acestep-1700000000001"
        await tracker.shutdown()

    @pytest.mark.asyncio
    async def test_provider_error_fails_task_without_artifact(self, settings, sleep):
        acestep = FakeAceStep(error=ProviderBusinessError("no audio"))
        tracker = make_tracker(settings, sleep, acestep=acestep)

        info = await tracker.wait(
            await tracker.submit(GenerationRequest(mode="instrumental", provider="acestep"))
        )

        assert info.state is TaskState.FAILURE
        assert info.artifacts == ()
        assert list(settings.output_dir.iterdir()) == []


class TestRegistry:
    @pytest.mark.asyncio
    async def test_prune_evicts_finished_tasks_after_ttl(self, settings, sleep):
        sonauto = FakeSonauto([success()])
        tracker = make_tracker(settings, sleep, sonauto=sonauto)
        task_id = await tracker.submit(CUSTOM)
        await tracker.wait(task_id)

        assert tracker.prune() == 0
        later = datetime.now(timezone.utc) + timedelta(seconds=settings.task_ttl_seconds + 1)
        assert tracker.prune(now=later) == 1
        assert tracker.get(task_id) is None

    @pytest.mark.asyncio
    async def test_prune_keeps_running_tasks(self, settings, sleep):
        sonauto = FakeSonauto([PENDING] * 10)
        tracker = make_tracker(settings, sleep, sonauto=sonauto)
        task_id = await tracker.submit(CUSTOM)

        later = datetime.now(timezone.utc) + timedelta(days=1)
        assert tracker.prune(now=later) == 0
        assert tracker.get(task_id) is not None
        await tracker.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, settings, sleep):
        tracker = make_tracker(settings, sleep, sonauto=FakeSonauto())
        with pytest.raises(ValidationError, match="Unsupported provider"):
            await tracker.submit(GenerationRequest(mode="instrumental", provider="acestep"))
