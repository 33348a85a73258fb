"""Song generation, status and download endpoints."""

import logging
from collections.abc import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from songproxy.api.auth import require_client_key
from songproxy.api.settings import Settings
from songproxy.api.utils import (
    get_app_settings,
    get_polling_provider,
    get_store,
    get_tracker,
    inline_provider_for,
    is_allowed_track_url,
    polling_provider,
)
from songproxy.exceptions import ArtifactNotFoundError, SSRFRejection, ValidationError
from songproxy.infrastructure.providers import PollingProvider, ProviderState
from songproxy.infrastructure.storage import (
    ArtifactStore,
    inline_artifact_name,
    output_artifact_name,
)
from songproxy.models import (
    GenerationMode,
    GenerationRequest,
    StatusResponse,
    SubmitResponse,
    TaskInfo,
)
from songproxy.services.task_tracker import TaskTracker, download_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Generation"])

_CLIENT_STATUS = {
    ProviderState.PENDING: "PROCESSING",
    ProviderState.SUCCESS: "SUCCESS",
    ProviderState.FAILURE: "FAILURE",
}


@router.post(
    "/generate",
    status_code=202,
    response_model=SubmitResponse,
    dependencies=[Depends(require_client_key)],
)
async def generate(
    request: GenerationRequest, tracker: TaskTracker = Depends(get_tracker)
) -> SubmitResponse:
    """Submit a generation and return its task id immediately."""
    logger.info(f"Submitting generation mode={request.mode.value} provider={request.provider.value}")
    task_id = await tracker.submit(request)
    return SubmitResponse(task_id=task_id)


@router.get("/status/{task_id}", response_model=StatusResponse, response_model_exclude_none=True)
async def get_status(
    task_id: str,
    tracker: TaskTracker = Depends(get_tracker),
    store: ArtifactStore = Depends(get_store),
) -> StatusResponse:
    """Return the normalized status of a task."""
    if inline_provider_for(task_id, tracker):
        # Inline tasks are finished exactly when their artifact exists.
        if store.exists(inline_artifact_name(task_id)):
            return StatusResponse(status="SUCCESS", song_paths=[download_path(task_id)])
        return StatusResponse(status="PROCESSING")

    provider = polling_provider(tracker)
    status = await provider.fetch_status(task_id)
    info = tracker.get(task_id)
    return StatusResponse(
        status=_CLIENT_STATUS[status.state],
        song_paths=list(status.result_urls) or None,
        error_message=status.error_detail,
        task_state=info.state if info else None,
        downloads=_local_downloads(info) or None,
    )


@router.get("/download/{task_id}")
async def download_artifact(
    task_id: str,
    index: int = Query(1, ge=1, description="Which output of a multi-song task"),
    tracker: TaskTracker = Depends(get_tracker),
    store: ArtifactStore = Depends(get_store),
) -> StreamingResponse:
    """Stream a locally stored artifact."""
    name = _resolve_artifact_name(task_id, index, tracker, store)
    chunks = store.iter_chunks(name)
    return StreamingResponse(
        chunks,
        media_type="audio/mpeg",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@router.get("/download")
async def download_track(
    url: str | None = Query(None, description="Provider track URL"),
    settings: Settings = Depends(get_app_settings),
    provider: PollingProvider = Depends(get_polling_provider),
) -> StreamingResponse:
    """Proxy a track from the provider's own hosts."""
    if not url:
        raise ValidationError("Missing url query parameter")
    if not is_allowed_track_url(url, settings.download_hosts):
        logger.warning(f"Rejected download proxy URL {url!r}")
        raise SSRFRejection("Track URL not allowed")

    upstream = await provider.open_stream(url)
    return StreamingResponse(
        _relay(upstream),
        media_type=upstream.headers.get("content-type", "audio/mpeg"),
        headers={"Content-Disposition": 'attachment; filename="track.mp3"'},
    )


async def _relay(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """Yield the upstream body, closing it even if the client goes away."""
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


def _local_downloads(info: TaskInfo | None) -> list[str]:
    if info is None:
        return []
    return [
        download_path(info.id, index)
        for index in range(1, len(info.result_urls) + 1)
        if output_artifact_name(info.mode, info.id, index) in info.artifacts
    ]


def _resolve_artifact_name(
    task_id: str, index: int, tracker: TaskTracker, store: ArtifactStore
) -> str:
    if inline_provider_for(task_id, tracker):
        return inline_artifact_name(task_id)

    info = tracker.get(task_id)
    modes = [info.mode] if info else list(GenerationMode)
    for mode in modes:
        name = output_artifact_name(mode, task_id, index)
        if store.exists(name):
            return name
    raise ArtifactNotFoundError("File not found")
