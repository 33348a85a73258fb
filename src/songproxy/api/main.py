import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from songproxy import __version__
from songproxy.api.generation import router as generation_router
from songproxy.api.middleware import LoggingMiddleware
from songproxy.api.settings import Settings, get_settings
from songproxy.exceptions import SongProxyError
from songproxy.infrastructure.providers import AceStepClient, ProviderClient, SonautoClient
from songproxy.infrastructure.s3 import S3Client
from songproxy.infrastructure.storage import ArtifactStore
from songproxy.models import ErrorResponse, ProviderName
from songproxy.services.keep_alive import KeepAlivePinger
from songproxy.services.task_tracker import TaskTracker

logger = logging.getLogger(__name__)


def build_tracker(settings: Settings) -> TaskTracker:
    """Wire the providers and artifact store described by *settings*."""
    mirror = S3Client(settings) if settings.use_s3 else None
    store = ArtifactStore(settings.output_dir, mirror=mirror)
    providers: dict[ProviderName, ProviderClient] = {
        ProviderName.SONAUTO: SonautoClient(
            api_key=settings.sonauto_api_key,
            base_url=settings.sonauto_base_url,
            timeout=settings.provider_timeout_seconds,
        ),
        ProviderName.ACESTEP: AceStepClient(
            api_key=settings.acestep_api_key,
            base_url=settings.acestep_base_url,
            model=settings.acestep_model,
            timeout=settings.provider_timeout_seconds,
        ),
    }
    return TaskTracker(settings, store, providers)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    message = str(error.get("msg", "Invalid request")).removeprefix("Value error, ")
    fields = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    if error.get("type") == "missing":
        return f"{fields[-1] if fields else 'Request body'} missing"
    if fields:
        return f"{'.'.join(fields)}: {message}"
    return message


def create_app(settings: Settings | None = None, tracker: TaskTracker | None = None) -> FastAPI:
    """Build the FastAPI application.

    Tests pass their own *settings* and a *tracker* wired to fake providers;
    uvicorn calls this as a factory with no arguments.
    """
    if settings is None:
        settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    if tracker is None:
        tracker = build_tracker(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pinger = None
        if settings.enable_keep_alive and settings.keep_alive_url:
            pinger = KeepAlivePinger(
                settings.keep_alive_url,
                interval=settings.keep_alive_interval_ms / 1000,
                timeout=settings.keep_alive_timeout_ms / 1000,
            )
            pinger.start()
        try:
            yield
        finally:
            await tracker.shutdown()
            if pinger is not None:
                await pinger.stop()
            for provider in tracker.providers.values():
                await provider.close()

    app = FastAPI(title="songproxy", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.tracker = tracker

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-CLIENT-KEY", "X-API-KEY"],
    )

    @app.exception_handler(SongProxyError)
    async def songproxy_error_handler(request: Request, exc: SongProxyError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code, content=ErrorResponse(message=exc.message).model_dump()
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _validation_message(exc)
        logger.info(f"{request.method} {request.url.path} invalid: {message}")
        return JSONResponse(status_code=400, content=ErrorResponse(message=message).model_dump())

    app.include_router(generation_router)

    @app.get("/", response_class=PlainTextResponse, tags=["Utility"])
    async def root() -> str:
        return "Sonauto Proxy"

    @app.get("/health", tags=["Utility"])
    async def health() -> dict[str, str | int]:
        """Return basic service health status."""
        return {"status": "ok", "tracked_tasks": len(tracker)}

    return app
