import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables or `.env` file."""

    log_level: str = Field(default="INFO", description="Logging level")
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="HTTP port")

    # Sonauto (polling provider)
    sonauto_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EXPO_PUBLIC_SONAUTO_API_KEY", "SONAUTO_API_KEY"),
    )
    sonauto_base_url: str = Field(default="https://api.sonauto.ai/v1")

    # ACE-Step (synchronous provider)
    acestep_api_key: str | None = None
    acestep_base_url: str = Field(default="https://api.acemusic.ai")
    acestep_model: str = Field(default="acemusic/acestep-v1.5-turbo")

    provider_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Per-request timeout for provider calls"
    )

    # Artifacts
    auto_download: bool = Field(
        default=False, description="Save finished Sonauto tracks to the output directory"
    )
    output_dir: Path = Field(default=Path("songs"))

    # Polling
    max_poll_attempts: int = Field(default=60, ge=1)
    poll_base_delay_ms: int = Field(default=4000, ge=0)
    poll_backoff_factor: float = Field(default=1.2, ge=1.0)
    poll_max_delay_ms: int = Field(default=20000, ge=0)
    task_ttl_seconds: int = Field(
        default=3600, ge=0, description="How long finished tasks stay queryable in memory"
    )

    # Client protection and download proxy
    client_api_key: str | None = Field(default=None, description="Shared secret for /generate")
    allowed_download_hosts: str = Field(
        default="sonauto.ai", description="Comma-separated hosts /download?url= may fetch from"
    )

    # S3 mirror
    aws_s3_bucket: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_region: str = Field(default="us-east-1")
    s3_endpoint_url: str | None = None
    s3_key_prefix: str = Field(default="sonauto")

    # Keep-alive
    enable_keep_alive: bool = Field(default=True)
    keep_alive_url: str | None = Field(
        default=None, validation_alias=AliasChoices("KEEP_ALIVE_URL", "PUBLIC_URL")
    )
    keep_alive_interval_ms: int = Field(default=4 * 60 * 1000, gt=0)
    keep_alive_timeout_ms: int = Field(default=8 * 1000, gt=0)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "populate_by_name": True,
        "extra": "ignore",
        "frozen": True,
    }

    @property
    def download_hosts(self) -> tuple[str, ...]:
        return tuple(
            host.strip().lower() for host in self.allowed_download_hosts.split(",") if host.strip()
        )

    @property
    def use_s3(self) -> bool:
        return bool(self.aws_s3_bucket and self.aws_access_key_id and self.aws_secret_access_key)

    @property
    def poll_base_delay(self) -> float:
        return self.poll_base_delay_ms / 1000

    @property
    def poll_max_delay(self) -> float:
        return self.poll_max_delay_ms / 1000


@lru_cache
def get_settings() -> Settings:  # pragma: no cover
    """Return a cached instance of Settings."""
    s = Settings()
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Starting songproxy")
    logger.info("=" * 60)
    logger.info(f"Sonauto key configured: {bool(s.sonauto_api_key)}")
    logger.info(f"ACE-Step base URL: {s.acestep_base_url}")
    logger.info(f"Auto download: {s.auto_download} (output dir: {s.output_dir})")
    logger.info(f"S3 mirror: {s.aws_s3_bucket if s.use_s3 else 'disabled'}")
    logger.info(f"Keep-alive URL: {s.keep_alive_url or 'unset'}")
    logger.info("=" * 60)

    if not s.sonauto_api_key:
        logger.warning("EXPO_PUBLIC_SONAUTO_API_KEY not set - Sonauto requests will be rejected!")
    if s.aws_s3_bucket and not s.use_s3:
        logger.warning("AWS_S3_BUCKET set without AWS credentials - S3 mirror disabled")

    return s
