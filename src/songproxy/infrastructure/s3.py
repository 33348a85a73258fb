import logging

import aioboto3
from botocore.client import Config

from songproxy.api.settings import Settings

logger = logging.getLogger(__name__)


class S3Client:
    """S3-compatible object storage client used to mirror finished tracks."""

    def __init__(self, settings: Settings):
        self.bucket = settings.aws_s3_bucket
        self.key_prefix = settings.s3_key_prefix.strip("/")
        self._session = aioboto3.Session()
        self._client_params = {
            "service_name": "s3",
            "region_name": settings.aws_region,
            "endpoint_url": settings.s3_endpoint_url,
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
            "config": Config(signature_version="s3v4"),
        }

    def key_for(self, name: str) -> str:
        return f"{self.key_prefix}/{name}" if self.key_prefix else name

    async def upload_audio_file(
        self, key: str, audio_data: bytes, content_type: str = "audio/mpeg"
    ) -> bool:
        """Upload audio data, returning False instead of raising on failure."""
        try:
            async with self._session.client(**self._client_params) as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=audio_data,
                    ContentType=content_type,
                    ACL="private",
                )
            logger.info(f"[S3] Audio upload successful: {key}")
            return True
        except Exception as e:
            logger.error(f"[S3] Audio upload failed for {key}: {e}")
            return False
