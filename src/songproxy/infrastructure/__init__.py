"""I/O boundary adapters (provider APIs, local and object storage)."""

from .providers import AceStepClient, SonautoClient
from .s3 import S3Client
from .storage import ArtifactStore, StoredArtifact

__all__ = [
    "AceStepClient",
    "ArtifactStore",
    "S3Client",
    "SonautoClient",
    "StoredArtifact",
]
