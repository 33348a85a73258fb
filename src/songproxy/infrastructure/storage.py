"""
Artifact storage.

Finished tracks are written to a local output directory under deterministic
names and, when an S3 mirror is configured, copied to object storage on a
best-effort basis.
"""

import logging
import os
import re
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol

from songproxy.exceptions import ArtifactNotFoundError, PersistenceError
from songproxy.models import GenerationMode

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

MODE_PREFIXES = {
    GenerationMode.CUSTOM: "custom_lyrics",
    GenerationMode.PROMPT: "prompt_generated",
    GenerationMode.INSTRUMENTAL: "instrumental",
}


def output_artifact_name(mode: GenerationMode, task_id: str, index: int) -> str:
    """Name for the *index*-th (1-based) output of a polled task."""
    return f"{MODE_PREFIXES[mode]}_{task_id}_{index}.mp3"


def inline_artifact_name(task_id: str) -> str:
    """Name for the single output of a synchronously generated task."""
    return f"{task_id}.mp3"


class AudioMirror(Protocol):
    def key_for(self, name: str) -> str: ...

    async def upload_audio_file(
        self, key: str, audio_data: bytes, content_type: str = "audio/mpeg"
    ) -> bool: ...


@dataclass(frozen=True)
class StoredArtifact:
    name: str
    path: Path
    content_type: str
    size: int
    mirror_key: str | None = None


class ArtifactStore:
    """
    Local artifact store with an optional remote mirror.

    Writes go to a temporary file in the output directory and are renamed into
    place, so a reader never observes a partially written track.
    """

    def __init__(self, output_dir: Path, mirror: AudioMirror | None = None):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.mirror = mirror

    def path_for(self, name: str) -> Path:
        if not _NAME_RE.match(name):
            raise ArtifactNotFoundError(f"Invalid artifact name: {name!r}")
        return self.output_dir / name

    async def save(self, name: str, data: bytes, content_type: str = "audio/mpeg") -> StoredArtifact:
        """
        Persist *data* under *name*.

        Raises:
            PersistenceError: the local write failed
        """
        try:
            path = self.path_for(name)
        except ArtifactNotFoundError as e:
            raise PersistenceError(str(e)) from e

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", dir=self.output_dir)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceError(f"Failed to write {name}: {e}") from e

        logger.info(f"Saved artifact {name} ({len(data)} bytes)")

        mirror_key = None
        if self.mirror is not None:
            key = self.mirror.key_for(name)
            if await self.mirror.upload_audio_file(key, data, content_type):
                mirror_key = key
            else:
                logger.warning(f"Mirror upload failed for {name}; local copy kept")

        return StoredArtifact(
            name=name, path=path, content_type=content_type, size=len(data), mirror_key=mirror_key
        )

    def exists(self, name: str) -> bool:
        try:
            return self.path_for(name).is_file()
        except ArtifactNotFoundError:
            return False

    def open_stream(self, name: str) -> BinaryIO:
        """Open a stored artifact for reading; the caller closes it."""
        path = self.path_for(name)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Artifact not found: {name}") from e

    def iter_chunks(self, name: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        # Open eagerly so a missing artifact raises before a response starts.
        stream = self.open_stream(name)

        def _chunks() -> Iterator[bytes]:
            with stream:
                while chunk := stream.read(chunk_size):
                    yield chunk

        return _chunks()
