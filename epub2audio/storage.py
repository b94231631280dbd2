"""Blob storage for generated audio.

Audio files live on the local filesystem below a single root directory
(``config.audio_dir()`` by default). Keys are relative paths such as
``<hash>.mp3``; a key that would resolve outside the root is rejected.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

from . import config
from .errors import StorageError

logger = logging.getLogger(__name__)


class BlobStore:
    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else config.audio_dir()

    def path_for(self, key: str) -> Path:
        """Return the filesystem path for ``key``."""
        if not key or key.startswith(("/", "\\")):
            raise StorageError(f"Invalid storage key: {key!r}")
        root = self.root.resolve()
        path = (root / key).resolve()
        if path != root and root not in path.parents:
            raise StorageError(f"Invalid storage key: {key!r}")
        return path

    def upload(self, key: str, data: bytes) -> str:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temporary file first so readers never see partial audio.
        tmp_path = path.with_name(path.name + ".part")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as exc:
            logger.error("Failed to store %s: %s", key, exc)
            raise StorageError(f"Failed to store {key}") from exc
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return key

    def download(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {key}") from exc

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except StorageError:
            return False

    def size(self, key: str) -> int:
        return self.path_for(key).stat().st_size

    def remove(self, keys: Iterable[str]) -> int:
        """Delete the given keys; missing files are ignored. Returns the count removed."""
        removed = 0
        for key in keys:
            path = self.path_for(key)
            if path.is_file():
                path.unlink()
                removed += 1
        return removed
