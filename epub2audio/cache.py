"""Audio cache keyed by a hash of the converted input.

Finished audio is stored once under ``<hash>.mp3``. A later conversion of
the same text with the same voice and provider is answered from the
cache as long as a completed conversion with that hash exists, has not
expired and its blob is still present.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from . import config, db
from .errors import CacheError, StorageError
from .storage import BlobStore

logger = logging.getLogger(__name__)


def text_hash(text: str, voice_id: str, provider: str) -> str:
    """SHA-256 hex digest identifying a conversion input."""
    digest = hashlib.sha256()
    for part in (provider, voice_id, text):
        encoded = part.encode("utf-8")
        # Length prefix keeps ("ab", "c") and ("a", "bc") apart.
        digest.update(str(len(encoded)).encode("ascii") + b":" + encoded)
    return digest.hexdigest()


def cache_key(hash_value: str) -> str:
    return f"{hash_value}.mp3"


def expiry_from(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(days=config.CACHE_TTL_DAYS)).isoformat()


def check_cache(hash_value: str, store: Optional[BlobStore] = None) -> Optional[Tuple[str, str]]:
    """Return ``(storage_key, expires_at)`` of cached audio for ``hash_value`` or None."""
    store = store or BlobStore()
    row = db.find_completed_by_hash(hash_value)
    if row is None:
        return None
    key = row["storage_path"]
    if not store.exists(key):
        logger.warning("Cached audio %s is missing from storage", key)
        return None
    logger.info("Cache hit for %s", hash_value[:12])
    return key, row["expires_at"]


def fetch_from_cache(key: str, store: Optional[BlobStore] = None) -> bytes:
    store = store or BlobStore()
    try:
        return store.download(key)
    except StorageError as exc:
        raise CacheError(f"Cached audio {key} could not be read") from exc


def save_to_cache(hash_value: str, audio: bytes, store: Optional[BlobStore] = None) -> Tuple[str, str]:
    """Store ``audio`` and return ``(storage_key, expires_at)``."""
    store = store or BlobStore()
    key = cache_key(hash_value)
    try:
        store.upload(key, audio)
    except StorageError as exc:
        raise CacheError(f"Failed to cache audio for {hash_value[:12]}") from exc
    return key, expiry_from()


def cleanup_expired(now: Optional[datetime] = None, store: Optional[BlobStore] = None) -> int:
    """Delete expired conversions with their chunks and audio. Returns how many were removed."""
    store = store or BlobStore()
    cutoff = (now or datetime.now(timezone.utc)).isoformat()
    expired = db.list_expired(cutoff)
    if not expired:
        return 0
    keys = set()
    for row in expired:
        key = row.get("storage_path")
        # A newer conversion of the same input may have rewritten the blob.
        if key and db.find_completed_by_hash(row["text_hash"], cutoff) is None:
            keys.add(key)
    removed_files = store.remove(sorted(keys))
    deleted = db.delete_conversions(row["id"] for row in expired)
    logger.info("Cleanup removed %d expired conversions and %d audio files", deleted, removed_files)
    db.insert_log("cleanup", f"Removed {deleted} expired conversions", data={"files": removed_files})
    return deleted
