"""Runtime configuration for the epub2audio service.

All settings come from environment variables and are read once at import
time. Other modules access them as ``config.NAME`` at call time rather than
importing the values directly, so a test can ``monkeypatch`` a single
attribute without reloading anything.
"""

from __future__ import annotations

import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


# Root directory for uploads and cached audio.
DATA_DIR = Path(os.environ.get("EPUB2AUDIO_DATA_DIR", "/mnt/data/epub2audio"))
DB_PATH = os.environ.get("EPUB2AUDIO_DB", str(DATA_DIR / "epub2audio.db"))

LOG_LEVEL = os.environ.get("EPUB2AUDIO_LOG_LEVEL", "INFO")

# Uploads larger than this are rejected before extraction.
MAX_UPLOAD_BYTES = 100 * 1024 * 1024

# Google Cloud TTS refuses requests above 5000 bytes; keep a margin.
CHUNK_MAX_BYTES = _int_env("EPUB2AUDIO_CHUNK_MAX_BYTES", 4800)

MAX_PARALLEL_CHUNKS = _int_env("EPUB2AUDIO_MAX_PARALLEL_CHUNKS", 2)
MAX_CHUNK_RETRIES = _int_env("EPUB2AUDIO_CHUNK_RETRIES", 1)
TTS_MAX_RETRIES = _int_env("EPUB2AUDIO_TTS_RETRIES", 3)
RETRY_BASE_DELAY = _float_env("EPUB2AUDIO_RETRY_DELAY", 1.0)

CACHE_TTL_DAYS = _int_env("EPUB2AUDIO_CACHE_TTL_DAYS", 30)

DEFAULT_PROVIDER = os.environ.get("EPUB2AUDIO_DEFAULT_PROVIDER", "silent")
GOOGLE_TTS_API_KEY = os.environ.get("GOOGLE_TTS_API_KEY")
ELEVEN_LABS_API_KEY = os.environ.get("ELEVEN_LABS_API_KEY")


def uploads_dir() -> Path:
    return DATA_DIR / "uploads"


def audio_dir() -> Path:
    return DATA_DIR / "audio_cache"
