"""Conversion of extracted text into a single MP3 file.

The text is split into chunks small enough for a TTS request. A small
pool of asyncio workers submits the chunks to the provider: each worker
first takes chunks waiting in the retry queue, then the next chunk in
reading order. Every chunk request is itself wrapped in
:func:`epub2audio.retry.retry_operation`. A chunk that keeps failing is
re-queued a limited number of times and is then given up on while the
other chunks continue; the integrity check after the workers finish
turns any missing chunk into a :class:`ConversionError`.

MP3 frames can be concatenated, so the final file is the chunk audio
joined in index order.

:func:`run_conversion` wraps all of this for the API: it consults the
audio cache, keeps the database row and chunk rows current, feeds the
progress tracker and publishes each snapshot on the change feed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from . import cache, config, db
from .chapters import Chapter, attach_timestamps
from .chunker import chunk_text, clean_text, validate_chunk
from .errors import ConversionError, SynthesisError
from .events import ChangeFeed
from .extraction import process_file
from .progress import (
    PerformanceMetrics,
    ProgressRegistry,
    ProgressUpdate,
    calculate_progress_data,
)
from .retry import retry_operation
from .storage import BlobStore
from .tts import SILENT_MP3_BYTES

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]
ChunkCallback = Callable[[int, str, Optional[str]], None]

# Learned from finished conversions, used for up-front estimates.
performance_metrics = PerformanceMetrics()


class ChunkLedger:
    """Chunks of one conversion and the audio produced for them so far."""

    def __init__(self, text: str, on_progress: Optional[ProgressCallback] = None,
                 max_bytes: Optional[int] = None) -> None:
        # Cleaning can lengthen text, so chunks are cut from the cleaned form.
        cleaned = "\n".join(clean_text(line) for line in text.split("\n"))
        self.chunks = chunk_text(cleaned, max_bytes or config.CHUNK_MAX_BYTES)
        self.total_characters = sum(len(chunk) for chunk in self.chunks)
        self.processed_characters = 0
        self.on_progress = on_progress
        self._buffers: Dict[int, bytes] = {}
        self._retries: Dict[int, int] = {}

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def processed_chunks(self) -> int:
        return len(self._buffers)

    def chunk(self, index: int) -> str:
        return self.chunks[index]

    def has_result(self, index: int) -> bool:
        return index in self._buffers

    def register_result(self, index: int, audio: bytes) -> None:
        if index in self._buffers:
            logger.warning("Duplicate chunk detected: %d, ignoring", index)
            return
        self._buffers[index] = audio
        self.processed_characters += len(self.chunks[index])
        self._emit(calculate_progress_data(
            self.processed_chunks,
            self.total_chunks,
            self.processed_characters,
            self.total_characters,
            current_chunk=self.chunks[index],
        ))

    def retry_count(self, index: int) -> int:
        return self._retries.get(index, 0)

    def increment_retry(self, index: int) -> int:
        self._retries[index] = self.retry_count(index) + 1
        return self._retries[index]

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self._buffers]

    def ordered_buffers(self) -> List[bytes]:
        return [self._buffers[i] for i in range(self.total_chunks) if i in self._buffers]

    def notify_completion(self) -> None:
        self._emit(ProgressUpdate(
            progress=100,
            processed_chunks=self.total_chunks,
            total_chunks=self.total_chunks,
            processed_characters=self.total_characters,
            total_characters=self.total_characters,
            is_completed=True,
        ))

    def _emit(self, update: ProgressUpdate) -> None:
        if self.on_progress is not None:
            self.on_progress(update)


async def synthesize_chunk(provider: Any, text: str, voice: Optional[str], index: int, total: int) -> bytes:
    """Return the audio for one chunk, retrying transient provider failures."""
    text = clean_text(text)
    if not text:
        logger.debug("Chunk %d/%d is blank, using silence", index + 1, total)
        return SILENT_MP3_BYTES
    validate_chunk(text, config.CHUNK_MAX_BYTES)

    async def attempt() -> bytes:
        audio, _duration = await provider.synthesize(text, voice)
        if not audio:
            raise SynthesisError(f"Empty audio returned for chunk {index + 1}/{total}")
        return audio

    return await retry_operation(
        attempt,
        max_retries=config.TTS_MAX_RETRIES,
        base_delay=config.RETRY_BASE_DELAY,
        name=f"Chunk {index + 1}/{total}",
    )


async def process_chunks_in_parallel(
    ledger: ChunkLedger,
    provider: Any,
    voice: Optional[str],
    max_parallel: Optional[int] = None,
    max_chunk_retries: Optional[int] = None,
    on_chunk: Optional[ChunkCallback] = None,
) -> Set[int]:
    """Synthesize every chunk of ``ledger`` with a pool of workers.

    Returns the indexes of chunks that failed permanently.
    """
    max_parallel = max_parallel or config.MAX_PARALLEL_CHUNKS
    if max_chunk_retries is None:
        max_chunk_retries = config.MAX_CHUNK_RETRIES
    total = ledger.total_chunks
    retry_queue: Deque[int] = deque()
    failed: Set[int] = set()
    next_index = 0

    def report(index: int, status: str, error: Optional[str] = None) -> None:
        if on_chunk is not None:
            on_chunk(index, status, error)

    async def worker(worker_id: int) -> None:
        nonlocal next_index
        while True:
            if retry_queue:
                index = retry_queue.popleft()
                logger.info("Worker %d retrying chunk %d/%d", worker_id, index + 1, total)
            elif next_index < total:
                index = next_index
                next_index += 1
            else:
                return
            if ledger.has_result(index) or index in failed:
                continue

            report(index, "processing")
            try:
                audio = await synthesize_chunk(provider, ledger.chunk(index), voice, index, total)
            except Exception as exc:
                retries = ledger.retry_count(index)
                if retries < max_chunk_retries:
                    ledger.increment_retry(index)
                    retry_queue.append(index)
                    logger.warning("Retrying chunk %d/%d (attempt %d): %s", index + 1, total, retries + 1, exc)
                    report(index, "pending", str(exc))
                else:
                    failed.add(index)
                    logger.error(
                        "Chunk %d/%d failed permanently after %d retries: %s",
                        index + 1, total, max_chunk_retries, exc,
                        extra={"event_type": "conversion"},
                    )
                    report(index, "failed", str(exc))
                continue
            ledger.register_result(index, audio)
            report(index, "completed")

    logger.info("Processing %d chunks with %d workers", total, max_parallel)
    await asyncio.gather(*(worker(i) for i in range(max(1, min(max_parallel, total)))))
    if failed:
        logger.warning("Finished with %d permanently failed chunks out of %d", len(failed), total)
    return failed


async def convert_text_to_audio(
    text: str,
    voice: Optional[str],
    provider: Any,
    on_progress: Optional[ProgressCallback] = None,
    on_chunk: Optional[ChunkCallback] = None,
    ledger: Optional[ChunkLedger] = None,
) -> bytes:
    """Convert ``text`` into MP3 bytes.

    ``ledger`` may be passed when the caller needs the chunks before
    synthesis starts; otherwise one is built from ``text``.
    """
    if not text or not text.strip():
        raise ConversionError("There is no text to convert")
    ledger = ledger or ChunkLedger(text, on_progress)
    logger.info("Starting conversion: %d characters in %d chunks", len(text), ledger.total_chunks)

    await process_chunks_in_parallel(ledger, provider, voice, on_chunk=on_chunk)

    missing = ledger.missing_chunks()
    if missing:
        listed = ", ".join(str(i + 1) for i in missing[:10])
        raise ConversionError(f"Integrity error: {len(missing)} chunks could not be converted ({listed})")
    audio = b"".join(ledger.ordered_buffers())
    if not audio:
        raise ConversionError("The final audio file is empty")
    ledger.notify_completion()
    logger.info("Conversion completed, final size %d bytes", len(audio))
    return audio


def _chapters_payload(chapters: Optional[List[Chapter]]) -> Optional[List[Dict[str, Any]]]:
    if chapters is None:
        return None
    return [chapter.to_dict() for chapter in attach_timestamps(chapters)]


async def run_conversion(
    conversion_id: str,
    text: str,
    voice_id: str,
    provider: Any,
    registry: ProgressRegistry,
    feed: ChangeFeed,
    chapters: Optional[List[Chapter]] = None,
    store: Optional[BlobStore] = None,
) -> None:
    """Convert ``text`` for an existing conversion row.

    Never raises: a failure is logged, stored on the row as ``error`` and
    published on the feed.
    """
    store = store or BlobStore()
    hash_value = cache.text_hash(text, voice_id, provider.name)
    chapter_data = _chapters_payload(chapters)
    tracker = registry.start(
        conversion_id,
        total_characters=len(text),
        estimated_seconds=performance_metrics.estimate_ms(text) / 1000,
    )

    def publish() -> None:
        feed.publish(conversion_id, tracker.snapshot().to_dict())

    try:
        db.update_conversion(
            conversion_id,
            status="converting",
            text_hash=hash_value,
            total_characters=len(text),
            chapters=chapter_data,
        )
        publish()

        cached = cache.check_cache(hash_value, store)
        if cached is not None:
            key, expires_at = cached
            db.update_conversion(
                conversion_id,
                status="completed",
                progress=100,
                processed_characters=len(text),
                storage_path=key,
                file_size=store.size(key),
                is_cached=True,
                expires_at=expires_at,
            )
            tracker.complete()
            db.insert_log("conversion", "Served from cache", conversion_id=conversion_id)
            logger.info("Conversion %s served from cache", conversion_id)
            publish()
            return

        def on_progress(update: ProgressUpdate) -> None:
            if update.is_completed:
                # Published below, once the audio is stored.
                return
            tracker.update(update)
            db.update_conversion(
                conversion_id,
                progress=round(tracker.progress, 1),
                processed_chunks=tracker.processed_chunks,
                processed_characters=tracker.processed_characters,
            )
            publish()

        def on_chunk(index: int, status: str, error: Optional[str]) -> None:
            db.update_chunk_status(conversion_id, index, status, error)

        ledger = ChunkLedger(text, on_progress)
        tracker.total_chunks = ledger.total_chunks
        db.insert_chunks(conversion_id, ledger.chunks)
        db.update_conversion(conversion_id, total_chunks=ledger.total_chunks)

        started = time.perf_counter()
        audio = await convert_text_to_audio(
            text, voice_id, provider, on_chunk=on_chunk, ledger=ledger
        )
        duration_ms = (time.perf_counter() - started) * 1000
        performance_metrics.record(len(text), duration_ms)

        key, expires_at = cache.save_to_cache(hash_value, audio, store)
        db.update_conversion(
            conversion_id,
            status="completed",
            progress=100,
            processed_chunks=ledger.total_chunks,
            processed_characters=len(text),
            storage_path=key,
            file_size=len(audio),
            is_cached=False,
            expires_at=expires_at,
        )
        db.insert_log(
            "performance",
            f"Converted {len(text)} characters in {duration_ms / 1000:.1f}s",
            conversion_id=conversion_id,
            duration_ms=duration_ms,
            data={"characters": len(text), "chunks": ledger.total_chunks, "provider": provider.name},
        )
        tracker.complete()
        publish()
    except Exception as exc:
        logger.error(
            "Conversion %s failed: %s", conversion_id, exc,
            exc_info=not isinstance(exc, ConversionError),
            extra={"event_type": "conversion", "conversion_id": conversion_id},
        )
        tracker.fail(str(exc))
        db.update_conversion(conversion_id, status="error", error=str(exc))
        publish()
    finally:
        registry.discard(conversion_id)


async def run_document_conversion(
    conversion_id: str,
    path: Path,
    file_name: str,
    voice_id: str,
    provider: Any,
    registry: ProgressRegistry,
    feed: ChangeFeed,
    detect_chapters: bool = True,
    store: Optional[BlobStore] = None,
) -> None:
    """Extract an uploaded document and convert its text.

    The upload is removed once its text has been extracted.
    """
    try:
        db.update_conversion(conversion_id, status="extracting")
        result = await asyncio.to_thread(process_file, path, file_name, detect_chapters)
    except Exception as exc:
        logger.error(
            "Extraction for %s failed: %s", conversion_id, exc,
            extra={"event_type": "extraction", "conversion_id": conversion_id},
        )
        db.update_conversion(conversion_id, status="error", error=str(exc))
        feed.publish(conversion_id, {"status": "error", "error": str(exc)})
        return
    finally:
        Path(path).unlink(missing_ok=True)

    await run_conversion(
        conversion_id,
        result.text,
        voice_id,
        provider,
        registry,
        feed,
        chapters=result.chapters,
        store=store,
    )
