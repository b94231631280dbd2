from __future__ import annotations

import asyncio

import pytest

from epub2audio import config, conversion, db
from epub2audio.chapters import Chapter
from epub2audio.chunker import chunk_text
from epub2audio.errors import ConversionError, StorageError, SynthesisError
from epub2audio.progress import ProgressRegistry
from epub2audio.storage import BlobStore
from epub2audio.tts import SILENT_MP3_BYTES


TEXT = (
    "The first sentence is here. A second one follows it. Then comes the third. "
    "The fourth sentence is longer than the others. Finally the fifth arrives."
)


class FakeProvider:
    name = "fake"

    def __init__(self, failures=None, always_fail=()):
        self.calls = []
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail)

    async def synthesize(self, text, voice=None):
        self.calls.append(text)
        # Uneven latency so workers finish out of order.
        await asyncio.sleep(0.001 * (len(text) % 3))
        if text in self.always_fail:
            raise SynthesisError(f"cannot synthesize {text!r}")
        if self.failures.get(text, 0) > 0:
            self.failures[text] -= 1
            raise SynthesisError("temporary failure")
        return f"[{text}]".encode("utf-8"), 1


class RecordingFeed:
    def __init__(self):
        self.events = []

    def publish(self, key, payload):
        self.events.append((key, payload))


@pytest.fixture
def small_chunks(monkeypatch):
    monkeypatch.setattr(config, "CHUNK_MAX_BYTES", 60)
    monkeypatch.setattr(config, "TTS_MAX_RETRIES", 0)
    monkeypatch.setattr(config, "RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(config, "MAX_CHUNK_RETRIES", 1)
    return chunk_text(TEXT, 60)


def test_audio_is_joined_in_chunk_order(small_chunks):
    assert len(small_chunks) > 2
    provider = FakeProvider()
    updates = []
    audio = asyncio.run(conversion.convert_text_to_audio(TEXT, "voice", provider, on_progress=updates.append))

    assert audio == b"".join(f"[{chunk}]".encode("utf-8") for chunk in small_chunks)
    assert sorted(provider.calls) == sorted(small_chunks)
    assert updates[-1].is_completed
    assert all(update.progress <= 99 for update in updates[:-1])
    assert [u.processed_chunks for u in updates[:-1]] == list(range(1, len(small_chunks) + 1))


def test_failed_chunk_is_requeued(small_chunks):
    flaky = small_chunks[1]
    provider = FakeProvider(failures={flaky: 1})
    statuses = []
    audio = asyncio.run(conversion.convert_text_to_audio(
        TEXT, "voice", provider, on_chunk=lambda index, status, error: statuses.append((index, status))
    ))

    assert provider.calls.count(flaky) == 2
    assert f"[{flaky}]".encode("utf-8") in audio
    assert (1, "pending") in statuses
    assert (1, "completed") in statuses


def test_permanently_failed_chunk_fails_integrity_check(small_chunks):
    broken = small_chunks[0]
    provider = FakeProvider(always_fail={broken})
    with pytest.raises(ConversionError, match="Integrity"):
        asyncio.run(conversion.convert_text_to_audio(TEXT, "voice", provider))
    # The remaining chunks were still processed.
    for chunk in small_chunks[1:]:
        assert chunk in provider.calls
    assert provider.calls.count(broken) == 2


def test_parallel_processing_reports_failed_indexes(small_chunks):
    provider = FakeProvider(always_fail={small_chunks[-1]})
    ledger = conversion.ChunkLedger(TEXT)
    failed = asyncio.run(conversion.process_chunks_in_parallel(
        ledger, provider, "voice", max_parallel=3, max_chunk_retries=0
    ))
    assert failed == {len(small_chunks) - 1}
    assert ledger.missing_chunks() == [len(small_chunks) - 1]


def test_blank_chunk_becomes_silence():
    provider = FakeProvider()
    audio = asyncio.run(conversion.synthesize_chunk(provider, " \n ", "voice", 0, 1))
    assert audio == SILENT_MP3_BYTES
    assert provider.calls == []


def test_empty_provider_audio_is_an_error(monkeypatch):
    monkeypatch.setattr(config, "TTS_MAX_RETRIES", 1)
    monkeypatch.setattr(config, "RETRY_BASE_DELAY", 0.0)

    class EmptyProvider(FakeProvider):
        async def synthesize(self, text, voice=None):
            self.calls.append(text)
            return b"", 0

    provider = EmptyProvider()
    with pytest.raises(SynthesisError, match="Empty audio"):
        asyncio.run(conversion.synthesize_chunk(provider, "Some text.", "voice", 0, 1))
    assert len(provider.calls) == 2


def test_empty_text_is_rejected():
    with pytest.raises(ConversionError):
        asyncio.run(conversion.convert_text_to_audio("   ", "voice", FakeProvider()))


def _new_conversion(conversion_id):
    db.insert_conversion({
        "id": conversion_id,
        "file_name": "book.epub",
        "voice_id": "voice",
        "provider": "fake",
        "status": "pending",
    })


def test_run_conversion_stores_audio_and_records_progress(data_dir, small_chunks):
    provider = FakeProvider()
    feed = RecordingFeed()
    registry = ProgressRegistry()
    _new_conversion("c1")

    asyncio.run(conversion.run_conversion(
        "c1", TEXT, "voice", provider, registry, feed,
        chapters=[Chapter("Chapter 1", 0), Chapter("Chapter 2", 1500)],
    ))

    row = db.get_conversion("c1")
    assert row["status"] == "completed"
    assert row["progress"] == 100
    assert row["total_chunks"] == len(small_chunks)
    assert row["is_cached"] is False
    assert row["expires_at"]
    assert [c["timestamp"] for c in row["chapters"]] == [0, 120]
    audio = BlobStore().download(row["storage_path"])
    assert audio == b"".join(f"[{chunk}]".encode("utf-8") for chunk in small_chunks)
    assert row["file_size"] == len(audio)
    assert {chunk["status"] for chunk in db.get_chunks("c1")} == {"completed"}

    statuses = [payload["status"] for _, payload in feed.events]
    assert statuses[0] == "converting"
    assert statuses[-1] == "completed"
    assert statuses.count("completed") == 1
    assert "c1" not in registry

    logs = db.list_logs(event_type="performance")
    assert len(logs) == 1
    assert logs[0]["conversion_id"] == "c1"


def test_second_conversion_of_same_input_is_served_from_cache(data_dir, small_chunks):
    registry = ProgressRegistry()
    _new_conversion("first")
    asyncio.run(conversion.run_conversion("first", TEXT, "voice", FakeProvider(), registry, RecordingFeed()))

    provider = FakeProvider()
    _new_conversion("second")
    asyncio.run(conversion.run_conversion("second", TEXT, "voice", provider, registry, RecordingFeed()))

    first, second = db.get_conversion("first"), db.get_conversion("second")
    assert provider.calls == []
    assert second["status"] == "completed"
    assert second["is_cached"] is True
    assert second["storage_path"] == first["storage_path"]


def test_run_conversion_failure_is_recorded(data_dir, small_chunks):
    provider = FakeProvider(always_fail=set(small_chunks))
    feed = RecordingFeed()
    _new_conversion("bad")

    asyncio.run(conversion.run_conversion("bad", TEXT, "voice", provider, ProgressRegistry(), feed))

    row = db.get_conversion("bad")
    assert row["status"] == "error"
    assert "Integrity" in row["error"]
    assert feed.events[-1][1]["status"] == "error"
    assert "failed" in {chunk["status"] for chunk in db.get_chunks("bad")}


def test_document_conversion_with_unreadable_upload(data_dir, tmp_path):
    upload = tmp_path / "upload.epub"
    upload.write_bytes(b"definitely not an epub")
    feed = RecordingFeed()
    _new_conversion("doc")

    asyncio.run(conversion.run_document_conversion(
        "doc", upload, "book.epub", "voice", FakeProvider(), ProgressRegistry(), feed
    ))

    row = db.get_conversion("doc")
    assert row["status"] == "error"
    assert "EPUB" in row["error"]
    assert not upload.exists()
    assert feed.events[-1][1]["status"] == "error"


def test_chunks_are_cut_after_cleaning(small_chunks):
    # Cleaning inserts a space after every "." so this grows past the limit.
    text = "Values 1.5 2.5 3.5 4.5 5.5 6.5 7.5 8.5 9.5 and more."
    assert len(text.encode("utf-8")) <= config.CHUNK_MAX_BYTES
    provider = FakeProvider()

    audio = asyncio.run(conversion.convert_text_to_audio(text, "voice", provider))

    assert audio
    assert all(len(call.encode("utf-8")) <= config.CHUNK_MAX_BYTES for call in provider.calls)
    assert "1. 5" in " ".join(provider.calls)


def test_completion_is_published_only_after_audio_is_stored(data_dir, small_chunks, monkeypatch):
    def failing_save(hash_value, audio, store=None):
        raise StorageError("disk full")

    monkeypatch.setattr(conversion.cache, "save_to_cache", failing_save)
    feed = RecordingFeed()
    _new_conversion("c1")

    asyncio.run(conversion.run_conversion("c1", TEXT, "voice", FakeProvider(), ProgressRegistry(), feed))

    statuses = [payload["status"] for _, payload in feed.events]
    assert "completed" not in statuses
    assert statuses[-1] == "error"
    assert db.get_conversion("c1")["error"] == "disk full"
