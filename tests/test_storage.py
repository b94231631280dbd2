from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from epub2audio import cache, config, db, monitoring
from epub2audio.errors import CacheError, StorageError
from epub2audio.events import ChangeFeed
from epub2audio.storage import BlobStore


def test_blob_store_round_trip(tmp_path):
    store = BlobStore(tmp_path)
    store.upload("nested/a.mp3", b"abc")
    assert store.exists("nested/a.mp3")
    assert store.download("nested/a.mp3") == b"abc"
    assert store.size("nested/a.mp3") == 3
    assert store.remove(["nested/a.mp3", "missing.mp3"]) == 1
    assert not store.exists("nested/a.mp3")


@pytest.mark.parametrize("key", ["../escape.mp3", "/etc/passwd", "", "a/../../b"])
def test_blob_store_rejects_keys_outside_root(tmp_path, key):
    store = BlobStore(tmp_path / "root")
    with pytest.raises(StorageError):
        store.upload(key, b"x")
    assert not store.exists(key)


def test_download_of_missing_blob(tmp_path):
    with pytest.raises(StorageError):
        BlobStore(tmp_path).download("nope.mp3")


def test_change_feed_delivers_to_subscribers():
    async def scenario():
        feed = ChangeFeed()
        received = []

        async def consume():
            stream = feed.subscribe("c1")
            async for payload in stream:
                received.append(payload)
                if payload["done"]:
                    break
            await stream.aclose()

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert feed.subscriber_count("c1") == 1
        feed.publish("c2", {"done": True})
        feed.publish("c1", {"done": False})
        feed.publish("c1", {"done": True})
        await task
        return feed, received

    feed, received = asyncio.run(scenario())
    assert received == [{"done": False}, {"done": True}]
    assert feed.subscriber_count("c1") == 0


def test_slow_subscriber_loses_oldest_payloads():
    async def scenario():
        feed = ChangeFeed(max_queue=2)
        stream = feed.subscribe("c1")
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        feed.publish("c1", 0)
        values = [await first]
        for value in range(1, 5):
            feed.publish("c1", value)
        values += [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return values

    assert asyncio.run(scenario()) == [0, 3, 4]


def test_subscription_receives_payloads_published_before_iteration():
    async def scenario():
        feed = ChangeFeed()
        updates = feed.subscribe("c1")
        assert feed.subscriber_count("c1") == 1
        feed.publish("c1", "early")
        first = await updates.__anext__()
        updates.close()
        rest = [payload async for payload in updates]
        return feed, first, rest

    feed, first, rest = asyncio.run(scenario())
    assert first == "early"
    assert rest == []
    assert feed.subscriber_count("c1") == 0


def test_conversion_rows(data_dir):
    db.insert_conversion({"id": "a", "file_name": "a.epub", "status": "pending", "chapters": [{"title": "One"}]})
    db.insert_conversion({"id": "b", "file_name": "b.pdf", "status": "pending"})
    db.update_conversion("a", status="completed", progress=100, is_cached=True)

    row = db.get_conversion("a")
    assert row["status"] == "completed"
    assert row["is_cached"] is True
    assert row["chapters"] == [{"title": "One"}]
    assert db.get_conversion("missing") is None
    assert db.count_conversions() == 2
    assert [r["id"] for r in db.list_conversions(limit=1)] == ["b"]
    assert [r["id"] for r in db.list_conversions(limit=1, offset=1)] == ["a"]

    with pytest.raises(ValueError):
        db.update_conversion("a", bogus=1)


def test_interrupted_conversions_are_failed(data_dir):
    for conversion_id, status in [("a", "pending"), ("b", "converting"), ("c", "completed"), ("d", "extracting")]:
        db.insert_conversion({"id": conversion_id, "status": status})

    assert db.fail_interrupted_conversions() == 3
    assert db.get_conversion("b")["status"] == "error"
    assert db.get_conversion("b")["error"] == "Interrupted by a server restart"
    assert db.get_conversion("c")["status"] == "completed"
    assert db.fail_interrupted_conversions() == 0


def test_chunk_rows_are_not_duplicated(data_dir):
    db.insert_conversion({"id": "a", "status": "pending"})
    assert db.insert_chunks("a", ["one", "two"]) == 2
    assert db.insert_chunks("a", ["one", "two", "three"]) == 1
    assert db.get_existing_chunk_indexes("a") == {0, 1, 2}
    db.update_chunk_status("a", 1, "failed", "boom")
    chunks = db.get_chunks("a")
    assert [(c["chunk_index"], c["status"], c["error"]) for c in chunks] == [
        (0, "pending", None),
        (1, "failed", "boom"),
        (2, "pending", None),
    ]


def test_text_hash_depends_on_every_input():
    base = cache.text_hash("text", "voice", "google")
    assert len(base) == 64
    assert base == cache.text_hash("text", "voice", "google")
    assert base != cache.text_hash("text", "voice2", "google")
    assert base != cache.text_hash("text", "voice", "elevenlabs")
    assert base != cache.text_hash("text!", "voice", "google")


def test_cache_save_check_and_fetch(data_dir):
    hash_value = cache.text_hash("hello", "v", "silent")
    assert cache.check_cache(hash_value) is None

    key, expires_at = cache.save_to_cache(hash_value, b"audio")
    assert key == f"{hash_value}.mp3"
    assert expires_at > db.utcnow()
    db.insert_conversion({
        "id": "a", "status": "completed", "text_hash": hash_value,
        "storage_path": key, "expires_at": expires_at,
    })

    assert cache.check_cache(hash_value) == (key, expires_at)
    assert cache.fetch_from_cache(key) == b"audio"
    with pytest.raises(CacheError):
        cache.fetch_from_cache("other.mp3")

    # A missing blob is a cache miss.
    BlobStore().remove([key])
    assert cache.check_cache(hash_value) is None


def test_cleanup_removes_expired_conversions(data_dir):
    now = datetime.now(timezone.utc)
    store = BlobStore()
    store.upload("old.mp3", b"old")
    store.upload("fresh.mp3", b"fresh")
    db.insert_conversion({
        "id": "old", "status": "completed", "text_hash": "old", "storage_path": "old.mp3",
        "expires_at": (now - timedelta(days=1)).isoformat(),
    })
    db.insert_conversion({
        "id": "fresh", "status": "completed", "text_hash": "fresh", "storage_path": "fresh.mp3",
        "expires_at": (now + timedelta(days=config.CACHE_TTL_DAYS)).isoformat(),
    })
    db.insert_chunks("old", ["chunk"])

    assert cache.cleanup_expired(now) == 1
    assert db.get_conversion("old") is None
    assert db.get_chunks("old") == []
    assert not store.exists("old.mp3")
    assert store.exists("fresh.mp3")
    assert db.list_logs(event_type="cleanup")


def test_system_stats(data_dir):
    db.insert_conversion({"id": "a", "status": "completed", "is_cached": True})
    db.insert_conversion({"id": "b", "status": "completed"})
    db.insert_conversion({"id": "c", "status": "error"})
    db.insert_log("performance", "done", duration_ms=2000)
    db.insert_log("performance", "done", duration_ms=4000)
    db.insert_log("conversion", "no duration")

    assert monitoring.get_system_stats() == {
        "total_conversions": 3,
        "completed_conversions": 2,
        "cached_conversions": 1,
        "average_processing_time": 3.0,
    }


def test_database_log_handler_persists_warnings(data_dir):
    logger = logging.getLogger("epub2audio.test_component")
    handler = monitoring.DatabaseLogHandler()
    logger.addHandler(handler)
    try:
        logger.info("not persisted")
        logger.warning("disk nearly full", extra={"event_type": "storage", "conversion_id": "x"})
        logger.error("no extra")
    finally:
        logger.removeHandler(handler)

    logs = db.list_logs()
    assert [(log["event_type"], log["level"], log["message"]) for log in logs] == [
        ("test_component", "error", "no extra"),
        ("storage", "warning", "disk nearly full"),
    ]
    assert logs[1]["conversion_id"] == "x"
