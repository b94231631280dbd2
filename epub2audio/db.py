"""Database helpers for the conversion service.

Conversions, their chunks and the system log are stored in an SQLite
database. Each helper opens its own connection with the standard
``sqlite3`` module and closes it before returning, so helpers can be
called from request handlers and background tasks alike. Writes are
short; SQLite serialises them.

The schema is defined in ``init_db()``:

``conversions``
    One row per conversion request. ``status`` moves from ``pending``
    through ``extracting`` and ``converting`` to ``completed`` or
    ``error``. ``text_hash`` identifies the input for the audio cache and
    ``storage_path`` is the blob key of the finished MP3. ``chapters``
    holds a JSON list.
``conversion_chunks``
    One row per text chunk of a conversion, unique on
    ``(conversion_id, chunk_index)``.
``system_logs``
    Operational events. Rows with ``event_type = 'performance'`` carry a
    ``duration_ms`` used by the monitoring statistics.

Timestamps are ISO 8601 strings in UTC, which sort chronologically as
text.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from . import config

logger = logging.getLogger(__name__)

CONVERSION_FIELDS = [
    "id",
    "file_name",
    "text_hash",
    "voice_id",
    "provider",
    "status",
    "progress",
    "processed_characters",
    "total_characters",
    "processed_chunks",
    "total_chunks",
    "storage_path",
    "file_size",
    "is_cached",
    "chapters",
    "error",
    "expires_at",
]

# Statuses of a conversion that is still being worked on.
ACTIVE_STATUSES = ("pending", "extracting", "converting")

# Fields callers may change through ``update_conversion``.
UPDATABLE_FIELDS = set(CONVERSION_FIELDS[1:])


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    """Return a new SQLite connection whose rows behave like dicts.

    The database path is read from ``config.DB_PATH`` on every call and its
    directory is created when missing.
    """
    Path(config.DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(config.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the tables and indices if they do not exist. Idempotent."""
    conn = get_connection()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conversions (
                id TEXT PRIMARY KEY,
                file_name TEXT,
                text_hash TEXT,
                voice_id TEXT,
                provider TEXT,
                status TEXT,
                progress REAL DEFAULT 0,
                processed_characters INTEGER DEFAULT 0,
                total_characters INTEGER DEFAULT 0,
                processed_chunks INTEGER DEFAULT 0,
                total_chunks INTEGER DEFAULT 0,
                storage_path TEXT,
                file_size INTEGER,
                is_cached INTEGER DEFAULT 0,
                chapters TEXT,
                error TEXT,
                created_at TEXT,
                updated_at TEXT,
                expires_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_conversions_text_hash ON conversions(text_hash)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_conversions_created_at ON conversions(created_at)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conversion_chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversion_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content_length INTEGER,
                status TEXT,
                error TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(conversion_id, chunk_index),
                FOREIGN KEY(conversion_id) REFERENCES conversions(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS system_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT,
                level TEXT,
                message TEXT,
                conversion_id TEXT,
                duration_ms REAL,
                data TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_system_logs_event_type ON system_logs(event_type)")
        conn.commit()
    finally:
        conn.close()


def _decode_conversion(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_cached"] = bool(data.get("is_cached"))
    raw = data.get("chapters")
    if raw:
        try:
            data["chapters"] = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Conversion %s has malformed chapters JSON", data.get("id"))
            data["chapters"] = []
    else:
        data["chapters"] = []
    return data


def _encode_value(field: str, value: Any) -> Any:
    if field == "chapters" and value is not None and not isinstance(value, str):
        return json.dumps(value)
    if field == "is_cached" and value is not None:
        return int(bool(value))
    return value


def insert_conversion(conversion: Dict[str, Any]) -> None:
    """Insert or update a conversion row.

    ``conversion`` must contain an ``id``; missing keys are stored as
    ``NULL`` (or the column default for the counters). An existing row
    with the same id is updated instead.
    """
    values = [_encode_value(f, conversion.get(f)) for f in CONVERSION_FIELDS]
    for i, field in enumerate(CONVERSION_FIELDS):
        if values[i] is None and field in ("progress", "processed_characters", "total_characters",
                                           "processed_chunks", "total_chunks", "is_cached"):
            values[i] = 0
    now = utcnow()
    conn = get_connection()
    try:
        cur = conn.cursor()
        try:
            placeholders = ", ".join("?" for _ in CONVERSION_FIELDS)
            cur.execute(
                f"INSERT INTO conversions({', '.join(CONVERSION_FIELDS)}, created_at, updated_at) "
                f"VALUES ({placeholders}, ?, ?)",
                values + [now, now],
            )
        except sqlite3.IntegrityError:
            set_clause = ", ".join(f"{field} = ?" for field in CONVERSION_FIELDS[1:])
            cur.execute(
                f"UPDATE conversions SET {set_clause}, updated_at = ? WHERE id = ?",
                values[1:] + [now, conversion["id"]],
            )
        conn.commit()
    finally:
        conn.close()


def update_conversion(conversion_id: str, **fields: Any) -> None:
    """Update the given columns of a conversion.

    Only keyword arguments that are passed are written; ``updated_at`` is
    always refreshed. Unknown field names raise ``ValueError``.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown conversion fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    parts = [f"{field} = ?" for field in fields]
    params = [_encode_value(field, value) for field, value in fields.items()]
    params += [utcnow(), conversion_id]
    conn = get_connection()
    try:
        conn.execute(
            f"UPDATE conversions SET {', '.join(parts)}, updated_at = ? WHERE id = ?",
            params,
        )
        conn.commit()
    finally:
        conn.close()


def get_conversion(conversion_id: str) -> Optional[Dict[str, Any]]:
    """Return the conversion row for ``conversion_id`` as a dict, or None."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM conversions WHERE id = ?", (conversion_id,)).fetchone()
    finally:
        conn.close()
    return _decode_conversion(row) if row else None


def list_conversions(limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
    """Return conversions, newest first."""
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM conversions ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (limit, offset),
        ).fetchall()
    finally:
        conn.close()
    return [_decode_conversion(row) for row in rows]


def count_conversions() -> int:
    conn = get_connection()
    try:
        (count,) = conn.execute("SELECT COUNT(*) FROM conversions").fetchone()
    finally:
        conn.close()
    return count


def find_completed_by_hash(text_hash: str, now: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Return the newest completed, unexpired conversion with ``text_hash``."""
    now = now or utcnow()
    conn = get_connection()
    try:
        row = conn.execute(
            """
            SELECT * FROM conversions
            WHERE text_hash = ? AND status = 'completed' AND storage_path IS NOT NULL
                  AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY created_at DESC LIMIT 1
            """,
            (text_hash, now),
        ).fetchone()
    finally:
        conn.close()
    return _decode_conversion(row) if row else None


def fail_interrupted_conversions(message: str = "Interrupted by a server restart") -> int:
    """Mark conversions left in an active status as failed.

    Background conversions do not survive a restart; without this their
    rows would stay ``pending`` or ``converting`` forever. Returns the
    number of rows changed.
    """
    placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
    conn = get_connection()
    try:
        cur = conn.execute(
            f"UPDATE conversions SET status = 'error', error = ?, updated_at = ? WHERE status IN ({placeholders})",
            (message, utcnow(), *ACTIVE_STATUSES),
        )
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()


def get_existing_chunk_indexes(conversion_id: str) -> Set[int]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT chunk_index FROM conversion_chunks WHERE conversion_id = ?",
            (conversion_id,),
        ).fetchall()
    finally:
        conn.close()
    return {row["chunk_index"] for row in rows}


def insert_chunks(conversion_id: str, chunks: List[str]) -> int:
    """Record the chunks of a conversion as ``pending``.

    Indexes that already exist for the conversion are skipped, so the call
    can be repeated when a conversion is resumed. Returns the number of
    rows inserted.
    """
    existing = get_existing_chunk_indexes(conversion_id)
    now = utcnow()
    rows = [
        (conversion_id, index, len(chunk), "pending", now, now)
        for index, chunk in enumerate(chunks)
        if index not in existing
    ]
    if not rows:
        return 0
    conn = get_connection()
    try:
        conn.executemany(
            """
            INSERT OR IGNORE INTO conversion_chunks(conversion_id, chunk_index, content_length,
                                                    status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        conn.commit()
    finally:
        conn.close()
    return len(rows)


def update_chunk_status(conversion_id: str, chunk_index: int, status: str,
                        error: Optional[str] = None) -> None:
    """Set a chunk to ``processing``, ``completed`` or ``failed``."""
    conn = get_connection()
    try:
        conn.execute(
            """
            UPDATE conversion_chunks SET status = ?, error = ?, updated_at = ?
            WHERE conversion_id = ? AND chunk_index = ?
            """,
            (status, error, utcnow(), conversion_id, chunk_index),
        )
        conn.commit()
    finally:
        conn.close()


def get_chunks(conversion_id: str) -> List[Dict[str, Any]]:
    """Return the chunk rows of a conversion ordered by index."""
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM conversion_chunks WHERE conversion_id = ? ORDER BY chunk_index ASC",
            (conversion_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]


def insert_log(event_type: str, message: str, level: str = "info",
               conversion_id: Optional[str] = None, duration_ms: Optional[float] = None,
               data: Optional[Dict[str, Any]] = None) -> None:
    data_json = json.dumps(data) if data is not None else None
    conn = get_connection()
    try:
        conn.execute(
            """
            INSERT INTO system_logs(event_type, level, message, conversion_id, duration_ms, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (event_type, level, message, conversion_id, duration_ms, data_json, utcnow()),
        )
        conn.commit()
    finally:
        conn.close()


def list_logs(limit: int = 50, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return the most recent log rows, optionally of one event type."""
    query = "SELECT * FROM system_logs"
    params: List[Any] = []
    if event_type:
        query += " WHERE event_type = ?"
        params.append(event_type)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    conn = get_connection()
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    result = []
    for row in rows:
        item = dict(row)
        if item.get("data"):
            try:
                item["data"] = json.loads(item["data"])
            except json.JSONDecodeError:
                logger.debug("Log row %s has malformed data JSON", item["id"])
        result.append(item)
    return result


def get_stats(sample_size: int = 100) -> Dict[str, Any]:
    """Aggregate counters over conversions and recent performance logs."""
    conn = get_connection()
    try:
        row = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed,
                   COALESCE(SUM(CASE WHEN is_cached THEN 1 ELSE 0 END), 0) AS cached
            FROM conversions
            """
        ).fetchone()
        durations = conn.execute(
            """
            SELECT duration_ms FROM system_logs
            WHERE event_type = 'performance' AND duration_ms IS NOT NULL
            ORDER BY id DESC LIMIT ?
            """,
            (sample_size,),
        ).fetchall()
    finally:
        conn.close()
    values = [r["duration_ms"] for r in durations]
    return {
        "total": row["total"],
        "completed": row["completed"],
        "cached": row["cached"],
        "avg_duration_ms": sum(values) / len(values) if values else 0.0,
    }


def list_expired(now: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return conversions whose ``expires_at`` lies in the past."""
    now = now or utcnow()
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM conversions WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now,),
        ).fetchall()
    finally:
        conn.close()
    return [_decode_conversion(row) for row in rows]


def delete_conversions(conversion_ids: Iterable[str]) -> int:
    """Delete conversions and their chunk rows. Returns the number of conversions deleted."""
    ids = list(conversion_ids)
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    conn = get_connection()
    try:
        conn.execute(f"DELETE FROM conversion_chunks WHERE conversion_id IN ({placeholders})", ids)
        cur = conn.execute(f"DELETE FROM conversions WHERE id IN ({placeholders})", ids)
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()
