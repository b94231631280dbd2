"""Main FastAPI application for the epub2audio service.

This module defines the HTTP API. Uploaded EPUB and PDF documents are
extracted and converted to MP3 in the background with FastAPI's
``BackgroundTasks``; clients receive a conversion id straight away and
follow the conversion either by polling ``/conversions/{id}/progress`` or
by subscribing to the server-sent events stream at
``/conversions/{id}/events``. Finished audio is streamed with HTTP range
support so browsers can seek.

The database is initialised and logging configured on startup.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import (
    BackgroundTasks,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import JSONResponse, StreamingResponse

from . import cache, config, db, monitoring, tts
from .conversion import run_conversion, run_document_conversion
from .errors import Epub2AudioError, ExtractionError, StorageError
from .events import ChangeFeed
from .extraction import file_extension, format_file_size, process_file, validate_file
from .progress import ProgressRegistry, estimate_conversion_seconds
from .storage import BlobStore


app = FastAPI(title="EPUB & PDF to Audio Service")

logger = logging.getLogger(__name__)

PROVIDERS: Dict[str, Any] = tts.build_providers()

registry = ProgressRegistry()
feed = ChangeFeed()

FINISHED_STATUSES = ("completed", "error")


@app.on_event("startup")
async def on_startup() -> None:
    """Configure logging, create data directories and the database.

    Conversions still marked as running belong to a previous process and
    are failed.
    """
    monitoring.configure_logging()
    config.uploads_dir().mkdir(parents=True, exist_ok=True)
    config.audio_dir().mkdir(parents=True, exist_ok=True)
    db.init_db()
    interrupted = db.fail_interrupted_conversions()
    if interrupted:
        logger.warning("Marked %d interrupted conversions as failed", interrupted)


def _get_provider(name: Optional[str]) -> Any:
    provider_name = name or config.DEFAULT_PROVIDER
    provider = PROVIDERS.get(provider_name)
    if provider is None:
        raise HTTPException(status_code=400, detail=f"Unknown TTS provider {provider_name}")
    return provider


def _serialize_conversion(row: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(row)
    data["file_size_text"] = format_file_size(data.get("file_size") or 0)
    data["audio_url"] = f"/conversions/{row['id']}/audio" if row.get("status") == "completed" else None
    return data


def _progress_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Progress payload for a conversion that is not tracked in this process."""
    finished = row.get("status") in FINISHED_STATUSES
    progress = 100.0 if row.get("status") == "completed" else float(row.get("progress") or 0)
    return {
        "status": row.get("status"),
        "progress": progress,
        "display_progress": 100.0 if finished else progress,
        "processed_chunks": row.get("processed_chunks") or 0,
        "total_chunks": row.get("total_chunks") or 0,
        "processed_characters": row.get("processed_characters") or 0,
        "total_characters": row.get("total_characters") or 0,
        "speed": 0.0,
        "elapsed_seconds": None,
        "time_remaining": 0 if row.get("status") == "completed" else None,
        "time_remaining_text": None,
        "auto_increment": False,
        "error": row.get("error"),
    }


def _current_progress(conversion_id: str) -> Dict[str, Any]:
    tracker = registry.get(conversion_id)
    if tracker is not None:
        tracker.tick()
        return tracker.snapshot().to_dict()
    row = db.get_conversion(conversion_id)
    if not row:
        raise HTTPException(status_code=404, detail="Conversion not found")
    return _progress_from_row(row)


async def _read_upload(file: UploadFile) -> bytes:
    data = await file.read()
    try:
        validate_file(file.filename or "", len(data))
    except ExtractionError as exc:
        raise HTTPException(status_code=400, detail={"title": exc.title, "description": exc.description})
    return data


def _save_upload(conversion_id: str, filename: str, data: bytes) -> Path:
    upload_dir = config.uploads_dir()
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / f"{conversion_id}.{file_extension(filename)}"
    path.write_bytes(data)
    return path


@app.post("/extract")
async def extract_endpoint(file: UploadFile = File(...), detect_chapters: bool = Form(True)) -> Response:
    """Extract the text, language and chapters of an uploaded document."""
    data = await _read_upload(file)
    path = _save_upload(str(uuid.uuid4()), file.filename, data)
    try:
        result = await asyncio.to_thread(process_file, path, file.filename, detect_chapters)
    except ExtractionError as exc:
        raise HTTPException(status_code=400, detail={"title": exc.title, "description": exc.description})
    finally:
        path.unlink(missing_ok=True)
    payload = result.to_dict()
    payload["metadata"]["estimated_seconds"] = estimate_conversion_seconds(result.text)
    return JSONResponse(payload)


@app.post("/conversions")
async def create_conversion(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    voice_id: str = Form(...),
    provider: Optional[str] = Form(None),
    detect_chapters: bool = Form(True),
) -> Response:
    """Convert an uploaded EPUB or PDF to audio.

    A conversion id is returned immediately; extraction and synthesis run
    in the background.
    """
    tts_provider = _get_provider(provider)
    data = await _read_upload(file)
    conversion_id = str(uuid.uuid4())
    path = _save_upload(conversion_id, file.filename, data)
    db.insert_conversion({
        "id": conversion_id,
        "file_name": file.filename,
        "voice_id": voice_id,
        "provider": tts_provider.name,
        "status": "pending",
    })
    background_tasks.add_task(
        run_document_conversion,
        conversion_id,
        path,
        file.filename,
        voice_id,
        tts_provider,
        registry,
        feed,
        detect_chapters,
    )
    return JSONResponse({"conversion_id": conversion_id, "status": "pending"}, status_code=202)


@app.post("/conversions/text")
async def create_text_conversion(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Convert already extracted text.

    The payload must contain ``text`` and ``voice_id``; ``provider`` and
    ``file_name`` are optional.
    """
    data = await request.json()
    text = data.get("text")
    voice_id = data.get("voice_id")
    if not text or not str(text).strip():
        raise HTTPException(status_code=400, detail="Missing 'text' in request body")
    if not voice_id:
        raise HTTPException(status_code=400, detail="Missing 'voice_id' in request body")
    tts_provider = _get_provider(data.get("provider"))
    conversion_id = str(uuid.uuid4())
    db.insert_conversion({
        "id": conversion_id,
        "file_name": data.get("file_name") or "text.txt",
        "voice_id": voice_id,
        "provider": tts_provider.name,
        "status": "pending",
        "total_characters": len(text),
    })
    background_tasks.add_task(run_conversion, conversion_id, text, voice_id, tts_provider, registry, feed)
    return JSONResponse(
        {
            "conversion_id": conversion_id,
            "status": "pending",
            "estimated_seconds": estimate_conversion_seconds(text),
        },
        status_code=202,
    )


@app.get("/conversions")
async def list_conversions(page: int = 1, page_size: int = 10) -> Response:
    """Conversion history, newest first."""
    if page < 1 or page_size < 1 or page_size > 100:
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")
    total = db.count_conversions()
    rows = db.list_conversions(limit=page_size, offset=(page - 1) * page_size)
    return JSONResponse({
        "items": [_serialize_conversion(row) for row in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size),
    })


@app.get("/conversions/{conversion_id}")
async def get_conversion(conversion_id: str) -> Response:
    row = db.get_conversion(conversion_id)
    if not row:
        raise HTTPException(status_code=404, detail="Conversion not found")
    return JSONResponse(_serialize_conversion(row))


@app.delete("/conversions/{conversion_id}")
async def delete_conversion(conversion_id: str) -> Response:
    """Delete a finished conversion.

    Its audio goes too unless another conversion still uses it. A
    conversion that is still running cannot be deleted (409).
    """
    row = db.get_conversion(conversion_id)
    if not row:
        raise HTTPException(status_code=404, detail="Conversion not found")
    if row.get("status") in db.ACTIVE_STATUSES:
        raise HTTPException(status_code=409, detail="Conversion is still running")
    db.delete_conversions([conversion_id])
    registry.discard(conversion_id)
    key = row.get("storage_path")
    if key and not (row.get("text_hash") and db.find_completed_by_hash(row["text_hash"])):
        BlobStore().remove([key])
    return JSONResponse({"deleted": conversion_id})


@app.get("/conversions/{conversion_id}/progress")
async def conversion_progress(conversion_id: str) -> Response:
    return JSONResponse(_current_progress(conversion_id))


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.get("/conversions/{conversion_id}/events")
async def conversion_events(conversion_id: str) -> Response:
    """Server-sent events carrying progress snapshots until the conversion finishes.

    The feed subscription is taken before the current state is read, so a
    conversion that finishes in between is still reported.
    """
    updates = feed.subscribe(conversion_id)
    try:
        current = _current_progress(conversion_id)
    except HTTPException:
        updates.close()
        raise
    if current.get("status") in FINISHED_STATUSES:
        updates.close()

    async def event_stream() -> AsyncIterator[str]:
        try:
            yield _sse(current)
            async for payload in updates:
                yield _sse(payload)
                if payload.get("status") in FINISHED_STATUSES:
                    return
        finally:
            updates.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def iter_file(path: Path, start: int, end: int, chunk_size: int = 8192):
    """Generator to read bytes from ``path`` between ``start`` and ``end``."""
    with open(path, "rb") as f:
        f.seek(start)
        bytes_left = end - start + 1
        while bytes_left > 0:
            read_size = min(chunk_size, bytes_left)
            data = f.read(read_size)
            if not data:
                break
            bytes_left -= len(data)
            yield data


@app.get("/conversions/{conversion_id}/audio")
async def stream_audio(conversion_id: str, request: Request) -> Response:
    """Stream the converted audio with HTTP range support."""
    row = db.get_conversion(conversion_id)
    if not row:
        raise HTTPException(status_code=404, detail="Conversion not found")
    key = row.get("storage_path")
    if row.get("status") != "completed" or not key:
        raise HTTPException(status_code=404, detail="Audio not generated for conversion")
    try:
        audio_path = BlobStore().path_for(key)
    except StorageError:
        raise HTTPException(status_code=404, detail="Audio not found")
    if not audio_path.is_file():
        raise HTTPException(status_code=404, detail="Audio not found")
    file_size = audio_path.stat().st_size
    download_name = f"{Path(row.get('file_name') or 'audio').stem}.mp3"
    disposition = f'inline; filename="{download_name}"'
    range_header = request.headers.get("range")
    if range_header:
        # Parse Range header, e.g. "bytes=0-1023" or the suffix form "bytes=-500"
        match = re.match(r"bytes=(\d*)-(\d*)$", range_header.strip())
        if match and any(match.groups()):
            start_str, end_str = match.groups()
            if start_str:
                start = int(start_str)
                end = int(end_str) if end_str else file_size - 1
            else:
                start = max(0, file_size - int(end_str))
                end = file_size - 1
            if end >= file_size:
                end = file_size - 1
            if start >= file_size or start > end:
                raise HTTPException(
                    status_code=416,
                    detail="Requested range not satisfiable",
                    headers={"Content-Range": f"bytes */{file_size}"},
                )
            headers = {
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Accept-Ranges": "bytes",
                "Content-Length": str(end - start + 1),
                "Content-Type": "audio/mpeg",
                "Content-Disposition": disposition,
            }
            return StreamingResponse(iter_file(audio_path, start, end), status_code=206, headers=headers)
    # No range: return full file
    return StreamingResponse(iter_file(audio_path, 0, file_size - 1), media_type="audio/mpeg",
                             headers={"Content-Length": str(file_size), "Accept-Ranges": "bytes",
                                      "Content-Disposition": disposition})


@app.get("/voices")
async def list_voices() -> Response:
    return JSONResponse({"voices": tts.VOICES, "providers": sorted(PROVIDERS)})


@app.post("/voices/preview")
async def preview_voice(request: Request) -> Response:
    """Synthesize a short sample sentence in the voice's language.

    Payload: ``voice_id`` and optionally ``provider`` and ``language``.
    """
    data = await request.json()
    voice_id = data.get("voice_id")
    if not voice_id:
        raise HTTPException(status_code=400, detail="Missing 'voice_id' in request body")
    tts_provider = _get_provider(data.get("provider"))
    language = data.get("language")
    if not language:
        language = next(
            (lang for lang, voices in tts.VOICES.items() if any(v["id"] == voice_id for v in voices)),
            "english",
        )
    text = tts.PREVIEW_TEXTS.get(language, tts.PREVIEW_TEXTS["english"])
    try:
        audio, _duration = await tts_provider.synthesize(text, voice_id)
    except Epub2AudioError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return Response(content=audio, media_type="audio/mpeg")


@app.get("/monitoring/stats")
async def system_stats() -> Response:
    return JSONResponse(monitoring.get_system_stats())


@app.get("/monitoring/logs")
async def system_logs(limit: int = 50, event_type: Optional[str] = None) -> Response:
    return JSONResponse({"logs": db.list_logs(limit=min(max(limit, 1), 500), event_type=event_type)})


@app.post("/maintenance/cleanup")
async def cleanup_endpoint() -> Response:
    """Remove expired conversions and their cached audio."""
    removed = cache.cleanup_expired()
    return JSONResponse({"removed": removed})
