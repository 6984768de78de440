"""
Transcription queue endpoints: add, cancel, list, process, trigger, and the
worker-facing completion/status callbacks.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import get_db, QueueEntry, Subject
from engine import job_store
from engine.dispatcher import ProcessResult
from engine.job_queue import TranscriptionQueue
from utils.exceptions import NotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)
router = APIRouter()


class QueueRequest(BaseModel):
    """Request body naming a subject."""
    subject_id: Optional[str] = None


class CompleteRequest(BaseModel):
    """Worker report that a transcription finished."""
    subject_id: Optional[str] = None
    success: bool = False
    error_message: Optional[str] = None
    transcript: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def serialize_entry(entry: Optional[QueueEntry], subject: Optional[Subject] = None) -> Optional[dict]:
    if entry is None:
        return None
    data = {
        "id": entry.id,
        "subject_id": entry.subject_id,
        "status": entry.status.value,
        "position": entry.position,
        "created_at": _iso(entry.created_at),
        "started_at": _iso(entry.started_at),
        "completed_at": _iso(entry.completed_at),
        "error_message": entry.error_message,
    }
    if subject is not None:
        data["subject"] = {
            "id": subject.id,
            "title": subject.title,
            "audio_url": subject.audio_url,
            "youtube_url": subject.youtube_url,
            "status": subject.status.value,
            "progress": subject.progress_json,
        }
    return data


def serialize_process_result(result: ProcessResult) -> dict:
    data = {"success": result.success, "processed": result.processed}
    if result.message:
        data["message"] = result.message
    if result.error:
        data["error"] = result.error
    if result.subject_id:
        data["subject_id"] = result.subject_id
    data["queue_item"] = serialize_entry(result.queue_item)
    return data


@router.post("/add")
async def add_to_queue(request: QueueRequest, db: AsyncSession = Depends(get_db)):
    """Add a subject to the global transcription queue."""
    result = await TranscriptionQueue.get_instance().add(db, request.subject_id)
    return {
        "success": True,
        "message": result.message,
        "queue_item": serialize_entry(result.entry),
    }


@router.post("/cancel")
async def cancel_queue_item(request: QueueRequest, db: AsyncSession = Depends(get_db)):
    """Cancel a queued or processing transcription."""
    result = await TranscriptionQueue.get_instance().cancel(db, request.subject_id)
    return {"success": True, "message": result.message}


@router.get("/list")
async def list_queue(db: AsyncSession = Depends(get_db)):
    """Current state of the queue, ordered by position."""
    snapshot = await TranscriptionQueue.get_instance().list(db)
    processing = snapshot["processing"]
    return {
        "success": True,
        "queue": {
            "processing": serialize_entry(*processing) if processing else None,
            "queued": [serialize_entry(entry, subject) for entry, subject in snapshot["queued"]],
            "all": [serialize_entry(entry, subject) for entry, subject in snapshot["all"]],
        },
    }


@router.post("/process")
async def process_queue(db: AsyncSession = Depends(get_db)):
    """Start the next job if the processing slot is free."""
    result = await TranscriptionQueue.get_instance().process(db)
    return serialize_process_result(result)


@router.get("/cron")
async def trigger_queue(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """
    Periodic trigger (call every 10-30 seconds).

    When CRON_SECRET is set the caller must send ``Authorization: Bearer <secret>``.
    """
    if settings.cron_secret:
        expected = f"Bearer {settings.cron_secret}"
        if not authorization or not secrets.compare_digest(authorization, expected):
            logger.warning("Rejected queue trigger with missing or wrong secret")
            raise UnauthorizedError()

    result = await TranscriptionQueue.get_instance().process(db)
    data = serialize_process_result(result)
    data["message"] = result.message or result.error or "Queue processor called"
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    return data


@router.post("/complete")
async def complete_queue_item(request: CompleteRequest, db: AsyncSession = Depends(get_db)):
    """Called by the worker when a transcription finishes (success or failure)."""
    result = await TranscriptionQueue.get_instance().complete(
        db,
        request.subject_id,
        request.success,
        error_message=request.error_message,
        transcript=request.transcript,
    )
    return {
        "success": True,
        "message": result.message,
        "status": result.status.value if result.status else None,
    }


@router.get("/status/{subject_id}")
async def get_queue_status(subject_id: str, db: AsyncSession = Depends(get_db)):
    """Polled by the worker before each chunk; stop when should_stop is true."""
    entry = await job_store.get_entry_for_subject(db, subject_id)
    if entry is None:
        raise NotFoundError("Subject not found in queue")
    should_stop = await TranscriptionQueue.get_instance().cancellation.should_stop(db, subject_id)
    return {
        "subject_id": subject_id,
        "status": entry.status.value,
        "should_stop": should_stop,
    }
