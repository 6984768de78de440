"""
Subject endpoints: the queue-facing slice of subject management plus the
worker's chunk mailbox.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from models import get_db, Subject
from models.subject import new_id
from engine import job_store
from engine.job_queue import TranscriptionQueue
from engine.progress import COMPLETED_KEY, TOTAL_KEY, assemble_transcript
from engine.text_chunker import summary_chunks
from utils.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter()


class SubjectCreate(BaseModel):
    title: str = ""
    audio_url: Optional[str] = None
    youtube_url: Optional[str] = None
    transcript: Optional[str] = None


class ChunkReport(BaseModel):
    """One chunk result from the worker: ``text`` on success, ``error`` on failure."""
    index: int
    text: Optional[str] = None
    error: Optional[str] = None
    total: Optional[int] = None


def serialize_subject(subject: Subject) -> dict:
    return {
        "id": subject.id,
        "title": subject.title,
        "audio_url": subject.audio_url,
        "youtube_url": subject.youtube_url,
        "status": subject.status.value,
        "progress": subject.progress_json,
        "has_transcript": subject.has_transcript,
        "transcript_generated_at": subject.transcript_generated_at.isoformat() + "Z" if subject.transcript_generated_at else None,
        "error_message": subject.error_message,
        "created_at": subject.created_at.isoformat() + "Z" if subject.created_at else None,
    }


@router.post("/")
async def create_subject(request: SubjectCreate, db: AsyncSession = Depends(get_db)):
    """Register a subject so it can be queued."""
    subject = Subject(
        id=new_id(),
        title=request.title,
        audio_url=request.audio_url,
        youtube_url=request.youtube_url,
        transcript=request.transcript,
    )
    db.add(subject)
    await db.commit()
    logger.info(f"Created subject {subject.id}")
    subject = await job_store.require_subject(db, subject.id)
    return serialize_subject(subject)


@router.get("/{subject_id}")
async def get_subject(subject_id: str, db: AsyncSession = Depends(get_db)):
    """Subject with its progress snapshot."""
    subject = await job_store.require_subject(db, subject_id)
    return serialize_subject(subject)


@router.post("/{subject_id}/chunks")
async def record_chunk(subject_id: str, report: ChunkReport, db: AsyncSession = Depends(get_db)):
    """Worker drops a chunk result here; merged without clobbering other keys."""
    if report.text is None and not report.error:
        raise ValidationError("A chunk report needs either text or error")
    await job_store.require_subject(db, subject_id)
    progress = await TranscriptionQueue.get_instance().tracker.record_chunk(
        db, subject_id, report.index, text=report.text, error=report.error, total=report.total
    )
    await db.commit()
    return {"success": True, "progress": progress}


@router.delete("/{subject_id}/chunks")
async def clear_chunks(subject_id: str, db: AsyncSession = Depends(get_db)):
    """Drop stored chunk results so the next run starts from scratch."""
    progress = await TranscriptionQueue.get_instance().cancellation.clear_chunks(db, subject_id)
    return {"success": True, "message": "Chunks cleared", "progress": progress}


@router.get("/{subject_id}/transcript")
async def get_transcript(subject_id: str, db: AsyncSession = Depends(get_db)):
    """Final transcript, or the one assembled from a complete chunk set."""
    subject = await job_store.require_subject(db, subject_id)
    text = subject.transcript
    if not text or not text.strip():
        progress = subject.progress_json or {}
        text = assemble_transcript(progress.get(COMPLETED_KEY), progress.get(TOTAL_KEY))
    if not text:
        raise NotFoundError("Transcript not found for this subject")
    return {"transcript": text, "transcript_length": len(text)}


@router.get("/{subject_id}/summary-chunks")
async def get_summary_chunks(subject_id: str, db: AsyncSession = Depends(get_db)):
    """Text chunks for downstream summarisation."""
    subject = await job_store.require_subject(db, subject_id)
    source, chunks = summary_chunks(subject)
    return {
        "source": source,
        "chunks": [{"index": index, "text": text} for index, text in chunks.items()],
    }
