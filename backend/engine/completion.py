"""
Worker completion reports: finalize a processing job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from engine import job_store
from engine.progress import COMPLETED_KEY, TOTAL_KEY, ProgressTracker, assemble_transcript, missing_chunks
from models import QueueStatus
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    message: str
    status: Optional[QueueStatus] = None


class CompletionHandler:
    """Moves a processing entry to completed/failed when the worker reports in."""

    def __init__(self, tracker: Optional[ProgressTracker] = None):
        self.tracker = tracker or ProgressTracker()

    async def complete(
        self,
        db: AsyncSession,
        subject_id: str,
        success: bool,
        error_message: Optional[str] = None,
        transcript: Optional[str] = None,
    ) -> CompletionResult:
        if not subject_id or not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("Missing or invalid subject_id")
        subject_id = subject_id.strip()

        entry = await job_store.get_entry_for_subject(db, subject_id)
        if entry is None:
            return CompletionResult(message="Queue item not found (may have been deleted)")

        if entry.status != QueueStatus.PROCESSING:
            logger.info(f"Ignoring completion for subject {subject_id}: job is {entry.status.value}")
            return CompletionResult(
                message=f"Queue item is {entry.status.value}, completion ignored",
                status=entry.status,
            )

        if success:
            text = transcript.strip() if transcript and transcript.strip() else None
            if text is None:
                subject = await job_store.require_subject(db, subject_id)
                progress = subject.progress_json or {}
                text = assemble_transcript(progress.get(COMPLETED_KEY), progress.get(TOTAL_KEY))
                if text is None:
                    missing = missing_chunks(progress.get(COMPLETED_KEY), progress.get(TOTAL_KEY))
                    success = False
                    if missing:
                        error_message = f"Transcript incomplete: missing chunks {missing}"
                    else:
                        error_message = "Worker reported success without a transcript"

        now = datetime.utcnow()
        if success:
            moved = await job_store.transition(
                db, entry.id, QueueStatus.PROCESSING, QueueStatus.COMPLETED,
                completed_at=now, error_message=None,
            )
            if moved:
                await self.tracker.mark_completed(db, subject_id, text)
        else:
            error_message = error_message or "Transcription failed"
            moved = await job_store.transition(
                db, entry.id, QueueStatus.PROCESSING, QueueStatus.FAILED,
                completed_at=now, error_message=error_message,
            )
            if moved:
                await self.tracker.mark_failed(db, subject_id, error_message)

        if not moved:
            entry = await job_store.get_entry(db, entry.id)
            status = entry.status if entry is not None else None
            label = status.value if status is not None else "removed"
            return CompletionResult(message=f"Queue item is {label}, completion ignored", status=status)

        await job_store.resequence_queued(db)
        await db.commit()

        final = QueueStatus.COMPLETED if success else QueueStatus.FAILED
        logger.info(f"Subject {subject_id} finished: {final.value}")
        return CompletionResult(message="Queue item marked as complete", status=final)
