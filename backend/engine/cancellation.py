"""
Cancellation controller.

Cancellation is cooperative: a processing job is only flagged in the store.
The worker polls the entry status before each chunk and stops once it sees
anything other than processing, so a chunk already in flight may still land
in the progress mailbox after the cancel. Completed chunks are never thrown
away here; clear_chunks() is the explicit way to force a clean re-run.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from engine import job_store
from engine.progress import ProgressTracker
from models import QueueStatus
from utils.exceptions import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    message: str
    previous_status: QueueStatus


class CancellationController:
    """Cancels queue entries and clears chunk state."""

    def __init__(self, tracker: Optional[ProgressTracker] = None):
        self.tracker = tracker or ProgressTracker()

    async def cancel(self, db: AsyncSession, subject_id: str) -> CancelResult:
        if not subject_id or not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("Missing or invalid subject_id")
        subject_id = subject_id.strip()

        entry = await job_store.get_entry_for_subject(db, subject_id)

        # A queued entry can be promoted between the read and the delete;
        # one re-read routes it to the processing branch.
        for _ in range(2):
            if entry is None:
                raise NotFoundError("Subject not found in queue")

            if entry.status == QueueStatus.PROCESSING:
                cancelled = await job_store.transition(
                    db,
                    entry.id,
                    QueueStatus.PROCESSING,
                    QueueStatus.CANCELLED,
                    completed_at=datetime.utcnow(),
                )
                if cancelled:
                    await self.tracker.mark_cancelled(db, subject_id)
                    await db.commit()
                    logger.info(f"Cancelled processing job for subject {subject_id}; worker will stop on next poll")
                    return CancelResult(
                        message="Transcription cancelled. Worker will stop processing when it checks the status.",
                        previous_status=QueueStatus.PROCESSING,
                    )
            elif entry.status == QueueStatus.QUEUED:
                if await job_store.delete_entry(db, entry.id, QueueStatus.QUEUED):
                    await job_store.resequence_queued(db)
                    await self.tracker.mark_dequeued(db, subject_id)
                    await db.commit()
                    logger.info(f"Removed subject {subject_id} from queue")
                    return CancelResult(
                        message="Removed from transcription queue",
                        previous_status=QueueStatus.QUEUED,
                    )
            else:
                break

            entry = await job_store.get_entry(db, entry.id)

        if entry is None:
            raise NotFoundError("Subject not found in queue")
        raise InvalidStateError(f"Cannot cancel: job is {entry.status.value}")

    async def should_stop(self, db: AsyncSession, subject_id: str) -> bool:
        """The worker's per-chunk poll: keep going only while processing."""
        entry = await job_store.get_entry_for_subject(db, subject_id)
        return entry is None or entry.status != QueueStatus.PROCESSING

    async def clear_chunks(self, db: AsyncSession, subject_id: str):
        """Empty the chunk maps without touching the queue entry."""
        await job_store.require_subject(db, subject_id)
        progress = await self.tracker.clear_chunks(db, subject_id)
        await db.commit()
        return progress
