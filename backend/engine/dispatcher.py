"""
Dispatcher: picks the next job and hands it to the external worker.

Only one entry may be processing system-wide. Promotion is a conditional
UPDATE (queued -> processing, guarded by "no other entry is processing"),
so any number of concurrent triggers, on any number of processes, agree on a
single winner through the database rather than through in-process locks.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config import settings
from engine import job_store
from engine.progress import ProgressTracker
from models import QueueEntry, QueueStatus, Subject
from services.worker_gateway import WorkerGateway
from utils.exceptions import WorkerRejection
from utils.perf_logger import WORKER_HANDOFF, perf_logger

logger = logging.getLogger(__name__)

# Losing a promotion race just means re-reading; this bounds pathological churn
MAX_PROMOTION_ATTEMPTS = 5


@dataclass
class Selection:
    """The job that currently owns the processing slot."""
    entry: QueueEntry
    subject: Subject
    promoted: bool  # True if this call moved it out of the queue


@dataclass
class ProcessResult:
    """Outcome of a process() call, relayed as-is by the trigger."""
    success: bool
    processed: bool
    message: Optional[str] = None
    error: Optional[str] = None
    subject_id: Optional[str] = None
    queue_item: Optional[QueueEntry] = field(default=None, repr=False)


class Dispatcher:
    """Selects, promotes and dispatches queue entries."""

    def __init__(
        self,
        gateway: Optional[WorkerGateway] = None,
        tracker: Optional[ProgressTracker] = None,
    ):
        self.gateway = gateway or WorkerGateway()
        self.tracker = tracker or ProgressTracker()

    async def select_next(self, db: AsyncSession) -> Optional[Selection]:
        """
        Return the processing job, promoting the head of the queue if the
        slot is free. Returns None when nothing is processing or queued.
        """
        for attempt in range(1, MAX_PROMOTION_ATTEMPTS + 1):
            current = await job_store.get_processing_entry(db)
            if current is not None:
                subject = await job_store.require_subject(db, current.subject_id)
                return Selection(entry=current, subject=subject, promoted=False)

            candidate = await job_store.get_next_queued_entry(db)
            if candidate is None:
                return None

            if await self._promote(db, candidate.id):
                await self.tracker.mark_processing(db, candidate.subject_id)
                await db.commit()
                entry = await job_store.get_entry(db, candidate.id)
                subject = await job_store.require_subject(db, candidate.subject_id)
                logger.info(f"Promoted subject {entry.subject_id} to processing (position {entry.position})")
                return Selection(entry=entry, subject=subject, promoted=True)

            logger.info(f"Lost promotion race for entry {candidate.id} (attempt {attempt}), re-reading queue")

        current = await job_store.get_processing_entry(db)
        if current is None:
            return None
        subject = await job_store.require_subject(db, current.subject_id)
        return Selection(entry=current, subject=subject, promoted=False)

    async def _promote(self, db: AsyncSession, entry_id: str) -> bool:
        other = aliased(QueueEntry)
        slot_free = ~select(other.id).where(other.status == QueueStatus.PROCESSING).exists()
        try:
            return await job_store.transition(
                db,
                entry_id,
                QueueStatus.QUEUED,
                QueueStatus.PROCESSING,
                slot_free,
                started_at=datetime.utcnow(),
            )
        except IntegrityError:
            # The single-processing index caught a concurrent promotion
            await db.rollback()
            return False

    async def process(self, db: AsyncSession) -> ProcessResult:
        """Ensure the processing slot is occupied and its job handed off."""
        if settings.stale_processing_minutes > 0:
            await self.reap_stale(db, settings.stale_processing_minutes)

        selection = await self.select_next(db)
        if selection is None:
            return ProcessResult(success=True, processed=False, message="No items in queue")

        entry, subject = selection.entry, selection.subject
        if not selection.promoted:
            return ProcessResult(
                success=True,
                processed=False,
                message="Transcription already in progress",
                subject_id=subject.id,
                queue_item=entry,
            )

        audio_url = subject.audio_locator

        # A cancel may have landed between promotion and now
        latest = await job_store.get_entry(db, entry.id)
        if latest is None or latest.status != QueueStatus.PROCESSING:
            status = latest.status.value if latest is not None else "removed"
            logger.info(f"Queue item for subject {subject.id} is {status}, skipping dispatch")
            return ProcessResult(
                success=True,
                processed=False,
                message=f"Queue item was {status}",
                subject_id=subject.id,
                queue_item=latest,
            )

        try:
            with perf_logger.phase(WORKER_HANDOFF, subject.id):
                await self.gateway.dispatch(subject.id, audio_url)
        except WorkerRejection as e:
            logger.error(f"Dispatch failed for subject {subject.id}: {e.message}")
            await self.fail_job(db, latest, e.message)
            return ProcessResult(
                success=False,
                processed=False,
                error=e.message,
                subject_id=subject.id,
                queue_item=await job_store.get_entry(db, entry.id),
            )

        return ProcessResult(
            success=True,
            processed=True,
            message="Transcription started by worker",
            subject_id=subject.id,
            queue_item=latest,
        )

    async def fail_job(self, db: AsyncSession, entry: QueueEntry, error: str) -> bool:
        """
        Mark a processing entry and its subject failed in one transaction.

        If the entry already left processing (e.g. it was cancelled), neither
        record is touched.
        """
        failed = await job_store.transition(
            db,
            entry.id,
            QueueStatus.PROCESSING,
            QueueStatus.FAILED,
            error_message=error,
            completed_at=datetime.utcnow(),
        )
        if not failed:
            logger.info(f"Entry {entry.id} is no longer processing, leaving it as is")
            return False
        await self.tracker.mark_failed(db, entry.subject_id, error)
        await db.commit()
        return True

    async def reap_stale(self, db: AsyncSession, max_age_minutes: int) -> int:
        """Fail processing entries whose worker never reported back."""
        cutoff = datetime.utcnow() - timedelta(minutes=max_age_minutes)
        current = await job_store.get_processing_entry(db)
        if current is None or current.started_at is None or current.started_at >= cutoff:
            return 0
        logger.warning(f"Reaping stale job: subject_id={current.subject_id} (started {current.started_at})")
        reaped = await self.fail_job(
            db,
            current,
            f"Interrupted: worker did not report completion within {max_age_minutes} minutes. Re-add to retry.",
        )
        return 1 if reaped else 0
