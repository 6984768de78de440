"""
Admission control: validate a subject and put it in the transcription queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from engine import job_store
from engine.positions import PositionAllocator
from engine.progress import ProgressTracker
from models import QueueEntry, QueueStatus, TERMINAL_STATUSES
from models.queue_entry import new_id
from utils.exceptions import InfrastructureError, InvalidStateError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class AdmissionResult:
    """Outcome of an add() call. ``entry`` is None for the no-op case."""
    message: str
    entry: Optional[QueueEntry]
    created: bool = False


class AdmissionControl:
    """Idempotent enqueueing of subjects."""

    def __init__(
        self,
        allocator: Optional[PositionAllocator] = None,
        tracker: Optional[ProgressTracker] = None,
    ):
        self.allocator = allocator or PositionAllocator()
        self.tracker = tracker or ProgressTracker()

    async def add(self, db: AsyncSession, subject_id: str) -> AdmissionResult:
        if not subject_id or not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("Missing or invalid subject_id")
        subject_id = subject_id.strip()

        subject = await job_store.require_subject(db, subject_id)

        if subject.has_transcript:
            logger.info(f"Subject {subject_id} already has a transcript, nothing to queue")
            return AdmissionResult(message="Transcript already exists", entry=None)

        if not subject.audio_locator:
            raise InvalidStateError(
                "Subject has no audio_url or youtube_url. Cannot add to queue."
            )

        existing = await job_store.get_entry_for_subject(db, subject_id)
        if existing is not None and not existing.is_terminal:
            return AdmissionResult(message="Subject already in queue", entry=existing)

        existing_id = existing.id if existing is not None else None
        try:
            entry = await self._enqueue(db, subject_id, existing_id, self.allocator.position_clause())
        except IntegrityError:
            await db.rollback()
            return await self._resolve_duplicate(db, subject_id)
        except SQLAlchemyError as e:
            logger.warning(f"Atomic enqueue failed for subject {subject_id}, retrying with fallback position: {e}")
            await db.rollback()
            position = await self.allocator.fallback_position(db)
            try:
                entry = await self._enqueue(db, subject_id, existing_id, position)
            except IntegrityError:
                await db.rollback()
                return await self._resolve_duplicate(db, subject_id)
            except SQLAlchemyError as e2:
                await db.rollback()
                raise InfrastructureError("Failed to add to queue", detail=str(e2))

        if entry is None:
            # The terminal entry changed under us (another admission recycled it)
            await db.rollback()
            return await self._resolve_duplicate(db, subject_id)

        await self.tracker.mark_queued(db, subject_id, entry.position)
        await db.commit()

        logger.info(f"Subject {subject_id} added to queue at position {entry.position}")
        return AdmissionResult(message="Added to transcription queue", entry=entry, created=True)

    async def _enqueue(
        self,
        db: AsyncSession,
        subject_id: str,
        existing_id: Optional[str],
        position,
    ) -> Optional[QueueEntry]:
        """Insert a new entry, or recycle a terminal one, at ``position``."""
        now = datetime.utcnow()
        if existing_id is None:
            await db.execute(
                insert(QueueEntry).values(
                    id=new_id(),
                    subject_id=subject_id,
                    status=QueueStatus.QUEUED,
                    position=position,
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            result = await db.execute(
                update(QueueEntry)
                .where(QueueEntry.id == existing_id, QueueEntry.status.in_(TERMINAL_STATUSES))
                .values(
                    status=QueueStatus.QUEUED,
                    position=position,
                    created_at=now,
                    updated_at=now,
                    started_at=None,
                    completed_at=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            logger.info(f"Recycling terminal queue entry {existing_id} for subject {subject_id}")
        return await job_store.get_entry_for_subject(db, subject_id)

    async def _resolve_duplicate(self, db: AsyncSession, subject_id: str) -> AdmissionResult:
        existing = await job_store.get_entry_for_subject(db, subject_id)
        if existing is None:
            raise InfrastructureError("Failed to add to queue")
        return AdmissionResult(message="Subject already in queue", entry=existing)
