"""
Progress & chunk tracker.

Subject.progress_json is a durable mailbox: the external worker drops
per-chunk results into it while this service writes status keys. Every write
here is a versioned compare-and-swap on Subject.progress_version that only
touches the keys it owns, so a chunk report and a cancel landing at the same
time both survive.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import Subject, SubjectStatus
from utils.exceptions import InfrastructureError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

COMPLETED_KEY = "completedChunks"
FAILED_KEY = "failedChunks"
TOTAL_KEY = "total"
CHUNK_KEYS = (COMPLETED_KEY, FAILED_KEY, TOTAL_KEY)

Progress = Optional[Dict]
Mutator = Callable[[Dict], Progress]


# --- Pure merge rules ---

def chunk_key(index) -> str:
    """Normalize a chunk index to its JSON object key."""
    try:
        value = int(index)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid chunk index: {index!r}")
    if value < 0:
        raise ValidationError(f"Invalid chunk index: {index!r}")
    return str(value)


def chunk_state(progress: Progress) -> Dict:
    """The chunk-related keys of a progress snapshot (what survives cancel/requeue)."""
    progress = progress or {}
    return {key: progress[key] for key in CHUNK_KEYS if progress.get(key)}


def merge_chunk_success(progress: Progress, index, text: str) -> Dict:
    """Record a completed chunk; clears any earlier failure for the same index."""
    key = chunk_key(index)
    merged = dict(progress or {})
    completed = dict(merged.get(COMPLETED_KEY) or {})
    failed = dict(merged.get(FAILED_KEY) or {})
    completed[key] = text
    failed.pop(key, None)
    merged[COMPLETED_KEY] = completed
    if failed:
        merged[FAILED_KEY] = failed
    else:
        merged.pop(FAILED_KEY, None)
    return merged


def merge_chunk_failure(progress: Progress, index, error: str) -> Dict:
    """Record a failed chunk unless that index already completed."""
    key = chunk_key(index)
    merged = dict(progress or {})
    completed = merged.get(COMPLETED_KEY) or {}
    if key in completed:
        return merged
    failed = dict(merged.get(FAILED_KEY) or {})
    failed[key] = error
    merged[FAILED_KEY] = failed
    return merged


def missing_chunks(completed: Optional[Dict], total: Optional[int] = None) -> list[int]:
    """Indices in 0..N-1 with no completed text. N defaults to max index + 1."""
    indices = {int(k) for k in (completed or {})}
    if total is None:
        total = max(indices) + 1 if indices else 0
    return [i for i in range(total) if i not in indices]


def assemble_transcript(
    completed: Optional[Dict],
    total: Optional[int] = None,
    separator: Optional[str] = None,
) -> Optional[str]:
    """
    Join completed chunk texts in ascending index order.

    Returns None until every index 0..N-1 is present.
    """
    if not completed:
        return None
    if missing_chunks(completed, total):
        return None
    if separator is None:
        separator = settings.chunk_separator
    ordered = sorted(((int(k), v) for k, v in completed.items()), key=lambda kv: kv[0])
    if total is not None:
        ordered = ordered[:total]
    return separator.join((text or "").strip() for _, text in ordered)


def clear_chunk_state(progress: Progress) -> Progress:
    """Progress without its chunk keys, or None if only a stale status is left."""
    remaining = {k: v for k, v in (progress or {}).items() if k not in CHUNK_KEYS}
    if "step" not in remaining:
        return None
    if set(remaining) <= {"step", "message"} and remaining["step"] == "cancelled":
        return None
    return remaining


# --- Store writes ---

class ProgressTracker:
    """Applies progress merges to subjects with optimistic concurrency."""

    async def apply(
        self,
        db: AsyncSession,
        subject_id: str,
        mutate: Mutator,
        **fields,
    ) -> Progress:
        """
        Read the snapshot, apply ``mutate`` and write it back if nobody else
        wrote in between. Extra ``fields`` are set on the subject row in the
        same statement.
        """
        for attempt in range(1, settings.progress_merge_retries + 1):
            result = await db.execute(
                select(Subject.progress_json, Subject.progress_version).where(Subject.id == subject_id)
            )
            row = result.one_or_none()
            if row is None:
                raise NotFoundError(f'Subject with ID "{subject_id}" not found')

            progress, version = row
            new_progress = mutate(dict(progress or {}))
            written = await db.execute(
                update(Subject)
                .where(Subject.id == subject_id, Subject.progress_version == version)
                .values(
                    progress_json=new_progress,
                    progress_version=version + 1,
                    updated_at=datetime.utcnow(),
                    **fields,
                )
                .execution_options(synchronize_session=False)
            )
            if written.rowcount == 1:
                return new_progress
            logger.debug(f"Progress write conflict for subject {subject_id} (attempt {attempt})")

        raise InfrastructureError(f"Progress update for subject {subject_id} kept conflicting")

    # Status transitions

    async def mark_queued(self, db: AsyncSession, subject_id: str, position: int) -> Progress:
        def mutate(progress):
            return {
                **chunk_state(progress),
                "step": "queued",
                "message": f"Queued for transcription (position {position} in queue)...",
                "position": position,
            }
        return await self.apply(
            db, subject_id, mutate, status=SubjectStatus.GENERATING, error_message=None
        )

    async def mark_processing(self, db: AsyncSession, subject_id: str) -> Progress:
        def mutate(progress):
            return {
                **chunk_state(progress),
                "step": "processing",
                "message": "Transcription in progress...",
                "position": 1,
            }
        return await self.apply(db, subject_id, mutate, status=SubjectStatus.GENERATING)

    async def mark_failed(self, db: AsyncSession, subject_id: str, error: str) -> Progress:
        def mutate(progress):
            return {**chunk_state(progress), "step": "failed", "message": error}
        return await self.apply(
            db, subject_id, mutate, status=SubjectStatus.FAILED, error_message=error
        )

    async def mark_cancelled(self, db: AsyncSession, subject_id: str) -> Progress:
        def mutate(progress):
            kept = chunk_state(progress)
            message = "Transcription cancelled by user."
            if kept.get(COMPLETED_KEY):
                message += " Completed chunks preserved."
            return {**kept, "step": "cancelled", "message": message}
        return await self.apply(
            db, subject_id, mutate, status=SubjectStatus.PENDING, error_message=None
        )

    async def mark_dequeued(self, db: AsyncSession, subject_id: str) -> Progress:
        return await self.apply(
            db, subject_id, lambda progress: chunk_state(progress) or None,
            status=SubjectStatus.PENDING, error_message=None,
        )

    async def mark_completed(self, db: AsyncSession, subject_id: str, transcript: str) -> Progress:
        def mutate(progress):
            return {
                **chunk_state(progress),
                "step": "completed",
                "message": f"Transcription complete ({len(transcript)} characters)",
            }
        return await self.apply(
            db, subject_id, mutate,
            status=SubjectStatus.COMPLETED,
            transcript=transcript,
            transcript_generated_at=datetime.utcnow(),
            error_message=None,
        )

    # Chunk mailbox

    async def record_chunk(
        self,
        db: AsyncSession,
        subject_id: str,
        index: int,
        text: Optional[str] = None,
        error: Optional[str] = None,
        total: Optional[int] = None,
    ) -> Progress:
        """Merge one chunk report (success when ``text`` is given, else failure)."""
        if text is None and error is None:
            raise ValidationError("A chunk report needs either text or error")
        if total is not None and total < 1:
            raise ValidationError(f"Invalid chunk total: {total}")

        position = int(chunk_key(index))

        def mutate(progress):
            known_total = total if total is not None else progress.get(TOTAL_KEY)
            if known_total is not None and position >= known_total:
                raise ValidationError(f"Chunk index {position} out of range for {known_total} chunks")
            if text is not None:
                merged = merge_chunk_success(progress, index, text)
            else:
                merged = merge_chunk_failure(progress, index, error)
            if total is not None:
                merged[TOTAL_KEY] = total
            done = len(merged.get(COMPLETED_KEY) or {})
            if total is not None:
                merged["message"] = f"Transcribed {done}/{total} chunks"
            return merged

        progress = await self.apply(db, subject_id, mutate)
        logger.info(
            f"Chunk {index} {'completed' if text is not None else 'failed'} for subject {subject_id}"
        )
        return progress

    async def clear_chunks(self, db: AsyncSession, subject_id: str) -> Progress:
        """Drop chunk maps from the snapshot; queue status is left alone."""
        progress = await self.apply(db, subject_id, clear_chunk_state)
        logger.info(f"Cleared chunks for subject {subject_id}")
        return progress
