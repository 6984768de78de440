"""
Job store: query helpers over queue entries and subjects.

Reads that follow a core UPDATE use populate_existing so the identity map
never hands back a stale row.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from models import QueueEntry, QueueStatus, Subject
from utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)


async def get_subject(db: AsyncSession, subject_id: str) -> Optional[Subject]:
    result = await db.execute(
        select(Subject)
        .where(Subject.id == subject_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_subject(db: AsyncSession, subject_id: str) -> Subject:
    subject = await get_subject(db, subject_id)
    if subject is None:
        raise NotFoundError(f'Subject with ID "{subject_id}" not found')
    return subject


async def get_entry_for_subject(db: AsyncSession, subject_id: str) -> Optional[QueueEntry]:
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.subject_id == subject_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_entry(db: AsyncSession, entry_id: str) -> Optional[QueueEntry]:
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_processing_entry(db: AsyncSession) -> Optional[QueueEntry]:
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.status == QueueStatus.PROCESSING)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_next_queued_entry(db: AsyncSession) -> Optional[QueueEntry]:
    """Queued entry with the lowest position (FIFO)."""
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.status == QueueStatus.QUEUED)
        .order_by(QueueEntry.position.asc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_entries(db: AsyncSession) -> List[tuple[QueueEntry, Subject]]:
    """All queue entries with their subjects, ordered by position."""
    result = await db.execute(
        select(QueueEntry, Subject)
        .join(Subject, Subject.id == QueueEntry.subject_id)
        .order_by(QueueEntry.position.asc(), QueueEntry.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return [(entry, subject) for entry, subject in result.all()]


async def transition(
    db: AsyncSession,
    entry_id: str,
    from_status: QueueStatus,
    to_status: QueueStatus,
    *conditions,
    **values,
) -> bool:
    """
    Compare-and-swap a queue entry's status.

    Returns True only if the row was still in ``from_status`` (and every
    extra condition held); a concurrent writer that got there first makes
    this a no-op.
    """
    values.setdefault("updated_at", datetime.utcnow())
    result = await db.execute(
        update(QueueEntry)
        .where(QueueEntry.id == entry_id, QueueEntry.status == from_status, *conditions)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def delete_entry(db: AsyncSession, entry_id: str, status: QueueStatus) -> bool:
    """Delete an entry only if it is still in ``status``."""
    result = await db.execute(
        delete(QueueEntry)
        .where(QueueEntry.id == entry_id, QueueEntry.status == status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def resequence_queued(db: AsyncSession) -> int:
    """
    Renumber queued entries to a contiguous 1..n run, keeping their order.

    Returns the number of queued entries.
    """
    result = await db.execute(
        select(QueueEntry.id, QueueEntry.position)
        .where(QueueEntry.status == QueueStatus.QUEUED)
        .order_by(QueueEntry.position.asc(), QueueEntry.created_at.asc(), QueueEntry.id.asc())
    )
    rows = result.all()
    for new_position, (entry_id, position) in enumerate(rows, start=1):
        if position != new_position:
            await db.execute(
                update(QueueEntry)
                .where(QueueEntry.id == entry_id, QueueEntry.status == QueueStatus.QUEUED)
                .values(position=new_position)
                .execution_options(synchronize_session=False)
            )
    if rows:
        logger.info(f"Resequenced {len(rows)} queued entries")
    return len(rows)
