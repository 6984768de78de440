"""
FIFO position allocation for newly queued entries.
"""

import logging

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from models import QueueEntry, QueueStatus
from utils.exceptions import InfrastructureError

logger = logging.getLogger(__name__)


class PositionAllocator:
    """
    Hands out queue positions.

    The primary strategy is a scalar subquery (max queued position + 1) meant
    to be embedded in the statement that writes the entry, so computing the
    position and claiming it happen in one atomic statement. The fallback
    counts queued rows; it is not race-free, but a collision only blurs
    relative ordering since selection always re-derives the lowest position.
    """

    def position_clause(self):
        """Scalar SQL expression evaluating to the next free position."""
        queued = aliased(QueueEntry)
        return (
            select(func.coalesce(func.max(queued.position), 0) + 1)
            .where(queued.status == QueueStatus.QUEUED)
            .scalar_subquery()
        )

    async def next_position(self, db: AsyncSession) -> int:
        """Next position as a plain integer (primary path, then fallback)."""
        try:
            result = await db.execute(select(self.position_clause()))
            return int(result.scalar_one())
        except SQLAlchemyError as e:
            logger.warning(f"Atomic position allocation failed, using count fallback: {e}")
            return await self.fallback_position(db)

    async def fallback_position(self, db: AsyncSession) -> int:
        """count(queued) + 1. Fails closed if the store is unreachable."""
        try:
            result = await db.execute(
                select(func.count(QueueEntry.id)).where(QueueEntry.status == QueueStatus.QUEUED)
            )
            position = int(result.scalar_one() or 0) + 1
        except SQLAlchemyError as e:
            logger.error(f"Fallback position allocation failed: {e}")
            raise InfrastructureError("Failed to allocate queue position", detail=str(e))
        logger.info(f"Using fallback position calculation: {position}")
        return position
