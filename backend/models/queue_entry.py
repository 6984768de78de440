"""
Transcription queue entry database model.
"""

import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, Index, text
from sqlalchemy.orm import relationship

from models.database import Base


class QueueStatus(enum.Enum):
    """Lifecycle state of a queue entry."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED)


def new_id() -> str:
    return str(uuid.uuid4())


class QueueEntry(Base):
    """Scheduling record tracking a subject's queue position and lifecycle."""

    __tablename__ = "queue_entries"
    __table_args__ = (
        # At most one processing entry system-wide
        Index(
            "uq_queue_entries_single_processing",
            "status",
            unique=True,
            sqlite_where=text("status = 'processing'"),
            postgresql_where=text("status = 'processing'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    subject_id = Column(
        String(36),
        ForeignKey("subjects.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,  # at most one entry per subject
        index=True,
    )
    status = Column(
        Enum(QueueStatus, values_callable=lambda e: [m.value for m in e]),
        default=QueueStatus.QUEUED,
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, index=True)  # 1 = next to process
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    error_message = Column(Text, nullable=True)

    # Relationships
    subject = relationship("Subject", back_populates="queue_entry")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
