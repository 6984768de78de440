"""
Subject database model: the content being transcribed.
"""

import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, JSON
from sqlalchemy.orm import relationship

from models.database import Base


class SubjectStatus(enum.Enum):
    """Overall transcript status of a subject."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


def new_id() -> str:
    return str(uuid.uuid4())


class Subject(Base):
    """A piece of content with an audio source and (eventually) a transcript."""

    __tablename__ = "subjects"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(500), nullable=False, default="")
    audio_url = Column(String(1000), nullable=True)    # primary audio locator
    youtube_url = Column(String(1000), nullable=True)  # alternate audio locator
    status = Column(
        Enum(SubjectStatus, values_callable=lambda e: [m.value for m in e]),
        default=SubjectStatus.PENDING,
        nullable=False,
        index=True,
    )
    # Durable mailbox for worker progress:
    # {step, message, position?, total?, completedChunks: {idx: text}, failedChunks: {idx: err}}
    progress_json = Column(JSON(none_as_null=True), nullable=True)
    # Bumped on every progress write; writers compare-and-swap on it
    progress_version = Column(Integer, nullable=False, default=0)
    transcript = Column(Text, nullable=True)
    transcript_generated_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    queue_entry = relationship(
        "QueueEntry", back_populates="subject", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def audio_locator(self):
        """The primary audio URL, falling back to the alternate one."""
        for url in (self.audio_url, self.youtube_url):
            if url and url.strip():
                return url.strip()
        return None

    @property
    def has_transcript(self) -> bool:
        from config import settings
        return bool(self.transcript) and len(self.transcript.strip()) > settings.transcript_min_length
