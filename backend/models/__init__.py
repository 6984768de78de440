"""
Database models package.
"""

from models.database import Base, engine, get_db, async_session
from models.subject import Subject, SubjectStatus
from models.queue_entry import QueueEntry, QueueStatus, TERMINAL_STATUSES

__all__ = [
    "Base",
    "engine",
    "get_db",
    "async_session",
    "Subject",
    "SubjectStatus",
    "QueueEntry",
    "QueueStatus",
    "TERMINAL_STATUSES",
]
