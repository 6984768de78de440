"""
Transcription job queue.

Facade over the queue components. Holds no job state of its own: every call
works against the database session it is given, so any number of API
processes can share one queue.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from engine import job_store
from engine.admission import AdmissionControl, AdmissionResult
from engine.cancellation import CancellationController, CancelResult
from engine.completion import CompletionHandler, CompletionResult
from engine.dispatcher import Dispatcher, ProcessResult
from engine.positions import PositionAllocator
from engine.progress import ProgressTracker
from models import QueueStatus
from services.worker_gateway import WorkerGateway

logger = logging.getLogger(__name__)


class TranscriptionQueue:
    """
    Global single-concurrency transcription queue.

    Wires admission, dispatch, progress tracking and cancellation around a
    shared tracker and allocator.
    """

    _instance: Optional["TranscriptionQueue"] = None

    def __init__(self, gateway: Optional[WorkerGateway] = None):
        self.tracker = ProgressTracker()
        self.allocator = PositionAllocator()
        self.admission = AdmissionControl(self.allocator, self.tracker)
        self.dispatcher = Dispatcher(gateway or WorkerGateway(), self.tracker)
        self.cancellation = CancellationController(self.tracker)
        self.completion = CompletionHandler(self.tracker)

    @classmethod
    def get_instance(cls) -> "TranscriptionQueue":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def gateway(self) -> WorkerGateway:
        return self.dispatcher.gateway

    @gateway.setter
    def gateway(self, gateway: WorkerGateway) -> None:
        self.dispatcher.gateway = gateway

    async def add(self, db: AsyncSession, subject_id: str) -> AdmissionResult:
        return await self.admission.add(db, subject_id)

    async def cancel(self, db: AsyncSession, subject_id: str) -> CancelResult:
        return await self.cancellation.cancel(db, subject_id)

    async def process(self, db: AsyncSession) -> ProcessResult:
        return await self.dispatcher.process(db)

    async def complete(self, db: AsyncSession, subject_id: str, success: bool,
                       error_message: Optional[str] = None,
                       transcript: Optional[str] = None) -> CompletionResult:
        return await self.completion.complete(db, subject_id, success, error_message, transcript)

    async def list(self, db: AsyncSession) -> dict:
        """Snapshot of the queue: {processing, queued, all}, ordered by position."""
        rows = await job_store.list_entries(db)
        processing = next((row for row in rows if row[0].status == QueueStatus.PROCESSING), None)
        queued = [row for row in rows if row[0].status == QueueStatus.QUEUED]
        return {"processing": processing, "queued": queued, "all": rows}
