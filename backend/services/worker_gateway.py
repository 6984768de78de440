"""
Gateway to the out-of-process transcription worker.

The call only confirms the worker accepted the job; the transcription itself
runs remotely and reports back through the progress mailbox and the
completion endpoint.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import settings
from utils.exceptions import WorkerRejection

logger = logging.getLogger(__name__)


@dataclass
class DispatchAccepted:
    """The worker acknowledged the job."""
    subject_id: str
    status_code: int


class WorkerGateway:
    """Fire-and-forget handoff to the transcription worker over HTTP."""

    def __init__(
        self,
        worker_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._worker_url = worker_url
        self._timeout = timeout
        self._transport = transport

    @property
    def worker_url(self) -> Optional[str]:
        url = self._worker_url if self._worker_url is not None else settings.worker_url
        url = (url or "").strip()
        return url.rstrip("/") or None

    @property
    def timeout(self) -> float:
        return self._timeout if self._timeout is not None else settings.worker_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return self.worker_url is not None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if settings.worker_token:
            headers["Authorization"] = f"Bearer {settings.worker_token}"
        return headers

    async def dispatch(self, subject_id: str, audio_url: Optional[str]) -> DispatchAccepted:
        """
        Hand a job to the worker.

        Raises:
            WorkerRejection: Worker unconfigured, unreachable, timed out or
                answered with a non-2xx status.
        """
        if not audio_url:
            raise WorkerRejection("No audio_url or youtube_url available")
        if not self.is_configured:
            raise WorkerRejection("Worker service not configured (WORKER_URL missing)")

        endpoint = f"{self.worker_url}/transcribe"
        logger.info(f"Calling worker: {endpoint} for subject {subject_id}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    endpoint,
                    json={"subjectId": subject_id, "audioUrl": audio_url},
                    headers=self._headers(),
                )
        except httpx.TimeoutException:
            raise WorkerRejection(f"Worker did not respond within {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise WorkerRejection(f"Worker unreachable: {e}")

        if not response.is_success:
            body = response.text[:500] if response.text else "Unknown error"
            raise WorkerRejection(f"Worker error: {response.status_code} {body}")

        logger.info(f"Worker accepted transcription request for subject {subject_id}")
        return DispatchAccepted(subject_id=subject_id, status_code=response.status_code)
