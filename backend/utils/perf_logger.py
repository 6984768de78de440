"""
Timing for queue phases.

Each phase is logged once when it starts and once when it ends, tagged with
the subject it ran for and its outcome. The most recent duration of every
phase is kept so /health can report how long the worker takes to answer.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)

WORKER_HANDOFF = "worker_handoff"


class QueuePhaseTimer:
    """Records how long each queue phase took, per subject."""

    def __init__(self):
        self.last_durations: Dict[str, float] = {}
        self.last_outcomes: Dict[str, str] = {}

    @staticmethod
    def _stamp() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    @contextmanager
    def phase(self, name: str, subject_id: str):
        """
        Time the enclosed block. The outcome is "ok", or the name of the
        exception that escaped the block (which is re-raised).
        """
        logger.info(f"[{self._stamp()}] [START] {name} subject={subject_id}")
        started = time.perf_counter()
        outcome = "ok"
        try:
            yield
        except Exception as e:
            outcome = type(e).__name__
            raise
        finally:
            duration = time.perf_counter() - started
            self.last_durations[name] = duration
            self.last_outcomes[name] = outcome
            logger.info(
                f"[{self._stamp()}] [END]   {name} subject={subject_id} {outcome} "
                f"(Duration: {duration:.3f}s)"
            )

    def last(self, name: str) -> Optional[dict]:
        """Most recent run of a phase, or None if it never ran."""
        if name not in self.last_durations:
            return None
        return {
            "seconds": round(self.last_durations[name], 3),
            "outcome": self.last_outcomes[name],
        }


# Singleton instance
perf_logger = QueuePhaseTimer()
