"""
Engine package for the transcription queue.
Contains the TranscriptionQueue facade and its components.
"""

from engine.job_queue import TranscriptionQueue
from engine.dispatcher import Dispatcher
from engine.admission import AdmissionControl
from engine.cancellation import CancellationController

__all__ = [
    "TranscriptionQueue",
    "Dispatcher",
    "AdmissionControl",
    "CancellationController",
]
