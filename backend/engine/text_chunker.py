"""
Text chunking for downstream summarisation.

Not to be confused with transcription chunks: those are time-bounded audio
segments reported by the worker. These are character-bounded slices of
finished text. When the transcription chunk map exists it is reused as-is;
otherwise the final transcript is re-chunked.
"""

from typing import Dict, Tuple

from config import settings
from engine.progress import COMPLETED_KEY
from models import Subject
from utils.exceptions import InvalidStateError

SOURCE_TRANSCRIPTION = "transcription"
SOURCE_TRANSCRIPT = "transcript"


def split_text(text: str, size: int = None) -> Dict[int, str]:
    """Split text into consecutive slices of at most ``size`` characters."""
    size = size or settings.summary_chunk_size
    if size < 1:
        raise ValueError("Chunk size must be positive")
    text = (text or "").strip()
    return {i: text[start:start + size] for i, start in enumerate(range(0, len(text), size))}


def summary_chunks(subject: Subject) -> Tuple[str, Dict[int, str]]:
    """Chunks to summarise, and where they came from."""
    completed = (subject.progress_json or {}).get(COMPLETED_KEY)
    if completed:
        ordered = sorted(((int(k), v) for k, v in completed.items()), key=lambda kv: kv[0])
        return SOURCE_TRANSCRIPTION, dict(ordered)

    if subject.transcript and subject.transcript.strip():
        return SOURCE_TRANSCRIPT, split_text(subject.transcript)

    raise InvalidStateError(
        "No transcript or chunks found for this subject. Transcript must be generated first."
    )
