"""
Application configuration management.
Centralizes all configuration settings for the transcription queue service.
"""

import os
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings


def get_app_data_dir() -> Path:
    """Get persistent application data directory."""
    data_dir = os.getenv("TRANSCRIPTION_QUEUE_DATA_DIR")
    if data_dir:
        path = Path(data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path
    # Development: backend directory
    return Path(__file__).parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Transcription Queue Service"
    debug: bool = False

    # Storage
    base_dir: Path = get_app_data_dir()
    database_url: str = f"sqlite:///{base_dir / 'queue.db'}"

    # External transcription worker
    worker_url: Optional[str] = None
    worker_token: Optional[str] = None
    worker_timeout_seconds: float = 10.0

    # Periodic trigger (shared-secret bearer header; disabled when unset)
    cron_secret: Optional[str] = None

    # Queue behaviour
    transcript_min_length: int = 100
    chunk_separator: str = "\n\n"
    summary_chunk_size: int = 5000
    progress_merge_retries: int = 5
    stale_processing_minutes: int = 0  # 0 = never reap processing jobs

    # Server
    host: str = "127.0.0.1"
    port: int = 8081
    cors_origins: list[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
