"""Configuration management for the encoding service."""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_list(name: str, default: str) -> list:
    """Split a comma separated environment variable into a lowercase list."""
    raw = os.getenv(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Settings:
    """Application settings loaded from environment variables."""

    # Paths
    LIBRARY_ROOT: str = os.getenv("LIBRARY_ROOT", "/media")
    TEMP_DIR: str = os.getenv("TEMP_DIR", "/tmp/plex-encoder")
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./database/encoder.db")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL", f"sqlite+aiosqlite:///{DATABASE_PATH}"
    )

    # External tools
    FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg")
    FFPROBE_BINARY: str = os.getenv("FFPROBE_BINARY", "ffprobe")
    HWACCEL: str = os.getenv("HWACCEL", "auto")  # auto, qsv or none

    # Codecs that never need a re-encode
    ACCEPTED_CODECS: list = _env_list("ACCEPTED_CODECS", "hevc,h265,av1")

    # Dispatch
    DEFAULT_MAX_PARALLEL_JOBS: int = int(os.getenv("DEFAULT_MAX_PARALLEL_JOBS", "2"))
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "10"))
    ADMISSION_BATCH_SIZE: int = int(os.getenv("ADMISSION_BATCH_SIZE", "100"))
    JOB_TIMEOUT_SECONDS: float = float(os.getenv("JOB_TIMEOUT_SECONDS", "86400"))

    # Library watch
    WATCH_POLL_INTERVAL: float = float(os.getenv("WATCH_POLL_INTERVAL", "5"))
    WATCH_STABILITY_SECONDS: float = float(os.getenv("WATCH_STABILITY_SECONDS", "2"))

    # CORS
    CORS_ORIGINS: list = ["*"]

    @classmethod
    def clean_scratch(cls) -> int:
        """
        Remove everything under TEMP_DIR.

        Scratch outputs only become valid once moved over their source, so
        anything left here belongs to an encode that never finished.

        Returns:
            Number of entries removed
        """
        temp_path = Path(cls.TEMP_DIR)
        if not temp_path.exists():
            return 0

        removed = 0
        for item in temp_path.iterdir():
            try:
                if item.is_dir():
                    shutil.rmtree(item)
                else:
                    item.unlink()
                removed += 1
                logger.info(f"Removed orphaned scratch entry: {item.name}")
            except OSError as e:
                logger.error(f"Could not remove scratch entry {item}: {e}")
        return removed

    @classmethod
    def ensure_directories(cls):
        """Create the scratch and database directories, emptying scratch."""
        cls.clean_scratch()
        Path(cls.TEMP_DIR).mkdir(parents=True, exist_ok=True)
        Path(cls.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
