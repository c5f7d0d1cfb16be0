"""Encoding job database model."""
from datetime import datetime, timezone
from sqlalchemy import BigInteger, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from plex_encoder.database import Base

QUEUED = "queued"
PROCESSING = "processing"
REPLACING_FILE = "replacing_file"
COMPLETED = "completed"
FAILED = "failed"

# A media record may have at most one job in one of these statuses
NON_TERMINAL_STATUSES = (QUEUED, PROCESSING, REPLACING_FILE)


class EncodingJob(Base):
    """One attempt to transcode a media record."""

    __tablename__ = "encoding_jobs"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)
    media_id = Column(Integer, ForeignKey("media.id", ondelete="CASCADE"), nullable=False)

    # Status tracking
    status = Column(String, nullable=False, default=QUEUED)
    priority = Column(Integer, nullable=False, default=0)
    retries = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Output
    temp_file_path = Column(String, nullable=True)
    original_size_bytes = Column(BigInteger, nullable=False)
    new_size_bytes = Column(BigInteger, nullable=True)
    size_reduction_percent = Column(Float, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Indexes
    __table_args__ = (
        Index('idx_jobs_status', 'status'),
        Index('idx_jobs_media_id', 'media_id'),
    )
