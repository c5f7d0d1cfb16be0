"""Media database model."""
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, BigInteger, DateTime, Index, Integer, String
from plex_encoder.database import Base


class Media(Base):
    """One discovered source file and its current codec state."""

    __tablename__ = "media"

    id = Column(Integer, primary_key=True, index=True)

    # Identity
    file_path = Column(String, nullable=False, unique=True)

    # Classification
    title = Column(String, nullable=False)
    episode_name = Column(String, nullable=True)
    directory = Column(String, nullable=False)
    media_type = Column(String, nullable=False)  # 'tv' or 'movie'

    # Codec state
    file_size_bytes = Column(BigInteger, nullable=False)
    encoding_type = Column(String, nullable=False)
    needs_encoding = Column(Boolean, nullable=False, default=False)
    encoded_previously = Column(Boolean, nullable=False, default=False)

    # Timestamps
    last_updated = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_media_needs_encoding', 'needs_encoding', 'file_size_bytes'),
    )
