"""Schedule rule database model."""
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from plex_encoder.database import Base


class ScheduleRule(Base):
    """A weekday/time window mapped to a concurrency limit."""

    __tablename__ = "schedule"

    id = Column(Integer, primary_key=True, index=True)
    days_of_week = Column(String, nullable=False)  # "0,1,2" with 0 = Sunday
    start_time = Column(String, nullable=False)  # HH:MM
    end_time = Column(String, nullable=False)  # HH:MM
    max_parallel_jobs = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    @property
    def weekdays(self) -> set:
        """Weekdays as a set of ints (0 = Sunday)."""
        return {int(day) for day in self.days_of_week.split(",") if day.strip()}
