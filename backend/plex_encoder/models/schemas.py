"""Pydantic schemas for records, API requests and responses."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class MediaInfo(BaseModel):
    """A discovered media file, ready to be upserted."""
    title: str
    episode_name: Optional[str] = None
    directory: str
    file_path: str
    file_size_bytes: int = Field(ge=0)
    encoding_type: str
    media_type: str = Field(pattern="^(tv|movie)$")


class MediaResponse(MediaInfo):
    """Schema for a stored media record."""
    id: int
    needs_encoding: bool
    encoded_previously: bool
    last_updated: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    """Schema for an encoding job joined with its media record."""
    id: int
    media_id: int
    status: str
    priority: int
    retries: int
    error_message: Optional[str]
    temp_file_path: Optional[str]
    original_size_bytes: int
    new_size_bytes: Optional[int]
    size_reduction_percent: Optional[float]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    # Media fields
    title: str
    episode_name: Optional[str]
    file_path: str
    encoding_type: str


class QueueSnapshot(BaseModel):
    """Schema for the dispatch queue snapshot."""
    processing: list[JobResponse]
    queued: list[JobResponse]
    completed: list[JobResponse]
    failed: list[JobResponse]
    paused: bool
    max_parallel_jobs: int
    active_count: int


class ScanRequest(BaseModel):
    """Schema for triggering a library scan."""
    path: Optional[str] = Field(default=None, description="Library root, defaults to LIBRARY_ROOT")


class ScanResult(BaseModel):
    """Aggregate counters for one scan."""
    scanned: int = 0
    added: int = 0
    needs_transcode: int = 0
    errors: int = 0


class ConcurrencyUpdate(BaseModel):
    """Schema for changing the concurrency limit."""
    max_parallel_jobs: int


class ScheduleRuleBase(BaseModel):
    """Fields shared by schedule rule requests."""
    weekdays: list[int] = Field(description="Weekdays the rule applies to (0 = Sunday)")
    start_time: str = Field(pattern=TIME_PATTERN, description="Window start, HH:MM")
    end_time: str = Field(pattern=TIME_PATTERN, description="Window end, HH:MM (inclusive)")
    max_parallel_jobs: int = Field(default=2, ge=1)
    active: bool = True

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("weekdays must not be empty")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("weekdays must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_window(self):
        # Overnight windows are not supported; split them into two rules
        if self.start_time > self.end_time:
            raise ValueError(
                f"start_time {self.start_time} is after end_time {self.end_time}; "
                "split overnight windows into two rules"
            )
        return self

    @property
    def days_of_week(self) -> str:
        return ",".join(str(day) for day in self.weekdays)


class ScheduleRuleCreate(ScheduleRuleBase):
    """Schema for creating a schedule rule."""


class ScheduleRuleUpdate(ScheduleRuleBase):
    """Schema for replacing a schedule rule."""


class ScheduleActiveUpdate(BaseModel):
    """Schema for toggling a schedule rule."""
    active: bool


class ScheduleRuleResponse(BaseModel):
    """Schema for a stored schedule rule."""
    id: int
    weekdays: list[int]
    start_time: str
    end_time: str
    max_parallel_jobs: int
    active: bool
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)
