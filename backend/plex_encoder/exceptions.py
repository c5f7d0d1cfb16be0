"""Exceptions raised by the encoding service."""


class EncoderServiceError(Exception):
    """Base class for service errors."""


class JobNotFoundError(EncoderServiceError):
    """No encoding job with the given id."""

    def __init__(self, job_id: int):
        super().__init__(f"Job with id {job_id} not found")
        self.job_id = job_id


class InvalidJobStateError(EncoderServiceError):
    """The job is not in a status that allows the requested transition."""

    def __init__(self, job_id: int, status: str, expected: str):
        super().__init__(f"Job with id {job_id} is {status}, expected {expected}")
        self.job_id = job_id
        self.status = status


class MediaNotFoundError(EncoderServiceError):
    """No media record with the given id."""

    def __init__(self, media_id: int):
        super().__init__(f"Media with id {media_id} not found")
        self.media_id = media_id


class ScheduleRuleNotFoundError(EncoderServiceError):
    """No schedule rule with the given id."""

    def __init__(self, rule_id: int):
        super().__init__(f"Schedule with id {rule_id} not found")
        self.rule_id = rule_id


class InvalidLibraryPathError(EncoderServiceError):
    """The scan root does not exist or is not a directory."""


class ProbeError(EncoderServiceError):
    """ffprobe could not read the file."""


class EncodingError(EncoderServiceError):
    """The encoder run did not produce a usable output."""
