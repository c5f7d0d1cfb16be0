"""Turns media needing a re-encode into queued encoding jobs."""
import asyncio
import logging
from plex_encoder.config import settings
from plex_encoder.services.job_store import JobStore, job_store
from plex_encoder.services.notifier import QUEUE_UPDATE, Notifier, notifier

logger = logging.getLogger(__name__)

PRIORITY_STEP_BYTES = 100 * 1024 * 1024


def priority_for_size(size_bytes: int) -> int:
    """One priority point per full 100 MiB, so larger files run first."""
    return max(0, size_bytes) // PRIORITY_STEP_BYTES


class AdmissionPolicy:
    """Creates jobs for media that need one and have none in flight."""

    def __init__(
        self,
        store: JobStore = job_store,
        events: Notifier = notifier,
        batch_size: int = settings.ADMISSION_BATCH_SIZE,
    ):
        self.store = store
        self.events = events
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    async def admit_pending(self) -> int:
        """
        Queue jobs for up to batch_size media needing a re-encode.

        Media that already own a queued/processing/replacing job are skipped,
        as are media whose latest job failed (those wait for a manual
        restart). Runs under a lock so concurrent triggers cannot admit the
        same media twice.

        Returns:
            Number of jobs created
        """
        async with self._lock:
            candidates = await self.store.find_admissible_media(self.batch_size)
            if not candidates:
                return 0

            created = 0
            for media in candidates:
                priority = priority_for_size(media.file_size_bytes)
                job_id = await self.store.create_job(media.id, priority)
                created += 1
                logger.info(f"Created encoding job {job_id} for {media.title} (priority {priority})")

        logger.info(f"Admitted {created} media for encoding")
        if created:
            self.events.publish(QUEUE_UPDATE)
        return created


# Global admission policy instance
admission_policy = AdmissionPolicy()
