"""Dispatch engine: bounded-concurrency worker pool for encoding jobs."""
import asyncio
import errno
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Dict, Optional
from plex_encoder.config import settings
from plex_encoder.exceptions import EncodingError, InvalidJobStateError, JobNotFoundError, ProbeError
from plex_encoder.models.job import COMPLETED, FAILED, PROCESSING, QUEUED, REPLACING_FILE
from plex_encoder.models.schemas import JobResponse, QueueSnapshot
from plex_encoder.services.encoder import EncoderService, encoder_service
from plex_encoder.services.job_store import JobStore, job_store
from plex_encoder.services.notifier import (
    JOB_PROGRESS,
    JOB_STATUS,
    QUEUE_STATUS,
    QUEUE_UPDATE,
    Notifier,
    notifier,
)
from plex_encoder.utils.ffprobe import probe_video

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted before completion"
COMPLETE_ATTEMPTS = 3
COMPLETE_RETRY_DELAY = 1.0


def replace_atomically(source: Path, target: Path):
    """
    Move source over target so readers see either the old or the new file.

    Within one filesystem this is a rename. Across filesystems the data is
    first copied next to the target and then renamed over it.
    """
    try:
        shutil.copymode(target, source)
    except OSError as e:
        logger.warning(f"Could not copy permissions of {target}: {e}")

    try:
        os.replace(source, target)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    staging = target.with_name(f".{target.name}.encoding")
    try:
        shutil.copyfile(source, staging)
        os.replace(staging, target)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise
    source.unlink()


class DispatchState:
    """
    Process-wide dispatch counters.

    Owned by the event loop thread and changed only through these methods,
    none of which awaits, so updates from concurrent job tasks never
    interleave.
    """

    def __init__(self, concurrency_limit: int):
        self.concurrency_limit = max(1, int(concurrency_limit))
        self.paused = False
        # job id -> encoder process, kept for cleanup only
        self.active_jobs: Dict[int, Optional[asyncio.subprocess.Process]] = {}

    @property
    def active_count(self) -> int:
        return len(self.active_jobs)

    def free_slots(self) -> int:
        if self.paused:
            return 0
        return max(0, self.concurrency_limit - self.active_count)

    def set_limit(self, limit: int) -> int:
        self.concurrency_limit = max(1, int(limit))
        return self.concurrency_limit

    def reserve(self, job_id: int):
        self.active_jobs[job_id] = None

    def attach_process(self, job_id: int, process: asyncio.subprocess.Process):
        if job_id in self.active_jobs:
            self.active_jobs[job_id] = process

    def release(self, job_id: int):
        self.active_jobs.pop(job_id, None)


class DispatchEngine:
    """Pulls queued jobs and runs one encoder process per free slot."""

    def __init__(
        self,
        store: JobStore = job_store,
        encoder: EncoderService = encoder_service,
        events: Notifier = notifier,
        temp_dir: str = settings.TEMP_DIR,
        concurrency_limit: int = settings.DEFAULT_MAX_PARALLEL_JOBS,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        job_timeout: float = settings.JOB_TIMEOUT_SECONDS,
        probe: Callable = probe_video,
    ):
        self.store = store
        self.encoder = encoder
        self.events = events
        self.temp_dir = Path(temp_dir)
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.probe = probe
        self.state = DispatchState(concurrency_limit)
        self.running = False
        self.worker_task: Optional[asyncio.Task] = None
        self.job_tasks: Dict[int, asyncio.Task] = {}
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def start_worker(self):
        """Recover interrupted jobs and start the polling loop."""
        if self.running:
            logger.warning("Worker already running")
            return

        recovered = await self.store.fail_interrupted_jobs(INTERRUPTED_MESSAGE)
        if recovered:
            logger.warning(f"Marked {recovered} interrupted jobs as failed")

        self.running = True
        self.worker_task = asyncio.create_task(self._worker_loop())
        logger.info("Dispatch worker started")

    async def stop_worker(self):
        """Stop polling and kill in-flight encoders."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass

        tasks = list(self.job_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatch worker stopped")

    async def _worker_loop(self):
        """Poll for queued jobs until stopped; one bad pass never ends the loop."""
        logger.info("Worker loop started")

        while self.running:
            self._wake.clear()
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                logger.info("Worker loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def wake(self):
        """Run a polling pass now instead of at the next interval."""
        self._wake.set()

    async def poll_once(self) -> int:
        """
        Start queued jobs while free slots remain.

        Returns:
            Number of jobs started
        """
        slots = self.state.free_slots()
        if slots <= 0:
            return 0

        jobs = await self.store.list_jobs_by_status(QUEUED, limit=slots)
        started = 0
        for job in jobs:
            # Pause or a lower limit may have landed while awaiting
            if self.state.free_slots() <= 0:
                break
            if await self.start_job(job):
                started += 1
        return started

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def scratch_path(self, job: JobResponse) -> Path:
        source = Path(job.file_path)
        return self.temp_dir / f"{job.id}_{source.stem}_hevc_temp{source.suffix}"

    async def start_job(self, job: JobResponse) -> bool:
        """
        Claim a queued job and launch its encoder task.

        Returns:
            False if the job was no longer queued
        """
        self.state.reserve(job.id)
        scratch = self.scratch_path(job)
        try:
            claimed = await self.store.update_job(
                job.id,
                PROCESSING,
                expected_status=QUEUED,
                temp_file_path=str(scratch),
                error_message=None,
            )
        except Exception:
            self.state.release(job.id)
            raise

        if not claimed:
            self.state.release(job.id)
            return False

        logger.info(f"Processing job {job.id} for {job.title}")
        self._publish_status(job.id, PROCESSING)

        task = asyncio.create_task(self._run_job(job, scratch))
        self.job_tasks[job.id] = task
        task.add_done_callback(lambda _: self.job_tasks.pop(job.id, None))
        return True

    async def _run_job(self, job: JobResponse, scratch: Path):
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            duration = await self._source_duration(job.file_path)

            result = await self.encoder.encode(
                job_id=job.id,
                source_file=job.file_path,
                output_file=str(scratch),
                progress_callback=self._on_progress,
                process_callback=lambda process: self.state.attach_process(job.id, process),
                duration=duration,
                timeout=self.job_timeout,
            )
            if result.returncode != 0:
                raise EncodingError(
                    f"FFmpeg encoding failed with code {result.returncode}: {result.stderr_tail}"
                )

            await self._finalize(job, scratch)

        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} interrupted")
            raise
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}")
            await self._fail(job.id, str(e) or type(e).__name__)
        finally:
            self.state.release(job.id)
            scratch.unlink(missing_ok=True)
            self.events.publish(QUEUE_UPDATE)
            self.wake()

    async def _finalize(self, job: JobResponse, scratch: Path):
        """Swap the encoded output in place of the source file."""
        new_size = scratch.stat().st_size
        if new_size == 0:
            raise EncodingError("Encoded file is empty")

        original_size = job.original_size_bytes
        reduction = (original_size - new_size) / original_size * 100 if original_size else 0.0
        logger.info(f"Encoding job {job.id} completed. Size reduction: {reduction:.2f}%")

        await self.store.update_job(
            job.id,
            REPLACING_FILE,
            new_size_bytes=new_size,
            size_reduction_percent=reduction,
        )
        self._publish_status(job.id, REPLACING_FILE)

        info = await self.probe(str(scratch))
        new_codec = info["codec"] if info else "unknown"

        await asyncio.to_thread(replace_atomically, scratch, Path(job.file_path))
        logger.info(f"Successfully replaced original file for job {job.id}")

        # The source is gone; past this point the job can only end completed
        note = None
        try:
            await self.store.mark_media_transcoded(job.media_id, new_codec, new_size)
        except Exception as e:
            logger.error(f"Job {job.id} replaced its file but the media record was not updated: {e}", exc_info=True)
            note = f"File replaced but media record update failed: {e}"

        for attempt in range(1, COMPLETE_ATTEMPTS + 1):
            try:
                await self.store.update_job(job.id, COMPLETED, error_message=note)
                break
            except Exception as e:
                logger.error(f"Could not mark job {job.id} completed (attempt {attempt}/{COMPLETE_ATTEMPTS}): {e}")
                if attempt == COMPLETE_ATTEMPTS:
                    break
                await asyncio.sleep(COMPLETE_RETRY_DELAY)
        self._publish_status(job.id, COMPLETED, note)

    async def _fail(self, job_id: int, message: str):
        try:
            await self.store.update_job(job_id, FAILED, error_message=message)
        except Exception as db_error:
            logger.error(f"Error updating failed job {job_id}: {db_error}")
        self._publish_status(job_id, FAILED, message)

    async def _source_duration(self, file_path: str) -> float:
        try:
            info = await self.probe(file_path)
        except ProbeError as e:
            logger.warning(f"Could not read duration of {file_path}: {e}")
            return 0.0
        return info["duration"] if info else 0.0

    def _on_progress(self, job_id: int, progress: dict):
        self.events.publish(JOB_PROGRESS, job_id=job_id, progress=progress)

    def _publish_status(self, job_id: int, status: str, error: Optional[str] = None):
        self.events.publish(JOB_STATUS, job_id=job_id, status=status, error=error)
        self.events.publish(QUEUE_UPDATE)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def restart_job(self, job_id: int) -> JobResponse:
        """
        Requeue a failed job.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not failed
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != FAILED:
            raise InvalidJobStateError(job_id, job.status, FAILED)

        requeued = await self.store.update_job(
            job_id,
            QUEUED,
            expected_status=FAILED,
            retries=job.retries + 1,
            error_message=None,
            completed_at=None,
        )
        if not requeued:
            current = await self.store.get_job(job_id)
            raise InvalidJobStateError(job_id, current.status if current else "missing", FAILED)

        logger.info(f"Job {job_id} restarted")
        self._publish_status(job_id, QUEUED)
        self.wake()
        return await self.store.get_job(job_id)

    def pause(self) -> dict:
        """Stop starting new jobs; running jobs continue."""
        self.state.paused = True
        logger.info("Encoding queue paused")
        return self._publish_queue_status()

    def resume(self) -> dict:
        """Allow new jobs and poll immediately."""
        self.state.paused = False
        logger.info("Encoding queue resumed")
        self.wake()
        return self._publish_queue_status()

    def set_concurrency_limit(self, limit: int) -> int:
        """Set the parallel job limit (minimum 1); running jobs are never stopped."""
        value = self.state.set_limit(limit)
        logger.info(f"Max parallel jobs set to {value}")
        self._publish_queue_status()
        self.wake()
        return value

    def _publish_queue_status(self) -> dict:
        status = {
            "paused": self.state.paused,
            "max_parallel_jobs": self.state.concurrency_limit,
            "active_count": self.state.active_count,
        }
        self.events.publish(QUEUE_STATUS, **status)
        return status

    async def get_queue_snapshot(self) -> QueueSnapshot:
        processing = await self.store.list_jobs_by_status(PROCESSING, limit=100)
        processing += await self.store.list_jobs_by_status(REPLACING_FILE, limit=100)
        return QueueSnapshot(
            processing=processing,
            queued=await self.store.list_jobs_by_status(QUEUED, limit=100),
            completed=await self.store.list_jobs_by_status(COMPLETED, limit=10, newest_first=True),
            failed=await self.store.list_jobs_by_status(FAILED, limit=100),
            paused=self.state.paused,
            max_parallel_jobs=self.state.concurrency_limit,
            active_count=self.state.active_count,
        )

    async def search_jobs(self, text: str, limit: int = 50) -> list[JobResponse]:
        return await self.store.search_jobs(text, limit)


# Global dispatch engine instance
dispatch_engine = DispatchEngine()
