"""Persistent ledger of media records, encoding jobs and schedule rules."""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import aliased
from plex_encoder.config import settings
from plex_encoder.database import AsyncSessionLocal
from plex_encoder.exceptions import MediaNotFoundError, ScheduleRuleNotFoundError
from plex_encoder.models.job import (
    COMPLETED,
    FAILED,
    NON_TERMINAL_STATUSES,
    PROCESSING,
    QUEUED,
    REPLACING_FILE,
    EncodingJob,
)
from plex_encoder.models.media import Media
from plex_encoder.models.schedule import ScheduleRule
from plex_encoder.models.schemas import JobResponse, MediaInfo, ScheduleRuleBase

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_job_response(job: EncodingJob, media: Media) -> JobResponse:
    return JobResponse(
        id=job.id,
        media_id=job.media_id,
        status=job.status,
        priority=job.priority,
        retries=job.retries,
        error_message=job.error_message,
        temp_file_path=job.temp_file_path,
        original_size_bytes=job.original_size_bytes,
        new_size_bytes=job.new_size_bytes,
        size_reduction_percent=job.size_reduction_percent,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        title=media.title,
        episode_name=media.episode_name,
        file_path=media.file_path,
        encoding_type=media.encoding_type,
    )


class JobStore:
    """
    Record access for the three persisted sets.

    Every method opens its own session and commits once, so each call either
    lands completely or raises with nothing written.
    """

    def __init__(self, session_factory=None, accepted_codecs: Optional[Iterable[str]] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.accepted_codecs = {
            codec.lower() for codec in (accepted_codecs or settings.ACCEPTED_CODECS)
        }

    def needs_encoding(self, codec: str) -> bool:
        """True when codec is not in the accepted set."""
        return (codec or "").lower() not in self.accepted_codecs

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def upsert_media(self, info: MediaInfo) -> int:
        """
        Insert or update the media record for info.file_path.

        Args:
            info: Discovered media attributes

        Returns:
            Media id (stable across updates of the same path)
        """
        now = _now()
        values = info.model_dump()
        values["needs_encoding"] = self.needs_encoding(info.encoding_type)
        values["last_updated"] = now

        stmt = insert(Media).values(created_at=now, encoded_previously=False, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Media.file_path],
            set_={key: stmt.excluded[key] for key in values if key != "file_path"},
        ).returning(Media.id)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            media_id = result.scalar_one()
            await db.commit()
        return media_id

    async def get_media(self, media_id: int) -> Optional[Media]:
        async with self.session_factory() as db:
            return await db.get(Media, media_id)

    async def find_media_needing_transcode(self, limit: int = 100) -> list[Media]:
        """Media needing a re-encode, largest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Media)
                .where(Media.needs_encoding.is_(True))
                .order_by(Media.file_size_bytes.desc(), Media.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_media_transcoded(self, media_id: int, new_codec: str, new_size: int):
        """Record the codec and size of a replaced file."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Media)
                .where(Media.id == media_id)
                .values(
                    encoding_type=new_codec,
                    file_size_bytes=new_size,
                    needs_encoding=self.needs_encoding(new_codec),
                    encoded_previously=True,
                    last_updated=_now(),
                )
            )
            if result.rowcount == 0:
                raise MediaNotFoundError(media_id)
            await db.commit()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, media_id: int, priority: int = 0) -> int:
        """
        Create a queued encoding job for a media record.

        Raises:
            MediaNotFoundError: If media_id is unknown
        """
        async with self.session_factory() as db:
            media = await db.get(Media, media_id)
            if media is None:
                raise MediaNotFoundError(media_id)

            job = EncodingJob(
                media_id=media_id,
                status=QUEUED,
                priority=priority,
                original_size_bytes=media.file_size_bytes,
            )
            db.add(job)
            await db.commit()
            return job.id

    async def update_job(
        self,
        job_id: int,
        status: str,
        expected_status: Optional[str] = None,
        **fields,
    ) -> bool:
        """
        Set a job's status and any extra columns in one statement.

        Args:
            job_id: Job id
            status: New status
            expected_status: Only update when the job currently has this status
            **fields: Additional column values

        Returns:
            True if a row was updated
        """
        values = dict(fields, status=status)
        if status == PROCESSING:
            values.setdefault("started_at", _now())
        elif status in (COMPLETED, FAILED):
            values.setdefault("completed_at", _now())

        stmt = update(EncodingJob).where(EncodingJob.id == job_id).values(**values)
        if expected_status is not None:
            stmt = stmt.where(EncodingJob.status == expected_status)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount > 0

    async def get_job(self, job_id: int) -> Optional[JobResponse]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(EncodingJob, Media)
                .join(Media, EncodingJob.media_id == Media.id)
                .where(EncodingJob.id == job_id)
            )
            row = result.first()
            return _to_job_response(*row) if row else None

    async def list_jobs_by_status(
        self, status: str, limit: int = 20, newest_first: bool = False
    ) -> list[JobResponse]:
        """
        Jobs with the given status.

        Ordered by priority (highest first) then age (oldest first), or by
        completion time when newest_first is set.
        """
        query = (
            select(EncodingJob, Media)
            .join(Media, EncodingJob.media_id == Media.id)
            .where(EncodingJob.status == status)
        )
        if newest_first:
            query = query.order_by(EncodingJob.completed_at.desc(), EncodingJob.id.desc())
        else:
            query = query.order_by(
                EncodingJob.priority.desc(),
                EncodingJob.created_at.asc(),
                EncodingJob.id.asc(),
            )

        async with self.session_factory() as db:
            result = await db.execute(query.limit(limit))
            return [_to_job_response(job, media) for job, media in result.all()]

    async def search_jobs(self, text: str, limit: int = 50) -> list[JobResponse]:
        """Case-insensitive substring search over media and job status."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(EncodingJob, Media)
                .join(Media, EncodingJob.media_id == Media.id)
                .where(
                    or_(
                        Media.title.icontains(text, autoescape=True),
                        Media.episode_name.icontains(text, autoescape=True),
                        Media.file_path.icontains(text, autoescape=True),
                        EncodingJob.status.icontains(text, autoescape=True),
                    )
                )
                .order_by(EncodingJob.created_at.desc(), EncodingJob.id.desc())
                .limit(limit)
            )
            return [_to_job_response(job, media) for job, media in result.all()]

    async def count_jobs(self, statuses: Iterable[str]) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(EncodingJob).where(
                    EncodingJob.status.in_(list(statuses))
                )
            )
            return result.scalar_one()

    async def find_admissible_media(self, limit: int = 100) -> list[Media]:
        """
        Media that need a re-encode and may get a new job, largest first.

        Excludes media owning a non-terminal job and media whose latest job
        failed; both checks run in SQL so the limit only counts media that
        can actually be admitted.
        """
        later = aliased(EncodingJob)
        has_active_job = (
            select(EncodingJob.id)
            .where(EncodingJob.media_id == Media.id)
            .where(EncodingJob.status.in_(NON_TERMINAL_STATUSES))
            .correlate(Media)
            .exists()
        )
        latest_job_failed = (
            select(EncodingJob.id)
            .where(EncodingJob.media_id == Media.id)
            .where(EncodingJob.status == FAILED)
            .where(
                ~select(later.id)
                .where(later.media_id == EncodingJob.media_id)
                .where(later.id > EncodingJob.id)
                .correlate(EncodingJob)
                .exists()
            )
            .correlate(Media)
            .exists()
        )
        async with self.session_factory() as db:
            result = await db.execute(
                select(Media)
                .where(Media.needs_encoding.is_(True))
                .where(~has_active_job)
                .where(~latest_job_failed)
                .order_by(Media.file_size_bytes.desc(), Media.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def fail_interrupted_jobs(self, message: str) -> int:
        """Fail jobs a previous process left mid-flight."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(EncodingJob)
                .where(EncodingJob.status.in_([PROCESSING, REPLACING_FILE]))
                .values(status=FAILED, error_message=message, completed_at=_now())
            )
            await db.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Schedule rules
    # ------------------------------------------------------------------

    async def list_rules(self, active_only: bool = False) -> list[ScheduleRule]:
        query = select(ScheduleRule).order_by(ScheduleRule.id.asc())
        if active_only:
            query = query.where(ScheduleRule.active.is_(True))
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_rule(self, rule_id: int) -> ScheduleRule:
        async with self.session_factory() as db:
            rule = await db.get(ScheduleRule, rule_id)
            if rule is None:
                raise ScheduleRuleNotFoundError(rule_id)
            return rule

    async def create_rule(self, data: ScheduleRuleBase) -> ScheduleRule:
        async with self.session_factory() as db:
            rule = ScheduleRule(
                days_of_week=data.days_of_week,
                start_time=data.start_time,
                end_time=data.end_time,
                max_parallel_jobs=data.max_parallel_jobs,
                active=data.active,
            )
            db.add(rule)
            await db.commit()
            return rule

    async def update_rule(self, rule_id: int, data: ScheduleRuleBase) -> ScheduleRule:
        async with self.session_factory() as db:
            rule = await db.get(ScheduleRule, rule_id)
            if rule is None:
                raise ScheduleRuleNotFoundError(rule_id)
            rule.days_of_week = data.days_of_week
            rule.start_time = data.start_time
            rule.end_time = data.end_time
            rule.max_parallel_jobs = data.max_parallel_jobs
            rule.active = data.active
            await db.commit()
            return rule

    async def set_rule_active(self, rule_id: int, active: bool) -> ScheduleRule:
        async with self.session_factory() as db:
            rule = await db.get(ScheduleRule, rule_id)
            if rule is None:
                raise ScheduleRuleNotFoundError(rule_id)
            rule.active = active
            await db.commit()
            return rule

    async def delete_rule(self, rule_id: int):
        async with self.session_factory() as db:
            rule = await db.get(ScheduleRule, rule_id)
            if rule is None:
                raise ScheduleRuleNotFoundError(rule_id)
            await db.delete(rule)
            await db.commit()

    async def ensure_default_rule(self, max_parallel_jobs: int) -> Optional[ScheduleRule]:
        """Seed an always-on rule when no rules exist yet."""
        async with self.session_factory() as db:
            count = (await db.execute(select(func.count()).select_from(ScheduleRule))).scalar_one()
            if count:
                return None
            rule = ScheduleRule(
                days_of_week="0,1,2,3,4,5,6",
                start_time="00:00",
                end_time="23:59",
                max_parallel_jobs=max_parallel_jobs,
                active=True,
            )
            db.add(rule)
            await db.commit()
            logger.info("Seeded default schedule rule")
            return rule


# Global job store instance
job_store = JobStore()
