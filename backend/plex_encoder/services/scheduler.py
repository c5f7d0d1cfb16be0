"""Time-window scheduler driving the dispatch engine's limit and pause state."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple
from plex_encoder.config import settings
from plex_encoder.models.schedule import ScheduleRule
from plex_encoder.models.schemas import ScheduleRuleCreate, ScheduleRuleUpdate
from plex_encoder.services.dispatch import DispatchEngine, dispatch_engine
from plex_encoder.services.job_store import JobStore, job_store
from plex_encoder.services.notifier import SCHEDULE_STATUS, Notifier, notifier

logger = logging.getLogger(__name__)

WINDOW_START = "start"
WINDOW_END = "end"


def sunday_weekday(moment: datetime) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def evaluate_rule(rule: ScheduleRule, now: datetime) -> bool:
    """
    Whether rule's window covers now.

    The window is inclusive at both ends and compared as zero-padded HH:MM
    strings on the rule's weekdays only.
    """
    if sunday_weekday(now) not in rule.weekdays:
        return False
    current_time = now.strftime("%H:%M")
    return rule.start_time <= current_time <= rule.end_time


def _at(day: datetime, hhmm: str) -> datetime:
    hour, minute = (int(part) for part in hhmm.split(":"))
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def next_boundary(rule: ScheduleRule, now: datetime) -> Tuple[datetime, str]:
    """
    The next start or end of rule's window strictly after now.

    A window starts at start_time and ends one minute after end_time, on
    each of the rule's weekdays. An end that coincides with the next
    day's start is not a boundary: the window simply continues.
    """
    starts = []
    ends = []
    for offset in range(9):
        day = now + timedelta(days=offset)
        if sunday_weekday(day) not in rule.weekdays:
            continue
        starts.append(_at(day, rule.start_time))
        ends.append(_at(day, rule.end_time) + timedelta(minutes=1))

    candidates = [(moment, WINDOW_START) for moment in starts]
    candidates += [(moment, WINDOW_END) for moment in ends if moment not in starts]
    return min((c for c in candidates if c[0] > now), key=lambda c: c[0])


class WindowScheduler:
    """
    Applies schedule rules to the dispatch engine.

    Every enabled rule acts on its own: while active it resumes the queue
    and sets the limit, otherwise it pauses the queue. When several rules
    are enabled they are applied in id order, so the last one evaluated
    decides the resulting state.
    """

    def __init__(
        self,
        store: JobStore = job_store,
        dispatch: DispatchEngine = dispatch_engine,
        events: Notifier = notifier,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_max_parallel_jobs: int = settings.DEFAULT_MAX_PARALLEL_JOBS,
    ):
        self.store = store
        self.dispatch = dispatch
        self.events = events
        self.clock = clock
        self.sleep = sleep
        self.default_max_parallel_jobs = default_max_parallel_jobs
        self.timers: Dict[int, asyncio.Task] = {}

    async def start(self):
        """Seed the default rule if needed, apply every enabled rule and arm timers."""
        await self.store.ensure_default_rule(self.default_max_parallel_jobs)
        rules = await self.store.list_rules(active_only=True)
        for rule in rules:
            self._set_up(rule)
        logger.info(f"Loaded {len(rules)} schedules")

    async def stop(self):
        for rule_id in list(self.timers):
            self._cancel(rule_id)
        logger.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def apply_rule(self, rule: ScheduleRule, now: Optional[datetime] = None) -> bool:
        """
        Push rule's current state to the dispatch engine.

        Returns:
            True if the rule is active now
        """
        active = evaluate_rule(rule, now or self.clock())
        if active:
            self._activate(rule)
        else:
            self._deactivate(rule)
        return active

    def _activate(self, rule: ScheduleRule):
        logger.info(f"Schedule {rule.id} active: setting max parallel jobs to {rule.max_parallel_jobs}")
        self.dispatch.resume()
        self.dispatch.set_concurrency_limit(rule.max_parallel_jobs)
        self.events.publish(
            SCHEDULE_STATUS, id=rule.id, status="active", max_jobs=rule.max_parallel_jobs
        )

    def _deactivate(self, rule: ScheduleRule):
        logger.info(f"Schedule {rule.id} inactive: pausing queue")
        self.dispatch.pause()
        self.events.publish(SCHEDULE_STATUS, id=rule.id, status="inactive")

    # ------------------------------------------------------------------
    # Boundary timers
    # ------------------------------------------------------------------

    def _set_up(self, rule: ScheduleRule):
        self._cancel(rule.id)
        self.apply_rule(rule)
        self.timers[rule.id] = asyncio.create_task(self._run_timer(rule))
        logger.info(f"Set up schedule {rule.id}")

    def _cancel(self, rule_id: int):
        timer = self.timers.pop(rule_id, None)
        if timer:
            timer.cancel()

    async def _run_timer(self, rule: ScheduleRule):
        while True:
            now = self.clock()
            fire_at, kind = next_boundary(rule, now)
            await self.sleep((fire_at - now).total_seconds())
            try:
                if kind == WINDOW_START:
                    self._activate(rule)
                else:
                    self._deactivate(rule)
            except Exception as e:
                logger.error(f"Error firing schedule {rule.id} {kind}: {e}", exc_info=True)
            # Step past the boundary minute so it fires once
            await self.sleep(max(0.0, (fire_at + timedelta(seconds=1) - self.clock()).total_seconds()))

    # ------------------------------------------------------------------
    # Configuration surface
    # ------------------------------------------------------------------

    async def list_rules(self) -> list[ScheduleRule]:
        return await self.store.list_rules()

    async def create_rule(self, data: ScheduleRuleCreate) -> ScheduleRule:
        rule = await self.store.create_rule(data)
        if rule.active:
            self._set_up(rule)
        return rule

    async def update_rule(self, rule_id: int, data: ScheduleRuleUpdate) -> ScheduleRule:
        rule = await self.store.update_rule(rule_id, data)
        self._refresh(rule)
        return rule

    async def set_rule_active(self, rule_id: int, active: bool) -> ScheduleRule:
        rule = await self.store.set_rule_active(rule_id, active)
        self._refresh(rule)
        return rule

    async def delete_rule(self, rule_id: int):
        await self.store.delete_rule(rule_id)
        self._cancel(rule_id)
        for rule in await self.store.list_rules(active_only=True):
            self.apply_rule(rule)

    def _refresh(self, rule: ScheduleRule):
        if rule.active:
            self._set_up(rule)
        else:
            self._cancel(rule.id)
            self.events.publish(SCHEDULE_STATUS, id=rule.id, status="disabled")


# Global scheduler instance
window_scheduler = WindowScheduler()
