"""Wall-clock job scheduling for automations.

Jobs live in a table keyed by id and in a min-heap of ``(next_run,
generation, id)``. One background task sleeps until the earliest entry is due
(or until a registration wakes it), fires every due job, then recomputes each
fired job's next run from the current clock. Replacing or cancelling a job
bumps its generation, so older heap entries are skipped when popped.
"""
import asyncio
import heapq
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .schemas import Trigger


logger = logging.getLogger("uvicorn.error")

JobCallback = Callable[[], Any]
Clock = Callable[[], datetime]

DEFAULT_HOUR = 9
DEFAULT_MINUTE = 0
MIN_REARM_DELAY = timedelta(seconds=1)


@dataclass
class ScheduledJob:
    id: str
    trigger: Trigger
    callback: JobCallback
    next_run: datetime
    generation: int = 0
    last_fired_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "next_run": self.next_run.isoformat(),
            "last_fired_at": self.last_fired_at.isoformat() if self.last_fired_at else None,
        }


def _parse_time(value: Optional[str]) -> Tuple[int, int]:
    if not value:
        return 0, 0
    try:
        hour_s, minute_s = value.strip().split(":")[:2]
        hour, minute = int(hour_s), int(minute_s)
    except ValueError:
        return 0, 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return 0, 0
    return hour, minute


def _to_py_weekday(day_of_week: int) -> int:
    # 0=Sunday on the wire, 0=Monday in Python.
    return (day_of_week - 1) % 7


def _next_daily(wall: datetime, hour: int, minute: int) -> datetime:
    candidate = wall.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= wall:
        candidate += timedelta(days=1)
    return candidate


def _next_weekly(wall: datetime, day_of_week: int, hour: int, minute: int) -> datetime:
    days_ahead = (_to_py_weekday(day_of_week) - wall.weekday()) % 7
    candidate = wall.replace(hour=hour, minute=minute, second=0, microsecond=0) + timedelta(days=days_ahead)
    if candidate <= wall:
        candidate += timedelta(days=7)
    return candidate


def _next_from_cron(expression: Optional[str], wall: datetime) -> datetime:
    fields = (expression or "").split()
    if len(fields) < 5:
        logger.warning("Invalid cron expression %r; using daily %02d:%02d", expression, DEFAULT_HOUR, DEFAULT_MINUTE)
        return _next_daily(wall, DEFAULT_HOUR, DEFAULT_MINUTE)
    minute_f, hour_f, dom_f, month_f, dow_f = fields[:5]
    try:
        minute = 0 if minute_f == "*" else int(minute_f)
        hour = None if hour_f == "*" else int(hour_f)
        day_of_week = None if dow_f == "*" else int(dow_f) % 7
    except ValueError:
        logger.warning("Unsupported cron expression %r; using daily %02d:%02d", expression, DEFAULT_HOUR, DEFAULT_MINUTE)
        return _next_daily(wall, DEFAULT_HOUR, DEFAULT_MINUTE)
    if not 0 <= minute <= 59 or (hour is not None and not 0 <= hour <= 23):
        logger.warning("Out-of-range cron expression %r; using daily %02d:%02d", expression, DEFAULT_HOUR, DEFAULT_MINUTE)
        return _next_daily(wall, DEFAULT_HOUR, DEFAULT_MINUTE)
    if dom_f != "*" or month_f != "*":
        logger.warning("Cron day-of-month/month fields are not supported and were ignored in %r", expression)

    if hour is not None:
        if day_of_week is None:
            return _next_daily(wall, hour, minute)
        return _next_weekly(wall, day_of_week, hour, minute)

    candidate = wall.replace(minute=minute, second=0, microsecond=0)
    if candidate <= wall:
        candidate += timedelta(hours=1)
    if day_of_week is not None and candidate.weekday() != _to_py_weekday(day_of_week):
        days_ahead = (_to_py_weekday(day_of_week) - candidate.weekday()) % 7
        candidate = (candidate + timedelta(days=days_ahead)).replace(hour=0, minute=minute)
    return candidate


def _next_wall_time(trigger: Trigger, wall: datetime) -> datetime:
    config = trigger.schedule_config if trigger.type == "schedule" else None
    if config is None:
        return _next_daily(wall, DEFAULT_HOUR, DEFAULT_MINUTE)
    if config.frequency == "hourly":
        return wall.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    if config.frequency == "daily":
        return _next_daily(wall, *_parse_time(config.time))
    if config.frequency == "weekly":
        hour, minute = _parse_time(config.time)
        if config.day_of_week is None:
            return _next_daily(wall, hour, minute)
        return _next_weekly(wall, config.day_of_week, hour, minute)
    return _next_from_cron(config.cron_expression, wall)


def get_next_run_time(trigger: Trigger, from_time: datetime) -> datetime:
    """Next fire time strictly after ``from_time``.

    Arithmetic happens on the local wall clock. Aware inputs are converted to
    local time and the result is re-localized, so DST shifts land on the
    intended wall time; naive inputs are treated as local and returned naive.
    """
    if from_time.tzinfo is None:
        return _next_wall_time(trigger, from_time)
    wall = from_time.astimezone().replace(tzinfo=None)
    return _next_wall_time(trigger, wall).astimezone()


def local_now() -> datetime:
    return datetime.now().astimezone()


class Scheduler:
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or local_now
        self._jobs: Dict[str, ScheduledJob] = {}
        self._heap: List[Tuple[datetime, int, str]] = []
        self._generation = 0
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()

    def now(self) -> datetime:
        return self._clock()

    def get_next_run_time(self, trigger: Trigger, from_time: Optional[datetime] = None) -> datetime:
        return get_next_run_time(trigger, from_time or self.now())

    def _arm(self, job: ScheduledJob, next_run: datetime) -> None:
        self._generation += 1
        job.generation = self._generation
        job.next_run = next_run
        heapq.heappush(self._heap, (next_run, job.generation, job.id))

    async def schedule_job(self, job_id: str, trigger: Trigger, callback: JobCallback) -> ScheduledJob:
        async with self._lock:
            next_run = get_next_run_time(trigger, self.now())
            job = ScheduledJob(id=job_id, trigger=trigger, callback=callback, next_run=next_run)
            # Replacing the table entry orphans the old heap entries.
            self._jobs[job_id] = job
            self._arm(job, next_run)
            self._wake.set()
        logger.info("Scheduled job %s; next run at %s", job_id, next_run.isoformat())
        self.start()
        return job

    async def cancel_job(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            self._wake.set()
        if job is not None:
            logger.info("Cancelled job %s", job_id)
        return job is not None

    async def cancel_all_jobs(self) -> None:
        async with self._lock:
            self._jobs.clear()
            self._heap.clear()
            self._wake.set()

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        return self._jobs.get(job_id)

    def active_jobs(self) -> List[ScheduledJob]:
        return sorted(self._jobs.values(), key=lambda job: job.next_run)

    def _is_current(self, entry: Tuple[datetime, int, str]) -> bool:
        job = self._jobs.get(entry[2])
        return job is not None and job.generation == entry[1]

    def _drop_stale(self) -> None:
        while self._heap and not self._is_current(self._heap[0]):
            heapq.heappop(self._heap)

    async def run_pending(self) -> int:
        """Fire every job due at the current clock; returns how many fired."""
        due: List[ScheduledJob] = []
        async with self._lock:
            now = self.now()
            while self._heap and self._heap[0][0] <= now:
                entry = heapq.heappop(self._heap)
                if not self._is_current(entry):
                    continue
                job = self._jobs[entry[2]]
                job.last_fired_at = now
                next_run = get_next_run_time(job.trigger, now)
                if next_run - now < MIN_REARM_DELAY:
                    next_run = now + MIN_REARM_DELAY
                self._arm(job, next_run)
                due.append(job)
        for job in due:
            self._invoke(job)
        return len(due)

    def _invoke(self, job: ScheduledJob) -> None:
        logger.info("Running scheduled job %s", job.id)
        try:
            result = job.callback()
        except Exception:
            logger.exception("Scheduled job %s failed", job.id)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(lambda t, job_id=job.id: self._callback_done(job_id, t))

    def _callback_done(self, job_id: str, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled job %s failed: %s", job_id, exc, exc_info=exc)

    async def _seconds_until_due(self) -> Optional[float]:
        async with self._lock:
            self._drop_stale()
            self._wake.clear()
            if not self._heap:
                return None
            return max(0.0, (self._heap[0][0] - self.now()).total_seconds())

    async def _run(self) -> None:
        while True:
            delay = await self._seconds_until_due()
            if delay is None:
                await self._wake.wait()
                continue
            if delay > 0:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
                    continue
                except asyncio.TimeoutError:
                    pass
            await self.run_pending()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._callback_tasks):
            task.cancel()
        self._callback_tasks.clear()
        await self.cancel_all_jobs()
