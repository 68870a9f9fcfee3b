import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import LockError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import settings
from app.db.session import AsyncSessionLocal, create_engine_from_settings, create_session_factory
from app.providers.ritual_store import RitualStore
from app.services.notifications.dedup_cache import (
    DedupCache,
    InMemoryDedupCache,
    RedisDedupCache,
)
from app.services.notifications.fanout import NotificationFanout
from app.services.push import PushProvider, build_push_providers
from app.services.realtime import RealtimeHub
from app.tasks.cron.completed_past_due_sweeper import CompletedPastDueSweeper
from app.tasks.cron.missed_ritual_sweeper import MissedRitualSweeper
from app.tasks.cron.ritual_reminder_dispatcher import RitualReminderDispatcher
from app.tasks.periodic import JobHandle, PeriodicJob
from app.utils.logging import get_logger

logger = get_logger()


class SchedulerRuntime:
    """
    Owns the scheduler jobs of one process.

    ``start`` is idempotent and ``stop`` stops every job exactly once, then
    closes the resources handed over at construction (push clients).
    """

    def __init__(
        self,
        jobs: Sequence[PeriodicJob],
        closers: Sequence[Callable[[], Awaitable[Any]]] = (),
    ):
        self.jobs = list(jobs)
        self._closers = list(closers)
        self._handles: List[JobHandle] = []

    @property
    def running(self) -> bool:
        return bool(self._handles)

    @property
    def job_names(self) -> List[str]:
        return [job.name for job in self.jobs]

    def get_job(self, name: str) -> PeriodicJob:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    def start(self) -> List[JobHandle]:
        if self._handles:
            return self._handles
        self._handles = [job.start() for job in self.jobs]
        logger.info(f"Scheduler started with jobs: {', '.join(self.job_names)}")
        return self._handles

    async def stop(self) -> None:
        if not self._handles:
            return
        handles, self._handles = self._handles, []
        for handle in handles:
            await handle.stop()
        for close in self._closers:
            await close()
        logger.info("Scheduler stopped")


def build_jobs(
    store: RitualStore,
    fanout: NotificationFanout,
    dedup: DedupCache,
) -> List[PeriodicJob]:
    return [
        RitualReminderDispatcher(
            store,
            fanout,
            dedup,
            interval_seconds=settings.REMINDER_INTERVAL_SECONDS,
            batch_size=settings.SWEEP_BATCH_SIZE,
            late_minutes=settings.REMINDER_WINDOW_LATE_MINUTES,
            early_minutes=settings.REMINDER_WINDOW_EARLY_MINUTES,
        ),
        MissedRitualSweeper(
            store,
            interval_seconds=settings.MISSED_SWEEP_INTERVAL_SECONDS,
            batch_size=settings.SWEEP_BATCH_SIZE,
        ),
        CompletedPastDueSweeper(
            store,
            interval_seconds=settings.PAST_DUE_SWEEP_INTERVAL_SECONDS,
            batch_size=settings.SWEEP_BATCH_SIZE,
            retention_hours=settings.PAST_DUE_RETENTION_HOURS,
        ),
    ]


def build_scheduler_runtime(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    hub: Optional[RealtimeHub] = None,
    providers: Optional[Sequence[PushProvider]] = None,
) -> SchedulerRuntime:
    """Wire the in-process scheduler from settings."""
    store = RitualStore(session_factory)
    fanout = NotificationFanout(
        store,
        hub,
        providers if providers is not None else build_push_providers(),
        chunk_size=settings.PUSH_CHUNK_SIZE,
    )
    dedup = InMemoryDedupCache(settings.REMINDER_DEDUP_TTL_SECONDS)
    return SchedulerRuntime(build_jobs(store, fanout, dedup), closers=[fanout.aclose])


def tick_lock_name(job_name: str) -> str:
    return f"ritual-scheduler:{job_name}:tick"


async def run_single_tick(job_name: str, request_id: str) -> Dict[str, Any]:
    """
    Run one tick of ``job_name`` in a fresh event loop (Celery beat mode).

    Engine and Redis client are created per call because each Celery task
    runs under its own ``asyncio.run`` loop. Realtime emits are not
    available outside the web process.

    Workers share a Redis lock per job, so a tick that is still running on
    one worker makes the next beat's tick a skipped no-op on any other.
    The lock expires with the Celery hard time limit.
    """
    engine = create_engine_from_settings()
    redis = Redis.from_url(settings.redis_url)
    store = RitualStore(create_session_factory(engine))
    fanout = NotificationFanout(store, None, build_push_providers())
    dedup = RedisDedupCache(redis, settings.REMINDER_DEDUP_TTL_SECONDS)

    try:
        runtime = SchedulerRuntime(build_jobs(store, fanout, dedup))
        job = runtime.get_job(job_name)

        lock = redis.lock(
            tick_lock_name(job_name),
            timeout=settings.TICK_TIME_LIMIT_SECONDS,
            blocking=False,
        )
        if not await lock.acquire():
            logger.bind(job=job_name).warning(
                f"{job_name}: tick still running on another worker, skipping"
            )
            return {"job": job_name, "success": True, "skipped": True}

        try:
            return await job.tick(tick_id=f"{request_id}-{uuid.uuid4().hex[:8]}")
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.bind(job=job_name).warning(f"Tick lock was lost before release: {e}")
    finally:
        await fanout.aclose()
        await redis.aclose()
        await engine.dispose()
