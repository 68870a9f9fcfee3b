"""
Shared tick orchestration for the ritual scheduler jobs.

A job scans ritual days page by page with an id cursor, decides in process
which rows qualify, and acts on them. Ticks never overlap: a tick fired
while the previous one is still running is dropped. A failing tick is
logged and reported, and the schedule carries on.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy import ColumnElement

from app.config.settings import settings
from app.providers.ritual_store import RitualCandidate, RitualStore
from app.utils.context import reset_request_id, set_request_id
from app.utils.datetime_utils import utc_now
from app.utils.logging import get_logger

if TYPE_CHECKING:
    from loguru import Logger

logger = get_logger()

Clock = Callable[[], datetime]


@dataclass
class TickStats:
    scanned: int = 0
    affected: int = 0
    skipped_rows: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class JobHandle:
    """Returned by ``PeriodicJob.start``; stopping it stops the job."""

    def __init__(self, job: "PeriodicJob"):
        self.job = job

    @property
    def running(self) -> bool:
        return self.job.is_running

    async def stop(self) -> None:
        await self.job.stop()


class PeriodicJob(ABC):
    name: str = "periodic_job"
    # Key under which the affected row count is reported
    result_key: str = "updated"

    def __init__(
        self,
        store: RitualStore,
        interval_seconds: float,
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        clock: Clock = utc_now,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock

        self._in_flight = False
        self._handle: Optional[JobHandle] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @abstractmethod
    def predicate(self, now: datetime) -> Sequence[ColumnElement[bool]]:
        """Store-side pre-filter; qualification is refined per row in process."""

    @abstractmethod
    async def process_page(
        self,
        rows: List[RitualCandidate],
        now: datetime,
        stats: TickStats,
        log: "Logger",
    ) -> None:
        pass

    async def before_tick(self, now: datetime, log: "Logger") -> None:
        return None

    async def after_tick(self, now: datetime, stats: TickStats, log: "Logger") -> None:
        return None

    async def on_stop(self) -> None:
        return None

    async def tick(self, tick_id: Optional[str] = None) -> Dict[str, Any]:
        """Run one full scan; returns the tick summary."""
        if self._in_flight:
            logger.bind(job=self.name).warning(
                f"{self.name}: previous tick still running, skipping"
            )
            return {"job": self.name, "success": True, "skipped": True}

        self._in_flight = True
        tick_id = tick_id or f"{self.name}-{uuid.uuid4().hex[:12]}"
        token = set_request_id(tick_id)
        log = get_logger(job=self.name)
        started = time.monotonic()
        stats = TickStats()
        error: Optional[str] = None

        try:
            now = self.clock()
            try:
                await self.before_tick(now, log)
                await self._scan(now, stats, log)
            except Exception as e:
                error = str(e)
                log.exception(f"{self.name} tick failed: {e}")

            # Runs after a failed scan too, so work already collected is flushed
            try:
                await self.after_tick(now, stats, log)
            except Exception as e:
                error = error or str(e)
                log.exception(f"{self.name} tick finalization failed: {e}")

            result: Dict[str, Any] = {
                "job": self.name,
                "tick_id": tick_id,
                "success": error is None,
                "scanned": stats.scanned,
                self.result_key: stats.affected,
                "skipped_rows": stats.skipped_rows,
                "duration_ms": int((time.monotonic() - started) * 1000),
                **stats.extra,
            }
            if error is not None:
                result["error"] = error

            log.bind(**result).info(
                f"{self.name} tick finished: scanned={stats.scanned} "
                f"{self.result_key}={stats.affected} in {result['duration_ms']}ms"
            )
            return result
        finally:
            self._in_flight = False
            reset_request_id(token)

    async def _scan(self, now: datetime, stats: TickStats, log: "Logger") -> None:
        predicate = self.predicate(now)
        cursor: Optional[str] = None
        while True:
            page = await self.store.scan_page(predicate, cursor, self.batch_size)
            stats.scanned += len(page.rows)
            if page.rows:
                await self.process_page(page.rows, now, stats, log)
            if not page.has_more:
                break
            cursor = page.last_id

    def _spawn_tick(self) -> None:
        task = asyncio.get_running_loop().create_task(
            self.tick(), name=f"{self.name}-tick"
        )
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def _run_forever(self) -> None:
        while True:
            # Ticks run as their own tasks so stopping the timer never cuts one short
            self._spawn_tick()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> JobHandle:
        """Run one tick now and then every interval; starting twice is a no-op."""
        if self._handle is not None:
            logger.info(f"{self.name} already started; skipping")
            return self._handle

        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_forever(), name=f"{self.name}-timer"
        )
        self._handle = JobHandle(self)
        logger.bind(
            job=self.name,
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
        ).info(f"{self.name} started")
        return self._handle

    async def stop(self) -> None:
        """Cancel the timer, let an in-flight tick finish, then run ``on_stop``."""
        if self._handle is None:
            return

        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)

        self._loop_task = None
        self._handle = None
        await self.on_stop()
        logger.bind(job=self.name).info(f"{self.name} stopped")
