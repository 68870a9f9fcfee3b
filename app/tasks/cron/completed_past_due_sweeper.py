import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List

from app.celery import celery
from app.config.settings import settings
from app.db.models import RitualDay, RitualStatus
from app.providers.ritual_store import (
    FLAG_COMPLETED_PAST_DUE,
    RitualCandidate,
    RitualStore,
)
from app.tasks.periodic import Clock, PeriodicJob, TickStats
from app.utils.datetime_utils import to_naive_utc, utc_now

if TYPE_CHECKING:
    from loguru import Logger


class CompletedPastDueSweeper(PeriodicJob):
    """Flags completed days older than the retention window as past due."""

    name = "completed_past_due_sweeper"
    result_key = "updated"

    def __init__(
        self,
        store: RitualStore,
        interval_seconds: float = settings.PAST_DUE_SWEEP_INTERVAL_SECONDS,
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        retention_hours: int = settings.PAST_DUE_RETENTION_HOURS,
        clock: Clock = utc_now,
    ):
        super().__init__(store, interval_seconds, batch_size, clock)
        self.retention = timedelta(hours=retention_hours)

    def predicate(self, now: datetime):
        return [
            RitualDay.status == RitualStatus.COMPLETED,
            RitualDay.past_due == False,  # noqa: E712
            RitualDay.created_at <= to_naive_utc(now - self.retention),
        ]

    async def process_page(
        self,
        rows: List[RitualCandidate],
        now: datetime,
        stats: TickStats,
        log: "Logger",
    ) -> None:
        stats.affected += await self.store.apply_transition(
            [row.id for row in rows], FLAG_COMPLETED_PAST_DUE
        )


@celery.task(bind=True)
def completed_past_due_sweeper_task(self, request_id: str):
    """
    Beat-driven single tick of the completed past-due sweeper.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    # Import here to avoid circular imports
    from app.tasks.runtime import run_single_tick

    return asyncio.run(run_single_tick(CompletedPastDueSweeper.name, request_id))
