import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, List

from app.celery import celery
from app.config.settings import settings
from app.db.models import RitualDay, RitualStatus
from app.providers.ritual_store import MISS_PLANNED, RitualCandidate, RitualStore
from app.tasks.periodic import Clock, PeriodicJob, TickStats
from app.utils.datetime_utils import utc_now
from app.utils.deadline_utils import is_deadline_passed

if TYPE_CHECKING:
    from loguru import Logger


class MissedRitualSweeper(PeriodicJob):
    """
    Marks planned days that were never answered as MISSED once their
    deadline (start of the local day plus 24 hours) has passed.
    """

    name = "missed_ritual_sweeper"
    result_key = "updated"

    def __init__(
        self,
        store: RitualStore,
        interval_seconds: float = settings.MISSED_SWEEP_INTERVAL_SECONDS,
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        clock: Clock = utc_now,
    ):
        super().__init__(store, interval_seconds, batch_size, clock)

    def predicate(self, now: datetime):
        # A passed deadline implies the local date is not after today's UTC date
        return [
            RitualDay.status == RitualStatus.PLANNED,
            RitualDay.achieved.is_(None),
            RitualDay.check_in_at.is_(None),
            RitualDay.local_date <= now.date(),
        ]

    async def process_page(
        self,
        rows: List[RitualCandidate],
        now: datetime,
        stats: TickStats,
        log: "Logger",
    ) -> None:
        expired_ids = []
        for row in rows:
            if row.owner is None:
                stats.skipped_rows += 1
                log.bind(ritual_id=row.id).warning("Ritual has no owner, skipping")
                continue
            try:
                expired = is_deadline_passed(row.local_date, row.owner.timezone, now)
            except Exception as e:
                stats.skipped_rows += 1
                log.bind(ritual_id=row.id, user_id=row.user_id).warning(
                    f"Could not resolve deadline, skipping: {e}"
                )
                continue
            if expired:
                expired_ids.append(row.id)

        if expired_ids:
            # Rows answered since the scan no longer match and are left alone
            stats.affected += await self.store.apply_transition(
                expired_ids, MISS_PLANNED
            )


@celery.task(bind=True)
def missed_ritual_sweeper_task(self, request_id: str):
    """
    Beat-driven single tick of the missed ritual sweeper.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    # Import here to avoid circular imports
    from app.tasks.runtime import run_single_tick

    return asyncio.run(run_single_tick(MissedRitualSweeper.name, request_id))
