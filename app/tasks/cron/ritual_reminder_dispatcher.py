import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List

from app.celery import celery
from app.config.settings import settings
from app.db.models import RitualDay, RitualStatus
from app.providers.ritual_store import RitualCandidate, RitualStore
from app.services.notifications.dedup_cache import DedupCache
from app.services.notifications.fanout import NotificationFanout, OutboundNotification
from app.services.push.base import PushMessage
from app.services.rituals.notification_copy import (
    REMINDER_EVENT,
    build_reminder_copy,
    reminder_data,
)
from app.tasks.periodic import Clock, PeriodicJob, TickStats
from app.utils.datetime_utils import utc_now
from app.utils.deadline_utils import is_within_window, reminder_instant

if TYPE_CHECKING:
    from loguru import Logger

# Widest span between a local date and the UTC date of any instant on it
LOCAL_DATE_LOOKBACK = timedelta(days=2)
LOCAL_DATE_LOOKAHEAD = timedelta(days=1)


def build_reminder_notification(row: RitualCandidate) -> OutboundNotification:
    owner = row.owner
    copy = build_reminder_copy(
        row.title, row.local_date, owner.display_name, owner.locale
    )
    data = reminder_data(row.id)
    return OutboundNotification(
        event=REMINDER_EVENT,
        payload={
            "ritualId": row.id,
            "title": row.title,
            "message": copy.body,
            "data": data,
        },
        push=PushMessage(
            title=copy.title,
            body=copy.body,
            data=data,
            sound="default" if owner.sound_enabled else None,
        ),
    )


class RitualReminderDispatcher(PeriodicJob):
    """
    Sends the evening check-in reminder for planned days whose reminder time
    falls in ``[now - late, now + early]``.

    A ritual notified within the dedup TTL is not notified again. Nothing is
    persisted; tokens reported invalid are disabled in one batch per tick.
    """

    name = "ritual_reminder_dispatcher"
    result_key = "notified"

    def __init__(
        self,
        store: RitualStore,
        fanout: NotificationFanout,
        dedup: DedupCache,
        interval_seconds: float = settings.REMINDER_INTERVAL_SECONDS,
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        late_minutes: int = settings.REMINDER_WINDOW_LATE_MINUTES,
        early_minutes: int = settings.REMINDER_WINDOW_EARLY_MINUTES,
        clock: Clock = utc_now,
    ):
        super().__init__(store, interval_seconds, batch_size, clock)
        self.fanout = fanout
        self.dedup = dedup
        self.late = timedelta(minutes=late_minutes)
        self.early = timedelta(minutes=early_minutes)
        self._tokens_to_disable: List[str] = []

    def predicate(self, now: datetime):
        today = now.date()
        return [
            RitualDay.status == RitualStatus.PLANNED,
            RitualDay.achieved.is_(None),
            RitualDay.check_in_at.is_(None),
            RitualDay.local_date >= today - LOCAL_DATE_LOOKBACK,
            RitualDay.local_date <= today + LOCAL_DATE_LOOKAHEAD,
        ]

    async def before_tick(self, now: datetime, log: "Logger") -> None:
        self._tokens_to_disable = []
        pruned = await self.dedup.prune(now)
        if pruned:
            log.debug(f"Pruned {pruned} expired reminder dedup entries")

    async def _select_due(
        self,
        rows: List[RitualCandidate],
        now: datetime,
        stats: TickStats,
        log: "Logger",
    ) -> List[RitualCandidate]:
        due = []
        for row in rows:
            owner = row.owner
            if owner is None:
                stats.skipped_rows += 1
                log.bind(ritual_id=row.id).warning("Ritual has no owner, skipping")
                continue
            if not owner.notifications_enabled:
                continue

            try:
                instant = reminder_instant(
                    row.local_date,
                    owner.timezone,
                    owner.check_in_hour,
                    owner.check_in_minute,
                )
            except Exception as e:
                stats.skipped_rows += 1
                log.bind(ritual_id=row.id, user_id=row.user_id).warning(
                    f"Could not resolve reminder time, skipping: {e}"
                )
                continue

            if not is_within_window(instant, now, self.late, self.early):
                continue
            if await self.dedup.contains(row.id, now):
                continue
            due.append(row)
        return due

    async def process_page(
        self,
        rows: List[RitualCandidate],
        now: datetime,
        stats: TickStats,
        log: "Logger",
    ) -> None:
        due = await self._select_due(rows, now, stats, log)
        if not due:
            return

        tokens_by_user = await self.fanout.resolve_tokens({row.user_id for row in due})

        for row in due:
            result = await self.fanout.dispatch(
                row.user_id,
                row.id,
                build_reminder_notification(row),
                tokens=tokens_by_user.get(row.user_id, []),
            )
            stats.affected += 1
            self._tokens_to_disable.extend(result.push.tokens_to_disable)

            if result.push.attempted == 0 and result.error is None:
                # Still marked so an unreachable user is not logged every tick
                log.bind(ritual_id=row.id, user_id=row.user_id).warning(
                    "No deliverable push tokens"
                )
                await self.dedup.mark(row.id, now)
            elif result.delivered:
                await self.dedup.mark(row.id, now)
            else:
                log.bind(ritual_id=row.id, user_id=row.user_id).warning(
                    "Every push attempt failed, reminder will be retried next tick"
                )

    async def after_tick(self, now: datetime, stats: TickStats, log: "Logger") -> None:
        tokens, self._tokens_to_disable = self._tokens_to_disable, []
        disabled = await self.fanout.disable_tokens(tokens) if tokens else 0
        stats.extra["tokens_disabled"] = disabled

    async def on_stop(self) -> None:
        await self.dedup.clear()


@celery.task(bind=True)
def ritual_reminder_dispatcher_task(self, request_id: str):
    """
    Beat-driven single tick of the reminder dispatcher.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    # Import here to avoid circular imports
    from app.tasks.runtime import run_single_tick

    return asyncio.run(run_single_tick(RitualReminderDispatcher.name, request_id))
