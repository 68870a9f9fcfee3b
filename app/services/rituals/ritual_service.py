from datetime import date, datetime
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.db.models import RitualDay, RitualStatus, RitualSubtask, User
from app.providers.ritual_store import CHECK_IN, RitualStore
from app.schemas.ritual_schemas import (
    RitualDayResponse,
    SubtaskInput,
    SubtaskResponse,
)
from app.utils.datetime_utils import to_naive_utc, utc_now
from app.utils.errors import BusinessLogicError, DatabaseError, NotFoundError
from app.utils.logging import get_logger

logger = get_logger()


class RitualService:
    """
    User-facing writes on ritual days that can race the scheduler sweeps.

    The check-in goes through the same conditional update as the sweepers,
    so exactly one of them wins for a given day.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: Optional[RitualStore] = None,
    ):
        self.session_factory = session_factory
        self.store = store or RitualStore(session_factory)

    async def plan_day(
        self,
        user_id: str,
        local_date: date,
        title: str,
        note: Optional[str] = None,
        subtasks: Optional[Sequence[SubtaskInput]] = None,
    ) -> RitualDayResponse:
        """Create the day's plan, or replace title, note and subtasks of a still planned day"""
        subtasks = list(subtasks or [])

        try:
            async with self.session_factory() as db:
                if await db.get(User, user_id) is None:
                    raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")

                ritual = await self._get_by_user_and_date(db, user_id, local_date)
                if ritual is None:
                    ritual = RitualDay(
                        user_id=user_id,
                        local_date=local_date,
                        title=title,
                        note=note,
                        status=RitualStatus.PLANNED,
                    )
                    db.add(ritual)
                elif ritual.status != RitualStatus.PLANNED:
                    raise BusinessLogicError(
                        f"Ritual for {local_date.isoformat()} is already {ritual.status.value}",
                        "RITUAL_NOT_EDITABLE",
                    )
                else:
                    ritual.title = title
                    ritual.note = note

                # Subtasks are replaced wholesale on every edit
                ritual.subtasks = self._build_subtasks(subtasks)

                await db.commit()
                ritual = await self._get_by_user_and_date(db, user_id, local_date)

                logger.info(f"Planned ritual {ritual.id} for {local_date.isoformat()}")
                return self._create_ritual_response(ritual)

        except IntegrityError as e:
            # A concurrent plan for the same day won the unique constraint
            raise BusinessLogicError(
                "Ritual for this day was created concurrently", "RITUAL_ALREADY_PLANNED"
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to plan ritual: {e}") from e

    async def check_in(
        self, ritual_id: str, achieved: bool, now: Optional[datetime] = None
    ) -> bool:
        """
        Record the evening answer for a planned day.

        Returns True when this call moved the ritual to COMPLETED, False when
        it had already been answered or swept to MISSED.

        Raises:
            NotFoundError: the ritual does not exist
        """
        try:
            async with self.session_factory() as db:
                exists = await db.scalar(
                    select(RitualDay.id).where(RitualDay.id == ritual_id)
                )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load ritual: {e}") from e

        if exists is None:
            raise NotFoundError(f"Ritual {ritual_id} not found", "RITUAL_NOT_FOUND")

        transition = CHECK_IN.with_changes(
            achieved=achieved, check_in_at=to_naive_utc(now or utc_now())
        )
        updated = await self.store.apply_transition([ritual_id], transition)

        if not updated:
            logger.info(f"Check-in for ritual {ritual_id} lost to an earlier transition")
        return updated == 1

    async def get_ritual(self, ritual_id: str) -> RitualDayResponse:
        try:
            async with self.session_factory() as db:
                ritual = await db.scalar(
                    select(RitualDay)
                    .options(selectinload(RitualDay.subtasks))
                    .where(RitualDay.id == ritual_id)
                )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load ritual: {e}") from e

        if ritual is None:
            raise NotFoundError(f"Ritual {ritual_id} not found", "RITUAL_NOT_FOUND")
        return self._create_ritual_response(ritual)

    # Helper Methods
    @staticmethod
    async def _get_by_user_and_date(
        db: AsyncSession, user_id: str, local_date: date
    ) -> Optional[RitualDay]:
        result = await db.execute(
            select(RitualDay)
            .options(selectinload(RitualDay.subtasks))
            .where(RitualDay.user_id == user_id, RitualDay.local_date == local_date)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _build_subtasks(subtasks: Sequence[SubtaskInput]) -> List[RitualSubtask]:
        return [
            RitualSubtask(
                content=subtask.content,
                order=subtask.order if subtask.order is not None else index,
                done=subtask.done,
            )
            for index, subtask in enumerate(subtasks)
        ]

    @staticmethod
    def _create_ritual_response(ritual: RitualDay) -> RitualDayResponse:
        return RitualDayResponse(
            id=ritual.id,
            user_id=ritual.user_id,
            local_date=ritual.local_date,
            title=ritual.title,
            note=ritual.note,
            status=ritual.status,
            achieved=ritual.achieved,
            check_in_at=ritual.check_in_at,
            past_due=ritual.past_due,
            subtasks=[
                SubtaskResponse(
                    id=subtask.id,
                    content=subtask.content,
                    order=subtask.order,
                    done=subtask.done,
                )
                for subtask in ritual.subtasks
            ],
        )
