from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import ColumnElement, and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import PushDevice, RitualDay, RitualStatus, User
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import DatabaseError
from app.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class RitualOwner:
    """The slice of a user the scheduler needs; read-only from its side."""

    id: str
    display_name: Optional[str]
    locale: str
    timezone: str
    check_in_hour: int
    check_in_minute: int
    notifications_enabled: bool
    sound_enabled: bool


@dataclass(frozen=True)
class RitualCandidate:
    """Detached snapshot of a ritual day row returned by a scan."""

    id: str
    user_id: str
    local_date: date
    title: str
    status: RitualStatus
    past_due: bool
    created_at: datetime
    owner: Optional[RitualOwner]


@dataclass(frozen=True)
class ScanPage:
    rows: List[RitualCandidate]
    has_more: bool

    @property
    def last_id(self) -> Optional[str]:
        return self.rows[-1].id if self.rows else None


@dataclass(frozen=True)
class DeviceToken:
    user_id: str
    token: str


@dataclass(frozen=True)
class RitualTransition:
    """
    A compare-and-set on ritual day columns.

    ``required`` is the state a row must still be in for ``changes`` to be
    applied; a ``None`` value means the column must be NULL.
    """

    name: str
    required: Mapping[str, Any]
    changes: Mapping[str, Any] = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> "RitualTransition":
        return replace(self, changes={**self.changes, **changes})


UNANSWERED_PLANNED: Dict[str, Any] = {
    "status": RitualStatus.PLANNED,
    "achieved": None,
    "check_in_at": None,
}

MISS_PLANNED = RitualTransition(
    name="miss_planned",
    required=UNANSWERED_PLANNED,
    changes={"status": RitualStatus.MISSED, "achieved": False, "past_due": True},
)

FLAG_COMPLETED_PAST_DUE = RitualTransition(
    name="flag_completed_past_due",
    required={"status": RitualStatus.COMPLETED, "past_due": False},
    changes={"past_due": True},
)

# achieved and check_in_at are filled in by the caller
CHECK_IN = RitualTransition(
    name="check_in",
    required=UNANSWERED_PLANNED,
    changes={"status": RitualStatus.COMPLETED},
)


class RitualStore:
    """
    Store gateway used by the scheduler core.

    Every method opens its own short-lived session so no connection is held
    across the in-process work done between calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def scan_page(
        self,
        predicate: Sequence[ColumnElement[bool]],
        after_id: Optional[str],
        limit: int,
    ) -> ScanPage:
        """
        Return up to ``limit`` ritual days matching ``predicate`` with an id
        strictly greater than ``after_id``, ordered by id.

        One extra row is fetched to learn whether another page exists.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")

        conditions = list(predicate)
        if after_id is not None:
            conditions.append(RitualDay.id > after_id)

        stmt = (
            select(RitualDay, User)
            .outerjoin(User, User.id == RitualDay.user_id)
            .where(and_(*conditions))
            .order_by(RitualDay.id.asc())
            .limit(limit + 1)
        )

        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                pairs = result.all()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Ritual scan failed: {e}", "RITUAL_SCAN_FAILED") from e

        rows = [_to_candidate(ritual, user) for ritual, user in pairs[:limit]]
        return ScanPage(rows=rows, has_more=len(pairs) > limit)

    async def conditional_batch_update(
        self,
        ids: Iterable[str],
        required: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> int:
        """
        Atomically apply ``changes`` to the rows in ``ids`` that are still in
        the ``required`` state. Rows moved on by a concurrent writer are
        skipped. Returns the number of rows updated; an empty id set is a
        no-op returning 0.
        """
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return 0

        conditions = [RitualDay.id.in_(unique_ids)]
        for column_name, expected in required.items():
            column = getattr(RitualDay, column_name)
            conditions.append(
                column.is_(None) if expected is None else column == expected
            )

        stmt = (
            update(RitualDay)
            .where(and_(*conditions))
            .values(**changes, updated_at=naive_utc_now())
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory.begin() as db:
                result = await db.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Conditional ritual update failed: {e}", "RITUAL_UPDATE_FAILED"
            ) from e

        return result.rowcount or 0

    async def apply_transition(
        self, ids: Iterable[str], transition: RitualTransition
    ) -> int:
        return await self.conditional_batch_update(
            ids, transition.required, transition.changes
        )

    async def find_devices_for_users(
        self, user_ids: Iterable[str], only_enabled: bool = True
    ) -> List[DeviceToken]:
        """Fetch push tokens for a whole set of users in one query."""
        unique_ids = list(dict.fromkeys(user_ids))
        if not unique_ids:
            return []

        stmt = select(PushDevice.user_id, PushDevice.token).where(
            PushDevice.user_id.in_(unique_ids)
        )
        if only_enabled:
            stmt = stmt.where(PushDevice.disabled == False)  # noqa: E712

        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt.order_by(PushDevice.id))
                return [DeviceToken(user_id=u, token=t) for u, t in result.all()]
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Device lookup failed: {e}", "DEVICE_LOOKUP_FAILED"
            ) from e

    async def disable_devices(self, tokens: Iterable[str]) -> int:
        """Disable every enabled device holding one of ``tokens``."""
        unique_tokens = list(dict.fromkeys(tokens))
        if not unique_tokens:
            return 0

        stmt = (
            update(PushDevice)
            .where(
                and_(
                    PushDevice.token.in_(unique_tokens),
                    PushDevice.disabled == False,  # noqa: E712
                )
            )
            .values(disabled=True, updated_at=naive_utc_now())
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory.begin() as db:
                result = await db.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Device disable failed: {e}", "DEVICE_DISABLE_FAILED"
            ) from e

        disabled = result.rowcount or 0
        logger.bind(requested=len(unique_tokens)).info(
            f"Disabled {disabled} push device(s)"
        )
        return disabled


def _to_candidate(ritual: RitualDay, user: Optional[User]) -> RitualCandidate:
    owner = None
    if user is not None:
        owner = RitualOwner(
            id=user.id,
            display_name=user.display_name,
            locale=user.locale,
            timezone=user.timezone,
            check_in_hour=user.check_in_hour,
            check_in_minute=user.check_in_minute,
            notifications_enabled=user.notifications_enabled,
            sound_enabled=user.sound_enabled,
        )
    return RitualCandidate(
        id=ritual.id,
        user_id=ritual.user_id,
        local_date=ritual.local_date,
        title=ritual.title,
        status=ritual.status,
        past_due=ritual.past_due,
        created_at=ritual.created_at,
        owner=owner,
    )
