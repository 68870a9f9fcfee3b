import asyncio
import pytest
from datetime import date, timedelta

from app.db.models import RitualDay, RitualStatus
from app.services.rituals.ritual_service import RitualService
from app.tasks.cron.missed_ritual_sweeper import MissedRitualSweeper
from app.utils.deadline_utils import deadline_instant
from tests.fakes import FixedClock, make_id, utc


def make_sweeper(store, now, batch_size=200):
    return MissedRitualSweeper(
        store, interval_seconds=900, batch_size=batch_size, clock=FixedClock(now)
    )


class TestMissedRitualSweeper:
    """Planned days past their deadline become MISSED."""

    @pytest.mark.asyncio
    async def test_marks_only_expired_days(self, store, make_user, make_ritual, reload):
        user = await make_user(timezone="America/Fortaleza")
        expired = await make_ritual(user, date(2024, 3, 9))
        today = await make_ritual(user, date(2024, 3, 10))

        # 2024-03-10 local day in Fortaleza ends at 2024-03-11T03:00Z
        result = await make_sweeper(store, utc(2024, 3, 11, 2, 59)).tick()

        assert result["success"] is True
        assert result["updated"] == 1
        assert (await reload(RitualDay, expired.id)).status == RitualStatus.MISSED
        assert (await reload(RitualDay, today.id)).status == RitualStatus.PLANNED

    @pytest.mark.asyncio
    async def test_deadline_instant_itself_counts_as_passed(
        self, store, make_user, make_ritual, reload
    ):
        user = await make_user(timezone="America/New_York")
        ritual = await make_ritual(user, date(2024, 3, 10))

        now = deadline_instant(date(2024, 3, 10), "America/New_York")
        await make_sweeper(store, now).tick()

        missed = await reload(RitualDay, ritual.id)
        assert missed.status == RitualStatus.MISSED
        assert missed.achieved is False
        assert missed.past_due is True

    @pytest.mark.asyncio
    async def test_second_tick_is_idempotent(self, store, make_user, make_ritual):
        user = await make_user()
        await make_ritual(user, date(2024, 3, 1))
        sweeper = make_sweeper(store, utc(2024, 3, 5))

        first = await sweeper.tick()
        second = await sweeper.tick()

        assert first["updated"] == 1
        assert second["updated"] == 0
        assert second["scanned"] == 0

    @pytest.mark.asyncio
    async def test_batch_size_one_processes_every_row(
        self, store, make_user, make_ritual, reload
    ):
        user = await make_user()
        for n in range(1, 6):
            await make_ritual(user, date(2024, 2, n), id=make_id(n))

        result = await make_sweeper(store, utc(2024, 3, 1), batch_size=1).tick()

        assert result["scanned"] == 5
        assert result["updated"] == 5
        for n in range(1, 6):
            assert (await reload(RitualDay, make_id(n))).status == RitualStatus.MISSED

    @pytest.mark.asyncio
    async def test_check_in_before_sweep_wins(
        self, store, session_factory, make_user, make_ritual, reload
    ):
        user = await make_user()
        ritual = await make_ritual(user, date(2024, 3, 1))

        assert await RitualService(session_factory, store).check_in(ritual.id, True)
        result = await make_sweeper(store, utc(2024, 3, 5)).tick()

        assert result["updated"] == 0
        reloaded = await reload(RitualDay, ritual.id)
        assert reloaded.status == RitualStatus.COMPLETED
        assert reloaded.achieved is True

    @pytest.mark.asyncio
    async def test_check_in_racing_between_scan_and_update(
        self, store, session_factory, make_user, make_ritual, reload
    ):
        user = await make_user()
        ritual = await make_ritual(user, date(2024, 3, 1))
        service = RitualService(session_factory, store)
        sweeper = make_sweeper(store, utc(2024, 3, 5))

        original_scan = store.scan_page

        async def scan_then_user_answers(*args, **kwargs):
            page = await original_scan(*args, **kwargs)
            if page.rows:
                await service.check_in(ritual.id, False)
            return page

        store.scan_page = scan_then_user_answers
        result = await sweeper.tick()

        assert result["scanned"] == 1
        assert result["updated"] == 0
        reloaded = await reload(RitualDay, ritual.id)
        assert reloaded.status == RitualStatus.COMPLETED
        assert reloaded.achieved is False

    @pytest.mark.asyncio
    async def test_unknown_timezone_falls_back_to_utc(
        self, store, make_user, make_ritual, reload
    ):
        user = await make_user(timezone="Nowhere/Special")
        ritual = await make_ritual(user, date(2024, 3, 10))

        await make_sweeper(store, utc(2024, 3, 10, 23, 59)).tick()
        assert (await reload(RitualDay, ritual.id)).status == RitualStatus.PLANNED

        await make_sweeper(store, utc(2024, 3, 11, 0, 0)).tick()
        assert (await reload(RitualDay, ritual.id)).status == RitualStatus.MISSED

    @pytest.mark.asyncio
    async def test_zone_directory_name_does_not_stall_the_sweep(
        self, store, make_user, make_ritual, reload
    ):
        bad = await make_user(timezone="America")
        good = await make_user(timezone="UTC")
        bad_ritual = await make_ritual(bad, date(2024, 3, 1))
        good_ritual = await make_ritual(good, date(2024, 3, 1))

        result = await make_sweeper(store, utc(2024, 3, 5)).tick()

        assert result["success"] is True
        assert result["updated"] == 2
        assert (await reload(RitualDay, bad_ritual.id)).status == RitualStatus.MISSED
        assert (await reload(RitualDay, good_ritual.id)).status == RitualStatus.MISSED

    @pytest.mark.asyncio
    async def test_row_that_fails_qualification_is_skipped(
        self, monkeypatch, store, make_user, make_ritual, reload
    ):
        from app.tasks.cron import missed_ritual_sweeper

        original = missed_ritual_sweeper.is_deadline_passed

        def fragile(local_date, tz_name, now):
            if tz_name == "Europe/Berlin":
                raise OSError("zone data unreadable")
            return original(local_date, tz_name, now)

        monkeypatch.setattr(missed_ritual_sweeper, "is_deadline_passed", fragile)
        broken = await make_user(timezone="Europe/Berlin")
        fine = await make_user(timezone="UTC")
        broken_ritual = await make_ritual(broken, date(2024, 3, 1))
        fine_ritual = await make_ritual(fine, date(2024, 3, 1))

        result = await make_sweeper(store, utc(2024, 3, 5)).tick()

        assert result["success"] is True
        assert result["updated"] == 1
        assert result["skipped_rows"] == 1
        assert (await reload(RitualDay, broken_ritual.id)).status == RitualStatus.PLANNED
        assert (await reload(RitualDay, fine_ritual.id)).status == RitualStatus.MISSED

    @pytest.mark.asyncio
    async def test_store_failure_is_reported_not_raised(self, store):
        async def broken_scan(*args, **kwargs):
            raise RuntimeError("database is gone")

        store.scan_page = broken_scan
        sweeper = make_sweeper(store, utc(2024, 3, 5))

        result = await sweeper.tick()

        assert result["success"] is False
        assert "database is gone" in result["error"]
        # The guard is released so the next tick runs
        assert (await sweeper.tick())["success"] is False

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, store, make_user, make_ritual):
        user = await make_user()
        await make_ritual(user, date(2024, 3, 1))
        release = asyncio.Event()
        original_scan = store.scan_page

        async def slow_scan(*args, **kwargs):
            await release.wait()
            return await original_scan(*args, **kwargs)

        store.scan_page = slow_scan
        sweeper = make_sweeper(store, utc(2024, 3, 5))

        first = asyncio.create_task(sweeper.tick())
        await asyncio.sleep(0)
        skipped = await sweeper.tick()
        release.set()
        finished = await first

        assert skipped == {"job": sweeper.name, "success": True, "skipped": True}
        assert finished["updated"] == 1
