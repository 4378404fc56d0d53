"""Tests for the stale run reaper."""

from datetime import timedelta

import pytest

from api.models import RunStatus
from api.models.base import utcnow
from api.services import ClientRun, CompetitorRun, run_service
from worker.effectiveness.progress import ProgressRecord
from worker.effectiveness.reaper import StaleRunReaper, timeout_detail


async def seed(session_maker, client, status, age, kind=None):
    async with session_maker() as db:
        run = await run_service.create_run(
            db, client.id, client.website_url, kind or ClientRun()
        )
        run.status = status.value
        run.created_at = utcnow() - age
        await db.commit()
    return run


async def reload(session_maker, run_id):
    async with session_maker() as db:
        return await run_service.get_run(db, run_id)


class TestTimeoutDetail:
    """Tests for the failure message."""

    def test_format(self):
        now = utcnow()

        detail = timeout_detail(2.5, now)

        assert detail == (
            f"Run timed out after 2.5 hours - marked as failed by cleanup process at "
            f"{now.isoformat()}"
        )


class TestSweep:
    """Tests for StaleRunReaper.sweep."""

    @pytest.mark.asyncio
    async def test_nothing_stale(self, session_maker, lone_client):
        await seed(session_maker, lone_client, RunStatus.SCRAPING, timedelta(minutes=5))

        result = await StaleRunReaper(session_maker).sweep(timedelta(hours=2))

        assert result.total_stale_runs == 0
        assert result.cleaned_runs == 0

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, session_maker, lone_client):
        run = await seed(session_maker, lone_client, RunStatus.PENDING, timedelta(hours=3))

        result = await StaleRunReaper(session_maker).sweep(timedelta(hours=2), dry_run=True)

        assert result.total_stale_runs == 1
        assert result.cleaned_runs == 0
        assert result.to_dict()["stale_pending_runs"] == 1
        assert (await reload(session_maker, run.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_stale_runs_failed(self, session_maker, lone_client):
        stale = await seed(session_maker, lone_client, RunStatus.TIER2_ANALYZING, timedelta(hours=3))
        fresh = await seed(session_maker, lone_client, RunStatus.SCRAPING, timedelta(minutes=1))
        done = await seed(session_maker, lone_client, RunStatus.COMPLETED, timedelta(hours=5))

        result = await StaleRunReaper(session_maker).sweep(timedelta(hours=2))

        assert result.cleaned_runs == 1
        assert result.stale_runs[0].id == str(stale.id)
        assert result.stale_runs[0].age_hours == 3.0

        reaped = await reload(session_maker, stale.id)
        assert reaped.status == "failed"
        assert reaped.progress_detail.startswith(
            "Run timed out after 3 hours - marked as failed by cleanup process at "
        )
        assert reaped.error_details[-1]["step"] == "stale_run_sweep"
        assert reaped.error_details[-1]["category"] == "network_timeout"
        assert (await reload(session_maker, fresh.id)).status == "scraping"
        assert (await reload(session_maker, done.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_second_sweep_is_idempotent(self, session_maker, lone_client):
        await seed(session_maker, lone_client, RunStatus.SCRAPING, timedelta(hours=3))
        reaper = StaleRunReaper(session_maker)

        first = await reaper.sweep(timedelta(hours=2))
        second = await reaper.sweep(timedelta(hours=2))

        assert first.cleaned_runs == 1
        assert second.total_stale_runs == 0
        assert second.cleaned_runs == 0

    @pytest.mark.asyncio
    async def test_client_filter(self, session_maker, lone_client, client_with_competitors):
        mine = await seed(session_maker, lone_client, RunStatus.SCRAPING, timedelta(hours=3))
        theirs = await seed(
            session_maker,
            client_with_competitors,
            RunStatus.SCRAPING,
            timedelta(hours=3),
            CompetitorRun(client_with_competitors.competitors[0].id),
        )

        result = await StaleRunReaper(session_maker).sweep(
            timedelta(hours=2), client_id=lone_client.id
        )

        assert [r.id for r in result.stale_runs] == [str(mine.id)]
        assert (await reload(session_maker, theirs.id)).status == "scraping"

    @pytest.mark.asyncio
    async def test_competitor_run_reported(self, session_maker, client_with_competitors):
        competitor = client_with_competitors.competitors[0]
        await seed(
            session_maker,
            client_with_competitors,
            RunStatus.TIER1_ANALYZING,
            timedelta(hours=4),
            CompetitorRun(competitor.id),
        )

        result = await StaleRunReaper(session_maker).sweep(timedelta(hours=2))

        data = result.to_dict()
        assert data["stale_runs"][0]["competitor_id"] == str(competitor.id)
        assert data["stale_pending_runs"] == 0
        assert data["errors"] == []

    @pytest.mark.asyncio
    async def test_failure_published_to_registry(self, session_maker, registry, lone_client):
        run = await seed(session_maker, lone_client, RunStatus.SCRAPING, timedelta(hours=3))
        registry.set(
            str(run.id),
            ProgressRecord(
                run_id=str(run.id),
                client_id=str(lone_client.id),
                status="scraping",
                progress=10,
                overall_percent=9,
            ),
        )
        subscription = registry.subscribe(run_id=str(run.id))

        await StaleRunReaper(session_maker, registry).sweep(timedelta(hours=2))

        record = registry.get(str(run.id))
        assert record.status == "failed"
        assert record.step == "stale_run_sweep"
        assert record.progress == 10
        assert subscription.closed
