"""Unit tests for SyncScheduler job execution and cycles."""

import asyncio
import time
from unittest.mock import AsyncMock, Mock, patch

import pytest

from conftest import rate_limit_headers
from subagents.config import SyncConfig
from subagents.connectors.github.quota import QuotaLevel, QuotaManager
from subagents.connectors.github.sync import SyncOptions, SyncResult
from subagents.models import RepositorySyncBinding
from subagents.scheduler import JobAlreadyRunningError, SyncScheduler


def result(success=True):
    return SyncResult(success=success)


@pytest.fixture
def config():
    return SyncConfig(
        sync_max_retries=3,
        sync_retry_delay=0,
        sync_stale_max_age_hours=12,
        sync_job_retention_days=7,
        webhook_retention_days=3,
        pushgateway_url="",
    )


@pytest.fixture
def sync_service():
    service = Mock()
    service.sync_enabled_repositories = AsyncMock(return_value=[result(), result(False)])
    service.sync_stale_repositories = AsyncMock(return_value=[result()])
    service.cleanup_old_sync_jobs = AsyncMock(return_value=4)
    service.cleanup_old_webhook_deliveries = AsyncMock(return_value=2)
    service.sync_repository = AsyncMock(return_value=result())
    service.sync_user_repositories = AsyncMock(return_value=[result()])
    return service


@pytest.fixture
def quota():
    return QuotaManager()


@pytest.fixture
def scheduler(sync_service, quota, config):
    return SyncScheduler(sync_service, quota, config)


# =============================================================================
# execute_job
# =============================================================================


class TestExecuteJob:
    @pytest.mark.asyncio
    async def test_success_recorded(self, scheduler):
        assert await scheduler.execute_job("job", AsyncMock(return_value=7)) == 7

        stats = scheduler.stats.to_dict()
        assert stats["total_jobs"] == 1
        assert stats["successful_jobs"] == 1
        assert stats["running_jobs"] == 0
        assert stats["last_run"] is not None

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, scheduler):
        job = AsyncMock(side_effect=[RuntimeError("flaky"), RuntimeError("flaky"), "ok"])

        assert await scheduler.execute_job("job", job) == "ok"
        assert job.await_count == 3
        assert scheduler.stats.failed_jobs == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise(self, scheduler):
        job = AsyncMock(side_effect=RuntimeError("down"))

        with pytest.raises(RuntimeError, match="down"):
            await scheduler.execute_job("job", job)

        assert job.await_count == 3
        assert scheduler.stats.failed_jobs == 1
        assert scheduler.stats.running_jobs == 0

    @pytest.mark.asyncio
    async def test_overlapping_job_skipped(self, scheduler):
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "done"

        first = asyncio.create_task(scheduler.execute_job("job", slow))
        await asyncio.sleep(0)

        with pytest.raises(JobAlreadyRunningError):
            await scheduler.execute_job("job", AsyncMock())

        gate.set()
        assert await first == "done"
        assert scheduler.stats.skipped_jobs == 1

    @pytest.mark.asyncio
    async def test_pushes_metrics_after_each_job(self, sync_service, quota):
        config = SyncConfig(sync_retry_delay=0, pushgateway_url="http://gateway:9091")
        scheduler = SyncScheduler(sync_service, quota, config)

        with patch("subagents.scheduler.push_metrics_async", new_callable=AsyncMock) as mock_push:
            await scheduler.execute_job("job", AsyncMock())

        mock_push.assert_awaited_once_with("http://gateway:9091")

    @pytest.mark.asyncio
    async def test_slow_pushgateway_does_not_stall_event_loop(self, sync_service, quota):
        config = SyncConfig(sync_retry_delay=0, pushgateway_url="http://gateway:9091")
        scheduler = SyncScheduler(sync_service, quota, config)
        gaps = []

        async def ticker():
            last = time.perf_counter()
            while True:
                await asyncio.sleep(0.01)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        def hung_gateway(*args, **kwargs):
            time.sleep(0.5)

        with patch("subagents.metrics.pushadd_to_gateway", side_effect=hung_gateway):
            ticks = asyncio.create_task(ticker())
            await scheduler.execute_job("job", AsyncMock(return_value="ok"))
            ticks.cancel()
            with pytest.raises(asyncio.CancelledError):
                await ticks

        assert len(gaps) > 10
        assert max(gaps) < 0.25


# =============================================================================
# Cycles
# =============================================================================


class TestCycles:
    @pytest.mark.asyncio
    async def test_regular_sync(self, scheduler, sync_service):
        results = await scheduler.run_regular_sync()

        assert len(results) == 2
        sync_service.sync_enabled_repositories.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_check_uses_configured_age(self, scheduler, sync_service):
        await scheduler.run_stale_check()
        sync_service.sync_stale_repositories.assert_awaited_once_with(12)

    @pytest.mark.asyncio
    async def test_cleanup_purges_jobs_and_deliveries(self, scheduler, sync_service):
        assert await scheduler.run_cleanup() == 6
        sync_service.cleanup_old_sync_jobs.assert_awaited_once_with(7)
        sync_service.cleanup_old_webhook_deliveries.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_quota_check_flags_low_callers(self, scheduler, quota):
        quota.update_quota("healthy", rate_limit_headers(remaining=4000))
        quota.update_quota("starved", rate_limit_headers(remaining=0))

        flagged = await scheduler.run_quota_check()

        assert list(flagged) == ["starved"]
        assert flagged["starved"][0].level == QuotaLevel.EXHAUSTED

    @pytest.mark.asyncio
    async def test_force_sync_repository(self, scheduler, sync_service):
        binding = RepositorySyncBinding(
            agent_id="a1", user_id="u1", repository_full_name="acme/agents"
        )

        await scheduler.force_sync_repository(binding)

        sync_service.sync_repository.assert_awaited_once_with(binding, SyncOptions(force=True))

    @pytest.mark.asyncio
    async def test_force_sync_user(self, scheduler, sync_service):
        await scheduler.force_sync_user("u1")
        sync_service.sync_user_repositories.assert_awaited_once_with(
            "u1", SyncOptions(force=True)
        )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        scheduler.start()
        assert scheduler.is_running
        assert {t.get_name() for t in scheduler._tasks.values()} == {
            "scheduler-regular-sync",
            "scheduler-stale-check",
            "scheduler-quota-check",
            "scheduler-cleanup",
        }

        await scheduler.stop()

        assert not scheduler.is_running
