"""Periodic sync scheduling.

SyncScheduler runs four asyncio loops, each on its own interval:

    regular-sync  every sync_interval             sync all enabled bindings
    stale-check   every scheduler_stale_check_interval   sync bindings older than 24 h
    quota-check   every scheduler_quota_check_interval   log critical/exhausted callers
    cleanup       every scheduler_cleanup_interval       purge old jobs and deliveries

Every cycle is also an awaitable run_* method, so the CLI and tests can drive
one cycle without starting the loops. Jobs are retried with tenacity and
tracked in SchedulerStats.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_fixed,
)

from .config import SyncConfig, get_config
from .connectors.github.quota import QuotaLevel, QuotaManager, QuotaStatus
from .connectors.github.sync import GitHubSyncService, SyncOptions, SyncResult
from .metrics import push_metrics_async
from .models import RepositorySyncBinding, utcnow

logger = logging.getLogger("subagents.scheduler")

__all__ = ["JobAlreadyRunningError", "SchedulerStats", "SyncScheduler"]

T = TypeVar("T")

# Number of recent job durations kept for the running average
JOB_TIME_WINDOW = 100


class JobAlreadyRunningError(Exception):
    """A job with the same name is still in flight."""

    pass


@dataclass
class SchedulerStats:
    """Counters for jobs run through the scheduler."""

    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    skipped_jobs: int = 0
    running_jobs: int = 0
    last_run: datetime | None = None
    average_job_time_ms: float = 0.0
    _job_times: deque = field(
        default_factory=lambda: deque(maxlen=JOB_TIME_WINDOW), repr=False
    )

    def record_duration(self, duration_ms: float) -> None:
        self._job_times.append(duration_ms)
        self.average_job_time_ms = sum(self._job_times) / len(self._job_times)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_jobs": self.total_jobs,
            "successful_jobs": self.successful_jobs,
            "failed_jobs": self.failed_jobs,
            "skipped_jobs": self.skipped_jobs,
            "running_jobs": self.running_jobs,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "average_job_time_ms": round(self.average_job_time_ms, 2),
        }


class SyncScheduler:
    """Drives scheduled sync, stale checks, quota checks and job cleanup.

    Attributes:
        sync_service: Engine that performs the syncs
        quota_manager: Source of per-caller quota levels for quota checks
        config: Intervals, retry policy and pushgateway address
        stats: SchedulerStats for every job run through execute_job()
    """

    def __init__(
        self,
        sync_service: GitHubSyncService,
        quota_manager: QuotaManager,
        config: SyncConfig | None = None,
    ) -> None:
        self.sync_service = sync_service
        self.quota_manager = quota_manager
        self.config = config or get_config()
        self.stats = SchedulerStats()
        self._running: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

    # --- Lifecycle ---

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start the periodic loops on the running event loop."""
        if self._tasks:
            return
        schedule = {
            "regular-sync": (self.config.sync_interval, self.run_regular_sync),
            "stale-check": (
                self.config.scheduler_stale_check_interval,
                self.run_stale_check,
            ),
            "quota-check": (
                self.config.scheduler_quota_check_interval,
                self.run_quota_check,
            ),
            "cleanup": (self.config.scheduler_cleanup_interval, self.run_cleanup),
        }
        for name, (interval, job) in schedule.items():
            self._tasks[name] = asyncio.create_task(
                self._loop(name, interval, job), name=f"scheduler-{name}"
            )
        logger.info(
            "scheduler_started",
            extra={name: interval for name, (interval, _) in schedule.items()},
        )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped", extra={"stats": self.stats.to_dict()})

    async def _loop(
        self, name: str, interval: float, job: Callable[[], Awaitable[Any]]
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except JobAlreadyRunningError:
                pass
            except Exception as e:
                # execute_job already logged and counted the failure
                logger.debug("scheduled_job_error", extra={"job": name, "error": str(e)})

    # --- Job execution ---

    async def execute_job(self, name: str, job: Callable[[], Awaitable[T]]) -> T:
        """Run job with retries, recording stats.

        Raises:
            JobAlreadyRunningError: name is already in flight
            Exception: The job's last error once retries are exhausted
        """
        if name in self._running:
            self.stats.skipped_jobs += 1
            logger.info("scheduler_job_already_running", extra={"job": name})
            raise JobAlreadyRunningError(f"Job {name} already running")

        self._running.add(name)
        self.stats.running_jobs += 1
        self.stats.total_jobs += 1
        start = time.perf_counter()
        try:
            result = await self._with_retry(name, job)
            self.stats.successful_jobs += 1
            logger.info("scheduler_job_completed", extra={"job": name})
            return result
        except Exception as e:
            self.stats.failed_jobs += 1
            logger.error(
                "scheduler_job_failed",
                extra={"job": name, "error": str(e), "error_type": type(e).__name__},
            )
            raise
        finally:
            self.stats.record_duration((time.perf_counter() - start) * 1000)
            self.stats.last_run = utcnow()
            self.stats.running_jobs -= 1
            self._running.discard(name)
            await push_metrics_async(self.config.pushgateway_url)

    async def _with_retry(self, name: str, job: Callable[[], Awaitable[T]]) -> T:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "scheduler_job_retry",
                extra={
                    "job": name,
                    "attempt": retry_state.attempt_number,
                    "error": str(retry_state.outcome.exception()),
                    "retry_delay_seconds": self.config.sync_retry_delay,
                },
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.sync_max_retries),
            wait=wait_fixed(self.config.sync_retry_delay),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                return await job()

    # --- Cycles ---

    async def run_regular_sync(self) -> list[SyncResult]:
        results = await self.execute_job(
            "regular-sync", self.sync_service.sync_enabled_repositories
        )
        _log_batch("regular_sync_cycle", results)
        return results

    async def run_stale_check(self) -> list[SyncResult]:
        async def job() -> list[SyncResult]:
            return await self.sync_service.sync_stale_repositories(
                self.config.sync_stale_max_age_hours
            )

        results = await self.execute_job("stale-check", job)
        _log_batch("stale_check_cycle", results)
        return results

    async def run_quota_check(self) -> dict[str, list[QuotaStatus]]:
        """Callers with any resource class at critical or exhausted."""

        async def job() -> dict[str, list[QuotaStatus]]:
            flagged: dict[str, list[QuotaStatus]] = {}
            for caller_id in self.quota_manager.known_callers():
                statuses = self.quota_manager.get_all_quota_status(caller_id)
                critical = [
                    s
                    for s in statuses.values()
                    if s.level in (QuotaLevel.CRITICAL, QuotaLevel.EXHAUSTED)
                ]
                if critical:
                    flagged[caller_id] = critical
                    logger.warning(
                        "quota_critical",
                        extra={
                            "caller_id": caller_id,
                            "resources": [s.to_dict() for s in critical],
                        },
                    )
            return flagged

        return await self.execute_job("quota-check", job)

    async def run_cleanup(self) -> int:
        """Purge expired sync jobs and webhook deliveries. Returns the total removed."""

        async def job() -> int:
            jobs = await self.sync_service.cleanup_old_sync_jobs(
                self.config.sync_job_retention_days
            )
            deliveries = await self.sync_service.cleanup_old_webhook_deliveries(
                self.config.webhook_retention_days
            )
            logger.info(
                "cleanup_cycle",
                extra={"sync_jobs_removed": jobs, "deliveries_removed": deliveries},
            )
            return jobs + deliveries

        return await self.execute_job("cleanup", job)

    async def force_sync_repository(self, binding: RepositorySyncBinding) -> SyncResult:
        """Immediate sync that bypasses change detection."""

        async def job() -> SyncResult:
            return await self.sync_service.sync_repository(
                binding, SyncOptions(force=True)
            )

        return await self.execute_job(f"force-sync-{binding.id}", job)

    async def force_sync_user(self, user_id: str) -> list[SyncResult]:
        async def job() -> list[SyncResult]:
            return await self.sync_service.sync_user_repositories(
                user_id, SyncOptions(force=True)
            )

        return await self.execute_job(f"force-sync-user-{user_id}", job)


def _log_batch(event: str, results: list[SyncResult]) -> None:
    succeeded = sum(1 for r in results if r.success)
    logger.info(
        event,
        extra={
            "repositories": len(results),
            "successful": succeeded,
            "failed": len(results) - succeeded,
        },
    )
