"""GitHub API quota tracking per caller and resource class.

Quota state is refreshed from the x-ratelimit-* response headers after every
API call. The x-ratelimit-resource header names the class a response counted
against; only that class is updated. The /rate_limit endpoint reports every
class at once and refreshes them all with their own values.

Reference: https://docs.github.com/en/rest/rate-limit/rate-limit
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from ...metrics import quota_alerts_total, quota_remaining
from ...models import utcnow

logger = logging.getLogger("subagents.github.quota")

__all__ = [
    "AlertType",
    "BulkRequestPlan",
    "QuotaAlert",
    "QuotaLevel",
    "QuotaManager",
    "QuotaStatus",
    "ResourceClass",
    "ResourceQuota",
]


class ResourceClass(str, Enum):
    """Rate-limited resource buckets tracked independently by GitHub."""

    CORE = "core"
    SEARCH = "search"
    GRAPHQL = "graphql"
    INTEGRATION_MANIFEST = "integration_manifest"
    SOURCE_IMPORT = "source_import"


class QuotaLevel(str, Enum):
    """Health of a resource class, ordered from best to worst."""

    UNKNOWN = "unknown"
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


class AlertType(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


@dataclass
class ResourceQuota:
    """limit/remaining/reset for one resource class."""

    limit: int
    remaining: int
    reset: datetime
    used: int = 0

    @property
    def remaining_ratio(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset.isoformat(),
            "used": self.used,
        }


@dataclass
class QuotaAlert:
    type: AlertType
    caller_id: str
    resource: str
    message: str
    quota: ResourceQuota
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class QuotaStatus:
    """Snapshot of one resource class for status endpoints."""

    resource: str
    level: QuotaLevel
    limit: int | None = None
    remaining: int | None = None
    reset: datetime | None = None
    percentage_remaining: float | None = None
    wait_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "level": self.level.value,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset.isoformat() if self.reset else None,
            "percentage_remaining": self.percentage_remaining,
            "wait_seconds": self.wait_seconds,
        }


@dataclass
class BulkRequestPlan:
    """Schedule for N requests spread across the time left until reset.

    When can_execute is False the schedule is empty and wait_time gives the
    seconds until the quota resets.
    """

    can_execute: bool
    schedule: list[datetime] = field(default_factory=list)
    wait_time: float = 0.0
    interval: float = 0.0


@dataclass
class _CallerState:
    resources: dict[str, ResourceQuota] = field(default_factory=dict)
    levels: dict[str, QuotaLevel] = field(default_factory=dict)
    # (timestamp, used) samples for exhaustion prediction
    samples: dict[str, list[tuple[datetime, int]]] = field(default_factory=dict)
    last_updated: datetime | None = None


def _header_map(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names; httpx.Headers and plain dicts both work."""
    return {str(k).lower(): str(v) for k, v in headers.items()}


class QuotaManager:
    """Caches GitHub quota state per caller and raises threshold alerts.

    Alert handlers run synchronously inside update_quota(); an exception from
    one handler is logged and the remaining handlers still run.

    Example:
        >>> manager = QuotaManager()
        >>> manager.on_quota_alert(lambda alert: print(alert.message))
        >>> manager.update_quota("user-1", response.headers)
        >>> manager.can_make_request("user-1")
        True
    """

    WARNING_THRESHOLD = 0.10
    CRITICAL_THRESHOLD = 0.05
    MAX_SAMPLES = 50

    def __init__(
        self,
        warning_threshold: float = WARNING_THRESHOLD,
        critical_threshold: float = CRITICAL_THRESHOLD,
        store: Any = None,
        persist_interval: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._store = store
        self._persist_interval = persist_interval
        self._clock = clock
        self._callers: dict[str, _CallerState] = {}
        self._alert_handlers: list[Callable[[QuotaAlert], None]] = []
        self._persist_task: asyncio.Task | None = None

    # --- Updates ---

    def update_quota(
        self, caller_id: str, headers: Mapping[str, str]
    ) -> ResourceQuota | None:
        """Refresh one resource class from response headers.

        Args:
            caller_id: Caller identity (user id or token owner)
            headers: Response headers carrying x-ratelimit-*

        Returns:
            The updated ResourceQuota, or None when the headers carry no
            rate limit information.
        """
        h = _header_map(headers)
        try:
            limit = int(h["x-ratelimit-limit"])
            remaining = int(h["x-ratelimit-remaining"])
            reset_epoch = float(h["x-ratelimit-reset"])
        except (KeyError, ValueError):
            return None

        resource = h.get("x-ratelimit-resource") or ResourceClass.CORE.value
        used_raw = h.get("x-ratelimit-used")
        used = int(used_raw) if used_raw and used_raw.isdigit() else max(0, limit - remaining)

        quota = ResourceQuota(
            limit=limit,
            remaining=remaining,
            reset=datetime.fromtimestamp(reset_epoch, tz=timezone.utc),
            used=used,
        )
        self._apply(caller_id, resource, quota)
        return quota

    def update_from_rate_limit(self, caller_id: str, payload: dict[str, Any]) -> None:
        """Refresh every resource class from a /rate_limit response body."""
        resources = payload.get("resources") or {}
        for resource, data in resources.items():
            try:
                quota = ResourceQuota(
                    limit=int(data["limit"]),
                    remaining=int(data["remaining"]),
                    reset=datetime.fromtimestamp(float(data["reset"]), tz=timezone.utc),
                    used=int(data.get("used", int(data["limit"]) - int(data["remaining"]))),
                )
            except (KeyError, TypeError, ValueError):
                logger.debug(
                    "rate_limit_entry_skipped",
                    extra={"resource": resource, "caller_id": caller_id},
                )
                continue
            self._apply(caller_id, resource, quota)

    def _apply(self, caller_id: str, resource: str, quota: ResourceQuota) -> None:
        state = self._callers.setdefault(caller_id, _CallerState())
        now = self._clock()
        state.resources[resource] = quota
        state.last_updated = now

        samples = state.samples.setdefault(resource, [])
        # A new window starts when the reset moves; older samples no longer apply
        if samples and quota.used < samples[-1][1]:
            samples.clear()
        samples.append((now, quota.used))
        del samples[: -self.MAX_SAMPLES]

        quota_remaining.labels(resource=resource).set(quota.remaining)

        previous = state.levels.get(resource, QuotaLevel.UNKNOWN)
        level = self._level_for(quota)
        state.levels[resource] = level
        if level != previous and level in (
            QuotaLevel.WARNING,
            QuotaLevel.CRITICAL,
            QuotaLevel.EXHAUSTED,
        ):
            self._emit_alert(caller_id, resource, quota, AlertType(level.value))

    def _level_for(self, quota: ResourceQuota) -> QuotaLevel:
        if quota.remaining <= 0:
            return QuotaLevel.EXHAUSTED
        ratio = quota.remaining_ratio
        if ratio <= self.critical_threshold:
            return QuotaLevel.CRITICAL
        if ratio <= self.warning_threshold:
            return QuotaLevel.WARNING
        return QuotaLevel.OK

    # --- Alerts ---

    def on_quota_alert(self, handler: Callable[[QuotaAlert], None]) -> None:
        """Register an alert handler. Handlers run in registration order."""
        self._alert_handlers.append(handler)

    def remove_quota_alert_handler(self, handler: Callable[[QuotaAlert], None]) -> None:
        if handler in self._alert_handlers:
            self._alert_handlers.remove(handler)

    def _emit_alert(
        self, caller_id: str, resource: str, quota: ResourceQuota, alert_type: AlertType
    ) -> None:
        minutes = max(0, math.ceil((quota.reset - self._clock()).total_seconds() / 60))
        percent = round(quota.remaining_ratio * 100, 1)
        if alert_type == AlertType.EXHAUSTED:
            message = f"GitHub {resource} quota exhausted. Resets in {minutes} minutes."
        elif alert_type == AlertType.CRITICAL:
            message = (
                f"GitHub {resource} quota critically low: "
                f"{quota.remaining}/{quota.limit} ({percent}%)"
            )
        else:
            message = (
                f"GitHub {resource} quota low: {quota.remaining}/{quota.limit} ({percent}%)"
            )

        alert = QuotaAlert(
            type=alert_type,
            caller_id=caller_id,
            resource=resource,
            message=message,
            quota=quota,
        )
        quota_alerts_total.labels(resource=resource, alert_type=alert_type.value).inc()
        logger.warning(
            "quota_alert",
            extra={
                "caller_id": caller_id,
                "resource": resource,
                "alert_type": alert_type.value,
                "remaining": quota.remaining,
                "limit": quota.limit,
            },
        )

        for handler in list(self._alert_handlers):
            try:
                handler(alert)
            except Exception as e:
                logger.error(
                    "quota_alert_handler_failed",
                    extra={
                        "handler": getattr(handler, "__name__", repr(handler)),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )

    # --- Queries ---

    def get_quota(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> ResourceQuota | None:
        state = self._callers.get(caller_id)
        if state is None:
            return None
        return state.resources.get(_resource_name(resource))

    def can_make_request(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> bool:
        """Pre-flight check. Unknown quota is assumed available.

        An exhausted class becomes available again once its reset time passes.
        """
        quota = self.get_quota(caller_id, resource)
        if quota is None:
            return True
        if quota.remaining > 0:
            return True
        return self._clock() >= quota.reset

    def get_wait_time(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> float:
        """Seconds to wait before a request can be made (0 when available)."""
        if self.can_make_request(caller_id, resource):
            return 0.0
        quota = self.get_quota(caller_id, resource)
        return max(0.0, (quota.reset - self._clock()).total_seconds())

    def get_quota_status(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> QuotaStatus:
        resource = _resource_name(resource)
        quota = self.get_quota(caller_id, resource)
        if quota is None:
            return QuotaStatus(resource=resource, level=QuotaLevel.UNKNOWN)
        return QuotaStatus(
            resource=resource,
            level=self._level_for(quota),
            limit=quota.limit,
            remaining=quota.remaining,
            reset=quota.reset,
            percentage_remaining=round(quota.remaining_ratio * 100, 2),
            wait_seconds=self.get_wait_time(caller_id, resource),
        )

    def get_all_quota_status(self, caller_id: str) -> dict[str, QuotaStatus]:
        state = self._callers.get(caller_id)
        if state is None:
            return {}
        return {
            resource: self.get_quota_status(caller_id, resource)
            for resource in state.resources
        }

    def known_callers(self) -> list[str]:
        return list(self._callers)

    def get_optimal_request_time(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> datetime:
        """When the next request should go out to avoid running dry.

        Above the warning threshold: now. Below it: the remaining requests are
        spread evenly over the time left until reset.
        """
        now = self._clock()
        quota = self.get_quota(caller_id, resource)
        if quota is None:
            return now
        if quota.remaining <= 0:
            return max(now, quota.reset)
        if quota.remaining > quota.limit * self.warning_threshold:
            return now
        until_reset = max(0.0, (quota.reset - now).total_seconds())
        return now + timedelta(seconds=until_reset / quota.remaining)

    def plan_bulk_requests(
        self,
        caller_id: str,
        request_count: int,
        resource: str = ResourceClass.CORE.value,
    ) -> BulkRequestPlan:
        """Spread request_count calls across the time left until reset.

        Rejects up front, with the wait until reset, when the remaining quota
        cannot cover the whole batch. Requests are at least one second apart.
        """
        now = self._clock()
        if request_count <= 0:
            return BulkRequestPlan(can_execute=True)

        quota = self.get_quota(caller_id, resource)
        if quota is None:
            interval = 1.0
            schedule = [now + timedelta(seconds=i * interval) for i in range(request_count)]
            return BulkRequestPlan(can_execute=True, schedule=schedule, interval=interval)

        if quota.remaining < request_count:
            wait = max(0.0, (quota.reset - now).total_seconds())
            return BulkRequestPlan(can_execute=False, wait_time=wait)

        until_reset = max(0.0, (quota.reset - now).total_seconds())
        interval = max(1.0, until_reset / request_count)
        schedule = [now + timedelta(seconds=i * interval) for i in range(request_count)]
        return BulkRequestPlan(can_execute=True, schedule=schedule, interval=interval)

    def predict_exhaustion(
        self, caller_id: str, resource: str = ResourceClass.CORE.value
    ) -> datetime | None:
        """Estimate when the class runs out at the observed usage rate.

        Returns None when there is not enough history, usage is flat, or the
        quota would reset before running out.
        """
        state = self._callers.get(caller_id)
        if state is None:
            return None
        resource = _resource_name(resource)
        quota = state.resources.get(resource)
        samples = state.samples.get(resource) or []
        if quota is None or len(samples) < 2:
            return None

        (t0, used0), (t1, used1) = samples[0], samples[-1]
        elapsed = (t1 - t0).total_seconds()
        consumed = used1 - used0
        if elapsed <= 0 or consumed <= 0:
            return None

        rate = consumed / elapsed
        exhausted_at = t1 + timedelta(seconds=quota.remaining / rate)
        if exhausted_at >= quota.reset:
            return None
        return exhausted_at

    def set_thresholds(self, warning: float, critical: float) -> None:
        if not 0 < critical < warning < 1:
            raise ValueError(
                f"Thresholds must satisfy 0 < critical < warning < 1 "
                f"(got critical={critical}, warning={warning})"
            )
        self.warning_threshold = warning
        self.critical_threshold = critical

    # --- Persistence ---

    def snapshot(self, caller_id: str) -> dict[str, Any]:
        state = self._callers.get(caller_id)
        if state is None:
            return {}
        return {
            "caller_id": caller_id,
            "last_updated": state.last_updated.isoformat() if state.last_updated else None,
            "resources": {name: q.to_dict() for name, q in state.resources.items()},
        }

    async def persist_quota(self) -> int:
        """Write one snapshot per caller to the store. Returns the count written.

        Persistence is for observability only; failures are logged.
        """
        if self._store is None:
            return 0
        written = 0
        for caller_id in list(self._callers):
            try:
                await self._store.save_quota_snapshot(caller_id, self.snapshot(caller_id))
                written += 1
            except Exception as e:
                logger.warning(
                    "quota_persist_failed",
                    extra={"caller_id": caller_id, "error": str(e)},
                )
        return written

    def start_persistence(self) -> None:
        """Start the periodic snapshot task on the running loop."""
        if self._store is None or self._persist_task is not None:
            return
        self._persist_task = asyncio.get_running_loop().create_task(self._persist_loop())

    async def stop_persistence(self) -> None:
        if self._persist_task is None:
            return
        self._persist_task.cancel()
        try:
            await self._persist_task
        except asyncio.CancelledError:
            pass
        self._persist_task = None
        await self.persist_quota()

    async def _persist_loop(self) -> None:
        while True:
            await asyncio.sleep(self._persist_interval)
            await self.persist_quota()


def _resource_name(resource: str | ResourceClass) -> str:
    return resource.value if isinstance(resource, ResourceClass) else resource
