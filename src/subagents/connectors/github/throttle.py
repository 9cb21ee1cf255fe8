"""Priority queue that serializes GitHub calls behind the quota manager.

All throttled requests go through one queue drained by one task. Items are
ordered by priority (highest first), then by arrival. When the quota for an
item's resource class is exhausted the item goes back to the front and the
drain loop sleeps until reset (capped), so nothing is ever dropped.
"""

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ...metrics import throttle_queue_size
from ...models import utcnow
from .quota import QuotaManager, ResourceClass

logger = logging.getLogger("subagents.github.throttle")

__all__ = ["QueueClearedError", "RequestThrottler"]


class QueueClearedError(Exception):
    """Raised to callers whose pending request was removed by clear_queue()."""

    pass


@dataclass(order=True)
class _QueueItem:
    sort_key: tuple[int, int]
    caller_id: str = field(compare=False)
    resource: str = field(compare=False)
    request: Callable[[], Awaitable[Any]] = field(compare=False)
    future: asyncio.Future = field(compare=False)
    priority: int = field(compare=False, default=5)
    enqueued_at: Any = field(compare=False, default_factory=utcnow)


class RequestThrottler:
    """Sequential, quota-aware executor for GitHub requests.

    Example:
        >>> throttler = RequestThrottler(quota_manager)
        >>> repo = await throttler.throttled_request(
        ...     "user-1", lambda: client.get_repository("acme", "tools"), priority=8
        ... )
    """

    DEFAULT_PRIORITY = 5
    DEFAULT_TIMEOUT = 30.0
    REQUEST_DELAY = 0.1  # seconds between dequeued items
    MAX_WAIT = 60.0  # cap on a single quota wait

    def __init__(
        self,
        quota_manager: QuotaManager,
        request_delay: float = REQUEST_DELAY,
        max_wait: float = MAX_WAIT,
    ) -> None:
        self.quota_manager = quota_manager
        self.request_delay = request_delay
        self.max_wait = max_wait
        self._heap: list[_QueueItem] = []
        self._counter = itertools.count()
        self._drain_task: asyncio.Task | None = None
        self._processing = False

    async def throttled_request(
        self,
        caller_id: str,
        request: Callable[[], Awaitable[Any]],
        resource: str = ResourceClass.CORE.value,
        priority: int = DEFAULT_PRIORITY,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> Any:
        """Queue a request and wait for its result.

        Args:
            caller_id: Quota owner the request counts against
            request: Zero-argument coroutine factory performing the call
            resource: Resource class checked before the call
            priority: Higher runs first (default 5)
            timeout: Seconds to wait for the result, None for no limit

        Returns:
            Whatever the request returns.

        Raises:
            asyncio.TimeoutError: When the result does not arrive in time
            QueueClearedError: When clear_queue() removed the item
            Exception: Whatever the request itself raised
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        item = _QueueItem(
            sort_key=(-priority, next(self._counter)),
            caller_id=caller_id,
            resource=resource,
            request=request,
            future=future,
            priority=priority,
        )
        heapq.heappush(self._heap, item)
        throttle_queue_size.set(len(self._heap))
        self._ensure_draining()

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            # Timed-out items must not run later
            if not future.done():
                future.cancel()
            raise

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        self._processing = True
        try:
            while self._heap:
                item = heapq.heappop(self._heap)
                throttle_queue_size.set(len(self._heap))

                if item.future.done():
                    # Cancelled by timeout or cleared while queued
                    continue

                if not self.quota_manager.can_make_request(item.caller_id, item.resource):
                    heapq.heappush(self._heap, item)
                    throttle_queue_size.set(len(self._heap))
                    wait = min(
                        self.quota_manager.get_wait_time(item.caller_id, item.resource),
                        self.max_wait,
                    )
                    logger.info(
                        "throttle_waiting_for_quota",
                        extra={
                            "caller_id": item.caller_id,
                            "resource": item.resource,
                            "wait_seconds": round(wait, 1),
                            "queued": len(self._heap),
                        },
                    )
                    await asyncio.sleep(max(wait, self.request_delay))
                    continue

                try:
                    result = await item.request()
                except Exception as e:
                    if not item.future.done():
                        item.future.set_exception(e)
                else:
                    if not item.future.done():
                        item.future.set_result(result)

                if self._heap:
                    await asyncio.sleep(self.request_delay)
        finally:
            self._processing = False

    def get_queue_status(self) -> dict[str, Any]:
        pending = [i for i in self._heap if not i.future.done()]
        by_priority: dict[int, int] = {}
        for item in pending:
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
        oldest = min((i.enqueued_at for i in pending), default=None)
        return {
            "queue_length": len(pending),
            "processing": self._processing,
            "by_priority": by_priority,
            "oldest_request": oldest.isoformat() if oldest else None,
        }

    def clear_queue(self) -> int:
        """Reject every pending request with QueueClearedError.

        Returns:
            Number of requests rejected.
        """
        cleared = 0
        while self._heap:
            item = heapq.heappop(self._heap)
            if not item.future.done():
                item.future.set_exception(QueueClearedError("Queue cleared"))
                cleared += 1
        throttle_queue_size.set(0)
        if cleared:
            logger.info("throttle_queue_cleared", extra={"cleared": cleared})
        return cleared

    async def close(self) -> None:
        """Reject pending work and stop the drain task."""
        self.clear_queue()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
