"""Persistence interface for imported agents, sync bindings and sync jobs.

The hosted database lives outside this package. Import and sync code talks to
it only through the AgentStore protocol below; InMemoryAgentStore is the
reference implementation used by the CLI, the API app and the tests.
"""

import copy
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import (
    DomainAgentRecord,
    RepositorySyncBinding,
    SyncJob,
    SyncJobLog,
    WebhookDelivery,
    utcnow,
)

logger = logging.getLogger("subagents.store")

__all__ = [
    "AgentStore",
    "InMemoryAgentStore",
    "StoreError",
]


class StoreError(Exception):
    """Raised when a store operation fails or violates a uniqueness rule."""

    pass


@runtime_checkable
class AgentStore(Protocol):
    """Async persistence boundary used by the importer, sync engine and webhooks."""

    # Agents
    async def create_agent(self, agent: DomainAgentRecord) -> DomainAgentRecord: ...

    async def get_agent(self, agent_id: str) -> DomainAgentRecord | None: ...

    async def get_agent_by_slug(self, slug: str) -> DomainAgentRecord | None: ...

    async def update_agent(self, agent_id: str, **changes: Any) -> DomainAgentRecord: ...

    async def upsert_agent(self, agent: DomainAgentRecord) -> DomainAgentRecord: ...

    # Bindings
    async def create_binding(
        self, binding: RepositorySyncBinding
    ) -> RepositorySyncBinding: ...

    async def get_binding(self, binding_id: str) -> RepositorySyncBinding | None: ...

    async def get_binding_by_agent(
        self, agent_id: str
    ) -> RepositorySyncBinding | None: ...

    async def get_binding_by_full_name(
        self, full_name: str
    ) -> RepositorySyncBinding | None: ...

    async def update_binding(
        self, binding_id: str, **changes: Any
    ) -> RepositorySyncBinding: ...

    async def list_bindings(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
        full_name: str | None = None,
    ) -> list[RepositorySyncBinding]: ...

    async def list_stale_bindings(
        self, cutoff: datetime
    ) -> list[RepositorySyncBinding]: ...

    # Sync jobs
    async def create_sync_job(self, job: SyncJob) -> SyncJob: ...

    async def get_sync_job(self, job_id: str) -> SyncJob | None: ...

    async def update_sync_job(self, job_id: str, **changes: Any) -> SyncJob: ...

    async def append_sync_log(self, job_id: str, entry: SyncJobLog) -> None: ...

    async def list_sync_jobs(self, binding_id: str | None = None) -> list[SyncJob]: ...

    async def purge_sync_jobs(self, cutoff: datetime) -> int: ...

    # Webhooks and quota
    async def record_webhook_delivery(
        self, delivery: WebhookDelivery
    ) -> WebhookDelivery: ...

    async def mark_webhook_processed(
        self, delivery_id: str, error: str | None = None
    ) -> None: ...

    async def purge_webhook_deliveries(self, cutoff: datetime) -> int: ...

    async def save_quota_snapshot(
        self, caller_id: str, snapshot: dict[str, Any]
    ) -> None: ...


class InMemoryAgentStore:
    """Dict-backed AgentStore.

    Single event loop only; no method awaits between reading and writing, so
    operations are atomic with respect to other coroutines. Records are copied
    on the way in and out so callers cannot mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._agents: dict[str, DomainAgentRecord] = {}
        self._bindings: dict[str, RepositorySyncBinding] = {}
        self._jobs: dict[str, SyncJob] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._quota_snapshots: dict[str, dict[str, Any]] = {}

    # --- Agents ---

    async def create_agent(self, agent: DomainAgentRecord) -> DomainAgentRecord:
        if agent.id in self._agents:
            raise StoreError(f"Agent {agent.id} already exists")
        if any(a.slug == agent.slug for a in self._agents.values()):
            raise StoreError(f"Agent slug '{agent.slug}' already exists")
        self._agents[agent.id] = copy.deepcopy(agent)
        return copy.deepcopy(agent)

    async def get_agent(self, agent_id: str) -> DomainAgentRecord | None:
        agent = self._agents.get(agent_id)
        return copy.deepcopy(agent) if agent else None

    async def get_agent_by_slug(self, slug: str) -> DomainAgentRecord | None:
        for agent in self._agents.values():
            if agent.slug == slug:
                return copy.deepcopy(agent)
        return None

    async def update_agent(self, agent_id: str, **changes: Any) -> DomainAgentRecord:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise StoreError(f"Agent {agent_id} not found")
        updated = replace(agent, **changes, updated_at=utcnow())
        self._agents[agent_id] = updated
        return copy.deepcopy(updated)

    async def upsert_agent(self, agent: DomainAgentRecord) -> DomainAgentRecord:
        """Insert, or replace the record with the same slug keeping its id."""
        for existing in self._agents.values():
            if existing.slug == agent.slug:
                merged = replace(
                    agent,
                    id=existing.id,
                    created_at=existing.created_at,
                    updated_at=utcnow(),
                )
                self._agents[existing.id] = merged
                return copy.deepcopy(merged)
        return await self.create_agent(agent)

    async def list_agents(self) -> list[DomainAgentRecord]:
        return [copy.deepcopy(a) for a in self._agents.values()]

    # --- Bindings ---

    async def create_binding(
        self, binding: RepositorySyncBinding
    ) -> RepositorySyncBinding:
        if any(b.agent_id == binding.agent_id for b in self._bindings.values()):
            raise StoreError(f"Agent {binding.agent_id} already has a sync binding")
        self._bindings[binding.id] = copy.deepcopy(binding)
        return copy.deepcopy(binding)

    async def get_binding(self, binding_id: str) -> RepositorySyncBinding | None:
        binding = self._bindings.get(binding_id)
        return copy.deepcopy(binding) if binding else None

    async def get_binding_by_agent(self, agent_id: str) -> RepositorySyncBinding | None:
        for binding in self._bindings.values():
            if binding.agent_id == agent_id:
                return copy.deepcopy(binding)
        return None

    async def get_binding_by_full_name(
        self, full_name: str
    ) -> RepositorySyncBinding | None:
        """First binding for a repository, preferring enabled ones."""
        matches = [
            b
            for b in self._bindings.values()
            if b.repository_full_name.lower() == full_name.lower()
        ]
        matches.sort(key=lambda b: not b.sync_enabled)
        return copy.deepcopy(matches[0]) if matches else None

    async def update_binding(
        self, binding_id: str, **changes: Any
    ) -> RepositorySyncBinding:
        binding = self._bindings.get(binding_id)
        if binding is None:
            raise StoreError(f"Sync binding {binding_id} not found")
        updated = replace(binding, **changes, updated_at=utcnow())
        self._bindings[binding_id] = updated
        return copy.deepcopy(updated)

    async def list_bindings(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
        full_name: str | None = None,
    ) -> list[RepositorySyncBinding]:
        return [
            copy.deepcopy(b)
            for b in self._bindings.values()
            if (user_id is None or b.user_id == user_id)
            and (enabled is None or b.sync_enabled == enabled)
            and (
                full_name is None
                or b.repository_full_name.lower() == full_name.lower()
            )
        ]

    async def list_stale_bindings(self, cutoff: datetime) -> list[RepositorySyncBinding]:
        """Enabled bindings never synced or last synced before cutoff."""
        return [
            copy.deepcopy(b)
            for b in self._bindings.values()
            if b.sync_enabled and (b.last_sync_at is None or b.last_sync_at < cutoff)
        ]

    # --- Sync jobs ---

    async def create_sync_job(self, job: SyncJob) -> SyncJob:
        self._jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get_sync_job(self, job_id: str) -> SyncJob | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def update_sync_job(self, job_id: str, **changes: Any) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise StoreError(f"Sync job {job_id} not found")
        self._check_open(job)
        updated = replace(job, **changes)
        self._jobs[job_id] = updated
        return copy.deepcopy(updated)

    async def append_sync_log(self, job_id: str, entry: SyncJobLog) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise StoreError(f"Sync job {job_id} not found")
        self._check_open(job)
        job.logs.append(copy.deepcopy(entry))

    @staticmethod
    def _check_open(job: SyncJob) -> None:
        if job.status.is_terminal:
            raise StoreError(
                f"Sync job {job.id} is {job.status.value}; terminal jobs are read-only"
            )

    async def list_sync_jobs(self, binding_id: str | None = None) -> list[SyncJob]:
        jobs = [
            copy.deepcopy(j)
            for j in self._jobs.values()
            if binding_id is None or j.binding_id == binding_id
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    async def purge_sync_jobs(self, cutoff: datetime) -> int:
        """Delete completed and failed jobs created before cutoff.

        Pending and running jobs are kept regardless of age. Returns the count
        removed.
        """
        doomed = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.created_at < cutoff
        ]
        for job_id in doomed:
            del self._jobs[job_id]
        if doomed:
            logger.info("sync_jobs_purged", extra={"count": len(doomed)})
        return len(doomed)

    # --- Webhook deliveries ---

    async def record_webhook_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self._deliveries[delivery.id] = copy.deepcopy(delivery)
        return copy.deepcopy(delivery)

    async def mark_webhook_processed(
        self, delivery_id: str, error: str | None = None
    ) -> None:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None:
            raise StoreError(f"Webhook delivery {delivery_id} not found")
        delivery.processed = error is None
        delivery.error = error
        delivery.processed_at = utcnow()

    async def list_webhook_deliveries(self) -> list[WebhookDelivery]:
        return [copy.deepcopy(d) for d in self._deliveries.values()]

    async def purge_webhook_deliveries(self, cutoff: datetime) -> int:
        """Delete deliveries received before cutoff. Returns the count removed."""
        doomed = [
            delivery_id
            for delivery_id, delivery in self._deliveries.items()
            if delivery.received_at < cutoff
        ]
        for delivery_id in doomed:
            del self._deliveries[delivery_id]
        if doomed:
            logger.info("webhook_deliveries_purged", extra={"count": len(doomed)})
        return len(doomed)

    # --- Quota snapshots ---

    async def save_quota_snapshot(self, caller_id: str, snapshot: dict[str, Any]) -> None:
        self._quota_snapshots[caller_id] = copy.deepcopy(snapshot)

    async def get_quota_snapshot(self, caller_id: str) -> dict[str, Any] | None:
        snapshot = self._quota_snapshots.get(caller_id)
        return copy.deepcopy(snapshot) if snapshot else None

