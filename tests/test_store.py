"""Unit tests for InMemoryAgentStore."""

from datetime import timedelta

import pytest

from subagents.models import (
    LogLevel,
    SyncJob,
    SyncJobLog,
    SyncJobStatus,
    WebhookDelivery,
    utcnow,
)
from subagents.store import AgentStore, InMemoryAgentStore, StoreError


def test_satisfies_protocol(store):
    assert isinstance(store, AgentStore)


# =============================================================================
# Agents
# =============================================================================


class TestAgents:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store, make_agent):
        agent = await store.create_agent(make_agent())

        assert (await store.get_agent(agent.id)).slug == agent.slug
        assert (await store.get_agent_by_slug(agent.slug)).id == agent.id
        assert await store.get_agent("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_slug_rejected(self, store, make_agent):
        await store.create_agent(make_agent())
        with pytest.raises(StoreError, match="slug"):
            await store.create_agent(make_agent())

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store, make_agent):
        agent = await store.create_agent(make_agent())
        agent.tags.append("mutated")

        assert "mutated" not in (await store.get_agent(agent.id)).tags

    @pytest.mark.asyncio
    async def test_update(self, store, make_agent):
        agent = await store.create_agent(make_agent())

        updated = await store.update_agent(agent.id, github_stars=99)

        assert updated.github_stars == 99
        assert updated.updated_at >= agent.updated_at
        with pytest.raises(StoreError):
            await store.update_agent("missing", github_stars=1)

    @pytest.mark.asyncio
    async def test_upsert_keeps_id(self, store, make_agent):
        first = await store.upsert_agent(make_agent(description="v1"))
        second = await store.upsert_agent(make_agent(description="v2"))

        assert second.id == first.id
        assert second.description == "v2"
        assert len(await store.list_agents()) == 1


# =============================================================================
# Bindings
# =============================================================================


class TestBindings:
    @pytest.mark.asyncio
    async def test_one_binding_per_agent(self, store, make_binding):
        await store.create_binding(make_binding("agent-1"))
        with pytest.raises(StoreError, match="already has a sync binding"):
            await store.create_binding(make_binding("agent-1"))

    @pytest.mark.asyncio
    async def test_lookup_by_full_name_prefers_enabled(self, store, make_binding):
        await store.create_binding(make_binding("a1", sync_enabled=False))
        enabled = await store.create_binding(make_binding("a2"))

        found = await store.get_binding_by_full_name("ACME/Agents")

        assert found.id == enabled.id

    @pytest.mark.asyncio
    async def test_list_filters(self, store, make_binding):
        await store.create_binding(make_binding("a1"))
        await store.create_binding(make_binding("a2", user_id="user-2"))
        await store.create_binding(
            make_binding("a3", sync_enabled=False, repository_full_name="acme/other")
        )

        assert len(await store.list_bindings()) == 3
        assert len(await store.list_bindings(user_id="user-1")) == 2
        assert len(await store.list_bindings(enabled=True)) == 2
        assert [b.agent_id for b in await store.list_bindings(full_name="acme/other")] == [
            "a3"
        ]

    @pytest.mark.asyncio
    async def test_stale_bindings(self, store, make_binding):
        now = utcnow()
        await store.create_binding(make_binding("never"))
        await store.create_binding(make_binding("old", last_sync_at=now - timedelta(days=2)))
        await store.create_binding(make_binding("fresh", last_sync_at=now))
        await store.create_binding(make_binding("off", sync_enabled=False))

        stale = await store.list_stale_bindings(now - timedelta(hours=24))

        assert sorted(b.agent_id for b in stale) == ["never", "old"]


# =============================================================================
# Sync jobs and deliveries
# =============================================================================


class TestSyncJobs:
    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store):
        job = await store.create_sync_job(SyncJob(binding_id="b1"))
        await store.update_sync_job(job.id, status=SyncJobStatus.FAILED, error="boom")

        with pytest.raises(StoreError, match="terminal"):
            await store.update_sync_job(job.id, status=SyncJobStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_terminal_job_is_read_only(self, store):
        job = await store.create_sync_job(SyncJob(binding_id="b1"))
        await store.update_sync_job(
            job.id, status=SyncJobStatus.COMPLETED, progress=100, result={"success": True}
        )

        with pytest.raises(StoreError, match="read-only"):
            await store.update_sync_job(job.id, progress=50)
        with pytest.raises(StoreError, match="read-only"):
            await store.update_sync_job(job.id, result={"success": False}, error="late")
        with pytest.raises(StoreError, match="read-only"):
            await store.append_sync_log(job.id, SyncJobLog(LogLevel.INFO, "late entry"))

        saved = await store.get_sync_job(job.id)
        assert saved.progress == 100
        assert saved.result == {"success": True}
        assert saved.error is None
        assert saved.logs == []

    @pytest.mark.asyncio
    async def test_append_log(self, store):
        job = await store.create_sync_job(SyncJob(binding_id="b1"))

        await store.append_sync_log(job.id, SyncJobLog(LogLevel.INFO, "Starting repository sync"))

        assert [e.message for e in (await store.get_sync_job(job.id)).logs] == [
            "Starting repository sync"
        ]

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        now = utcnow()
        old = await store.create_sync_job(SyncJob(binding_id="b1", created_at=now - timedelta(hours=1)))
        new = await store.create_sync_job(SyncJob(binding_id="b1", created_at=now))
        await store.create_sync_job(SyncJob(binding_id="b2"))

        assert [j.id for j in await store.list_sync_jobs("b1")] == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_purge_old_terminal_jobs(self, store):
        old = utcnow() - timedelta(days=90)
        done = await store.create_sync_job(
            SyncJob(binding_id="b1", status=SyncJobStatus.COMPLETED, created_at=old)
        )
        failed = await store.create_sync_job(
            SyncJob(binding_id="b1", status=SyncJobStatus.FAILED, created_at=old)
        )
        running = await store.create_sync_job(
            SyncJob(binding_id="b1", status=SyncJobStatus.RUNNING, created_at=old)
        )
        recent = await store.create_sync_job(
            SyncJob(binding_id="b1", status=SyncJobStatus.COMPLETED)
        )

        removed = await store.purge_sync_jobs(utcnow() - timedelta(days=30))

        assert removed == 2
        assert await store.get_sync_job(done.id) is None
        assert await store.get_sync_job(failed.id) is None
        assert {j.id for j in await store.list_sync_jobs()} == {running.id, recent.id}


class TestDeliveriesAndQuota:
    @pytest.mark.asyncio
    async def test_mark_processed(self, store):
        record = await store.record_webhook_delivery(WebhookDelivery(event_type="push"))

        await store.mark_webhook_processed(record.id, error="store offline")

        [saved] = await store.list_webhook_deliveries()
        assert saved.processed is False
        assert saved.error == "store offline"
        with pytest.raises(StoreError):
            await store.mark_webhook_processed("missing")

    @pytest.mark.asyncio
    async def test_purge_old_deliveries(self, store):
        old = await store.record_webhook_delivery(
            WebhookDelivery(event_type="push", received_at=utcnow() - timedelta(days=10))
        )
        fresh = await store.record_webhook_delivery(WebhookDelivery(event_type="release"))

        removed = await store.purge_webhook_deliveries(utcnow() - timedelta(days=7))

        assert removed == 1
        assert [d.id for d in await store.list_webhook_deliveries()] == [fresh.id]
        assert old.id != fresh.id

    @pytest.mark.asyncio
    async def test_quota_snapshot(self, store):
        snapshot = {"resources": {"core": {"remaining": 10}}}
        await store.save_quota_snapshot("u1", snapshot)
        snapshot["resources"]["core"]["remaining"] = 0

        assert (await store.get_quota_snapshot("u1"))["resources"]["core"]["remaining"] == 10
        assert await store.get_quota_snapshot("u2") is None
