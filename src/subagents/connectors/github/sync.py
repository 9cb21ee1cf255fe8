"""Repository sync engine: keeps imported sub-agents current with GitHub.

Each sync attempt is a SyncJob scoped to one RepositorySyncBinding:

    pending -> running -> completed | failed

A run fetches the repository and the bound agent, skips the work when nothing
changed since the last sync (unless forced), then runs four independent
update passes (metadata, content, version, tags). Failures are recorded on
both the job and the binding; sync_repository() never raises.

Webhook deliveries reach the engine through handle_webhook_event(), which maps
(event, action) pairs onto SyncEvent tags and publishes them on a
SyncEventBus. Default handlers re-run a metadata-only or content sync.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from ...metrics import sync_duration_seconds, sync_jobs_total
from ...models import (
    DomainAgentRecord,
    LogLevel,
    RemoteRepository,
    RepositorySyncBinding,
    SyncBindingConfig,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
    SyncStatus,
    utcnow,
)
from ...store import AgentStore
from .client import GitHubClient

logger = logging.getLogger("subagents.github.sync")

__all__ = [
    "EVENT_MAP",
    "WEBHOOK_EVENTS",
    "GitHubSyncService",
    "SyncChanges",
    "SyncError",
    "SyncEvent",
    "SyncEventBus",
    "SyncOptions",
    "SyncResult",
    "SyncStats",
    "has_changes",
    "resolve_sync_event",
]

# Events subscribed when setup_webhook() creates a repository hook
WEBHOOK_EVENTS = (
    "push",
    "release",
    "repository",
    "star",
    "fork",
    "issues",
    "pull_request",
    "watch",
)

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class SyncError(Exception):
    """Fatal condition for a single sync job (e.g. the bound agent is gone)."""

    pass


class SyncEvent(str, Enum):
    """Sync-relevant webhook events."""

    PUSH = "push"
    RELEASE_PUBLISHED = "release.published"
    RELEASE_UPDATED = "release.updated"
    RELEASE_DELETED = "release.deleted"
    REPOSITORY_CREATED = "repository.created"
    REPOSITORY_UPDATED = "repository.updated"
    REPOSITORY_DELETED = "repository.deleted"
    REPOSITORY_PUBLICIZED = "repository.publicized"
    REPOSITORY_PRIVATIZED = "repository.privatized"
    STAR_CREATED = "star.created"
    STAR_DELETED = "star.deleted"
    FORK = "fork"
    ISSUES_OPENED = "issues.opened"
    ISSUES_CLOSED = "issues.closed"
    PULL_REQUEST_OPENED = "pull_request.opened"
    PULL_REQUEST_CLOSED = "pull_request.closed"
    PULL_REQUEST_MERGED = "pull_request.merged"
    WATCH_STARTED = "watch.started"
    WATCH_STOPPED = "watch.stopped"


# (event type, action) -> SyncEvent. Action is None for action-less events.
EVENT_MAP: dict[tuple[str, str | None], SyncEvent] = {
    ("push", None): SyncEvent.PUSH,
    ("fork", None): SyncEvent.FORK,
    ("release", "published"): SyncEvent.RELEASE_PUBLISHED,
    ("release", "updated"): SyncEvent.RELEASE_UPDATED,
    ("release", "deleted"): SyncEvent.RELEASE_DELETED,
    ("repository", "created"): SyncEvent.REPOSITORY_CREATED,
    ("repository", "updated"): SyncEvent.REPOSITORY_UPDATED,
    ("repository", "edited"): SyncEvent.REPOSITORY_UPDATED,
    ("repository", "deleted"): SyncEvent.REPOSITORY_DELETED,
    ("repository", "publicized"): SyncEvent.REPOSITORY_PUBLICIZED,
    ("repository", "privatized"): SyncEvent.REPOSITORY_PRIVATIZED,
    ("star", "created"): SyncEvent.STAR_CREATED,
    ("star", "deleted"): SyncEvent.STAR_DELETED,
    ("issues", "opened"): SyncEvent.ISSUES_OPENED,
    ("issues", "closed"): SyncEvent.ISSUES_CLOSED,
    ("pull_request", "opened"): SyncEvent.PULL_REQUEST_OPENED,
    ("pull_request", "closed"): SyncEvent.PULL_REQUEST_CLOSED,
    ("pull_request", "merged"): SyncEvent.PULL_REQUEST_MERGED,
    ("watch", "started"): SyncEvent.WATCH_STARTED,
    ("watch", "stopped"): SyncEvent.WATCH_STOPPED,
}

_ACTIONLESS_EVENTS = frozenset(event for event, action in EVENT_MAP if action is None)


def resolve_sync_event(event_type: str, payload: dict[str, Any]) -> SyncEvent | None:
    """Map a webhook delivery onto a SyncEvent, or None when unmapped.

    A closed pull request whose payload says it was merged maps to
    PULL_REQUEST_MERGED.
    """
    if event_type in _ACTIONLESS_EVENTS:
        return EVENT_MAP[(event_type, None)]
    action = payload.get("action")
    if event_type == "pull_request" and action == "closed":
        if (payload.get("pull_request") or {}).get("merged"):
            return SyncEvent.PULL_REQUEST_MERGED
    return EVENT_MAP.get((event_type, action))


SyncHandler = Callable[[RepositorySyncBinding, dict[str, Any]], Awaitable[None] | None]


class SyncEventBus:
    """Ordered publish/subscribe table for SyncEvents.

    Handlers run sequentially in registration order. An exception in one
    handler is logged and does not stop the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[SyncEvent, list[SyncHandler]] = {}

    def subscribe(self, event: SyncEvent, handler: SyncHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: SyncEvent, handler: SyncHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: SyncEvent) -> list[SyncHandler]:
        return list(self._handlers.get(event, []))

    async def publish(
        self,
        event: SyncEvent,
        binding: RepositorySyncBinding,
        payload: dict[str, Any],
    ) -> int:
        """Run every handler for event. Returns how many completed without error."""
        succeeded = 0
        for handler in self.handlers(event):
            try:
                outcome = handler(binding, payload)
                if inspect.isawaitable(outcome):
                    await outcome
                succeeded += 1
            except Exception as e:
                logger.error(
                    "sync_event_handler_failed",
                    extra={
                        "event": event.value,
                        "binding_id": binding.id,
                        "handler": getattr(handler, "__name__", repr(handler)),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
        return succeeded


@dataclass
class SyncOptions:
    """Controls one sync run.

    Attributes:
        force: Skip change detection and run every enabled pass
        dry_run: Compute changes without writing the agent or binding
        metadata: Run the metadata pass (stars, forks, description, homepage, license)
        content: Run the README content pass
        version: Run the release version pass
        tags: Run the topic tags pass
        job_type: Recorded on the SyncJob
    """

    force: bool = False
    dry_run: bool = False
    metadata: bool = True
    content: bool = True
    version: bool = True
    tags: bool = True
    job_type: SyncJobType = SyncJobType.FULL

    @classmethod
    def metadata_only(cls) -> "SyncOptions":
        return cls(content=False, job_type=SyncJobType.METADATA)

    @classmethod
    def content_update(cls) -> "SyncOptions":
        return cls(job_type=SyncJobType.CONTENT)


@dataclass
class SyncChanges:
    metadata: bool = False
    content: bool = False
    version: bool = False
    tags: bool = False

    @property
    def any(self) -> bool:
        return self.metadata or self.content or self.version or self.tags

    def to_dict(self) -> dict[str, bool]:
        return {
            "metadata": self.metadata,
            "content": self.content,
            "version": self.version,
            "tags": self.tags,
        }


@dataclass
class SyncStats:
    commits_processed: int = 0
    files_updated: int = 0
    processing_time_ms: int = 0


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    success: bool = False
    job_id: str | None = None
    binding_id: str | None = None
    changes: SyncChanges = field(default_factory=SyncChanges)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "binding_id": self.binding_id,
            "changes": self.changes.to_dict(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "stats": {
                "commits_processed": self.stats.commits_processed,
                "files_updated": self.stats.files_updated,
                "processing_time_ms": self.stats.processing_time_ms,
            },
        }


def has_changes(
    binding: RepositorySyncBinding,
    repository: RemoteRepository,
    latest_sha: str | None,
) -> bool:
    """True when the repository moved since the binding last synced.

    Either signal is enough: an updated_at newer than last_sync_at (or no sync
    yet), or a latest commit sha that differs from the stored one.
    """
    if binding.last_sync_at is None:
        return True
    if repository.updated_at is not None and repository.updated_at > binding.last_sync_at:
        return True
    return latest_sha is not None and latest_sha != binding.last_commit_sha


class GitHubSyncService:
    """Syncs imported agents with their source repositories.

    Attributes:
        client: GitHubClient used for repository reads and webhook CRUD
        store: AgentStore holding agents, bindings and jobs
        event_bus: SyncEventBus fed by handle_webhook_event()
    """

    BATCH_SIZE = 5
    BATCH_DELAY = 2.0  # seconds

    def __init__(
        self,
        client: GitHubClient,
        store: AgentStore,
        event_bus: SyncEventBus | None = None,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        register_default_handlers: bool = True,
    ) -> None:
        self.client = client
        self.store = store
        self.event_bus = event_bus or SyncEventBus()
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        if register_default_handlers:
            self._register_default_handlers()

    # --- Single repository ---

    async def sync_repository(
        self,
        binding: RepositorySyncBinding,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        """Run one sync job for binding. Never raises."""
        options = options or SyncOptions()
        start = time.perf_counter()
        result = SyncResult(binding_id=binding.id)

        try:
            job = await self.store.create_sync_job(
                SyncJob(binding_id=binding.id, job_type=options.job_type)
            )
            job.transition(SyncJobStatus.RUNNING)
            await self.store.update_sync_job(
                job.id, status=job.status, started_at=job.started_at
            )
        except Exception as e:
            logger.error(
                "sync_job_create_failed",
                extra={"binding_id": binding.id, "error": str(e)},
            )
            result.errors.append(f"Failed to create sync job: {e}")
            result.stats.processing_time_ms = _elapsed_ms(start)
            return result

        result.job_id = job.id
        await self._log(
            job,
            LogLevel.INFO,
            "Starting repository sync",
            repository=binding.repository_full_name,
            force=options.force,
            dry_run=options.dry_run,
        )

        status = "failed"
        try:
            skipped = await self._perform_sync(binding, job, options, result)
            result.success = True
            await self._finish_job(job, SyncJobStatus.COMPLETED, result)
            status = "skipped" if skipped else "completed"
        except Exception as e:
            result.success = False
            result.errors.append(str(e))
            await self._fail(binding, job, e, options, result)

        elapsed = time.perf_counter() - start
        result.stats.processing_time_ms = int(elapsed * 1000)
        sync_duration_seconds.labels(job_type=options.job_type.value).observe(elapsed)
        sync_jobs_total.labels(job_type=options.job_type.value, status=status).inc()
        logger.info(
            "repository_sync_finished",
            extra={
                "binding_id": binding.id,
                "job_id": job.id,
                "repository": binding.repository_full_name,
                "success": result.success,
                "changes": result.changes.to_dict(),
                "duration_ms": result.stats.processing_time_ms,
            },
        )
        return result

    async def _perform_sync(
        self,
        binding: RepositorySyncBinding,
        job: SyncJob,
        options: SyncOptions,
        result: SyncResult,
    ) -> bool:
        """Detect and apply changes. Returns True when the run was a no-op."""
        owner, repo = binding.owner_and_repo
        repository = await self.client.get_repository(owner, repo)

        agent = await self.store.get_agent(binding.agent_id)
        if agent is None:
            raise SyncError(f"Agent {binding.agent_id} not found")

        latest_commit = await self.client.get_latest_commit(owner, repo, binding.branch)
        latest_sha = latest_commit.get("sha") if latest_commit else None

        if not options.force and not has_changes(binding, repository, latest_sha):
            await self._log(job, LogLevel.INFO, "No changes detected, skipping sync")
            return True

        if latest_sha and latest_sha != binding.last_commit_sha:
            result.stats.commits_processed = 1

        updates: dict[str, Any] = {}
        if options.metadata:
            result.changes.metadata = self._sync_metadata(repository, agent, updates)
        if options.content:
            result.changes.content = await self._sync_content(
                binding, agent, updates, job, result
            )
        if options.version:
            result.changes.version = await self._sync_version(
                repository, agent, updates, job, result
            )
        if options.tags:
            result.changes.tags = self._sync_tags(repository, agent, updates)

        if options.dry_run:
            await self._log(
                job,
                LogLevel.INFO,
                "Dry run complete, no changes written",
                fields=sorted(updates),
            )
            return False

        if updates:
            updates["github_sha"] = latest_sha or agent.github_sha
            updates["last_github_sync"] = utcnow()
            await self.store.update_agent(agent.id, **updates)
            result.stats.files_updated = 1
            await self._log(
                job,
                LogLevel.INFO,
                f"Updated agent fields: {', '.join(sorted(updates))}",
            )

        await self.store.update_binding(
            binding.id,
            last_sync_at=utcnow(),
            last_commit_sha=latest_sha or binding.last_commit_sha,
            sync_status=SyncStatus.SUCCESS,
            sync_error=None,
        )
        await self._log(job, LogLevel.INFO, "Repository sync completed successfully")
        return False

    # --- Update passes ---

    @staticmethod
    def _sync_metadata(
        repository: RemoteRepository,
        agent: DomainAgentRecord,
        updates: dict[str, Any],
    ) -> bool:
        changed = False
        if agent.github_stars != repository.stargazers_count:
            updates["github_stars"] = repository.stargazers_count
            changed = True
        if agent.github_forks != repository.forks_count:
            updates["github_forks"] = repository.forks_count
            changed = True
        if repository.description and repository.description != agent.description:
            updates["description"] = repository.description
            changed = True
        if repository.homepage != agent.homepage_url:
            updates["homepage_url"] = repository.homepage
            changed = True
        if repository.license_name != agent.license:
            updates["license"] = repository.license_name
            changed = True
        return changed

    async def _sync_content(
        self,
        binding: RepositorySyncBinding,
        agent: DomainAgentRecord,
        updates: dict[str, Any],
        job: SyncJob,
        result: SyncResult,
    ) -> bool:
        if not binding.config.readme_as_description:
            return False
        owner, repo = binding.owner_and_repo
        try:
            readme = await self.client.get_repository_readme(
                owner, repo, binding.config.branch or binding.branch
            )
        except Exception as e:
            message = f"Failed to sync README: {e}"
            result.warnings.append(message)
            await self._log(job, LogLevel.WARNING, message)
            return False
        if readme and readme != agent.detailed_description:
            updates["detailed_description"] = readme
            return True
        return False

    async def _sync_version(
        self,
        repository: RemoteRepository,
        agent: DomainAgentRecord,
        updates: dict[str, Any],
        job: SyncJob,
        result: SyncResult,
    ) -> bool:
        try:
            release = await self.client.get_latest_release(
                repository.owner_login, repository.name
            )
        except Exception as e:
            message = f"Failed to fetch latest release: {e}"
            result.warnings.append(message)
            await self._log(job, LogLevel.WARNING, message)
            return False
        if not release or not release.get("tag_name"):
            return False
        version = release["tag_name"].removeprefix("v")
        if version != agent.version:
            updates["version"] = version
            return True
        return False

    @staticmethod
    def _sync_tags(
        repository: RemoteRepository,
        agent: DomainAgentRecord,
        updates: dict[str, Any],
    ) -> bool:
        new_topics = [t for t in repository.topics if t not in agent.tags]
        if not new_topics:
            return False
        # dict.fromkeys dedupes while keeping order
        updates["tags"] = list(dict.fromkeys([*agent.tags, *new_topics]))
        return True

    # --- Fan-out ---

    async def sync_user_repositories(
        self, user_id: str, options: SyncOptions | None = None
    ) -> list[SyncResult]:
        bindings = await self.store.list_bindings(user_id=user_id, enabled=True)
        return await self._sync_many(bindings, options)

    async def sync_stale_repositories(
        self, max_age_hours: int = 24, options: SyncOptions | None = None
    ) -> list[SyncResult]:
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        bindings = await self.store.list_stale_bindings(cutoff)
        return await self._sync_many(bindings, options or SyncOptions.metadata_only())

    async def sync_enabled_repositories(
        self, options: SyncOptions | None = None
    ) -> list[SyncResult]:
        bindings = await self.store.list_bindings(enabled=True)
        return await self._sync_many(bindings, options)

    async def _sync_many(
        self,
        bindings: list[RepositorySyncBinding],
        options: SyncOptions | None,
    ) -> list[SyncResult]:
        """Sync in groups of batch_size with batch_delay between groups."""
        results: list[SyncResult] = []
        for offset in range(0, len(bindings), self.batch_size):
            if offset and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            batch = bindings[offset : offset + self.batch_size]
            results.extend(
                await asyncio.gather(*(self.sync_repository(b, options) for b in batch))
            )
        return results

    # --- Webhook events ---

    def on_sync_event(self, event: SyncEvent, handler: SyncHandler) -> None:
        self.event_bus.subscribe(event, handler)

    async def handle_webhook_event(
        self, event_type: str, payload: dict[str, Any]
    ) -> SyncEvent | None:
        """Publish a webhook delivery to every enabled binding of its repository.

        Returns:
            The SyncEvent published, or None when the event is unmapped or no
            enabled binding exists for the repository.
        """
        full_name = (payload.get("repository") or {}).get("full_name")
        if not full_name:
            return None
        sync_event = resolve_sync_event(event_type, payload)
        if sync_event is None:
            logger.debug(
                "webhook_event_unmapped",
                extra={"event_type": event_type, "action": payload.get("action")},
            )
            return None

        bindings = await self.store.list_bindings(enabled=True, full_name=full_name)
        if not bindings:
            logger.debug("webhook_no_binding", extra={"repository": full_name})
            return None

        for binding in bindings:
            await self.event_bus.publish(sync_event, binding, payload)
        logger.info(
            "webhook_event_dispatched",
            extra={
                "event": sync_event.value,
                "repository": full_name,
                "bindings": len(bindings),
            },
        )
        return sync_event

    def _register_default_handlers(self) -> None:
        async def on_push(binding: RepositorySyncBinding, payload: dict[str, Any]) -> None:
            if binding.auto_update:
                await self.sync_repository(binding, SyncOptions.content_update())

        async def on_metadata_event(
            binding: RepositorySyncBinding, payload: dict[str, Any]
        ) -> None:
            await self.sync_repository(binding, SyncOptions.metadata_only())

        self.on_sync_event(SyncEvent.PUSH, on_push)
        for event in (
            SyncEvent.RELEASE_PUBLISHED,
            SyncEvent.REPOSITORY_UPDATED,
            SyncEvent.STAR_CREATED,
            SyncEvent.STAR_DELETED,
            SyncEvent.FORK,
        ):
            self.on_sync_event(event, on_metadata_event)

    # --- Webhook lifecycle ---

    async def setup_webhook(
        self, binding: RepositorySyncBinding, url: str, secret: str | None = None
    ) -> int:
        """Create the repository webhook and store its id on the binding."""
        owner, repo = binding.owner_and_repo
        webhook = await self.client.create_webhook(
            owner, repo, url, secret=secret, events=WEBHOOK_EVENTS
        )
        await self.store.update_binding(binding.id, webhook_id=webhook["id"])
        logger.info(
            "webhook_created",
            extra={"binding_id": binding.id, "webhook_id": webhook["id"]},
        )
        return webhook["id"]

    async def remove_webhook(self, binding: RepositorySyncBinding) -> None:
        """Delete the repository webhook and clear the stored id.

        The id is cleared even when remote deletion fails, since the hook is
        usually already gone.
        """
        if not binding.webhook_id:
            return
        owner, repo = binding.owner_and_repo
        try:
            await self.client.delete_webhook(owner, repo, binding.webhook_id)
        except Exception as e:
            logger.warning(
                "webhook_delete_failed",
                extra={
                    "binding_id": binding.id,
                    "webhook_id": binding.webhook_id,
                    "error": str(e),
                },
            )
        await self.store.update_binding(binding.id, webhook_id=None)

    # --- Binding management ---

    async def enable_sync(
        self,
        agent_id: str,
        user_id: str,
        repository_full_name: str,
        config: SyncBindingConfig | None = None,
        auto_update: bool = False,
        branch: str = "main",
    ) -> RepositorySyncBinding:
        """Create the agent's binding, or re-enable the one it already has."""
        existing = await self.store.get_binding_by_agent(agent_id)
        if existing is not None:
            return await self.store.update_binding(
                existing.id,
                sync_enabled=True,
                repository_full_name=repository_full_name,
                auto_update=auto_update,
                branch=branch,
                config=config or existing.config,
            )
        return await self.store.create_binding(
            RepositorySyncBinding(
                agent_id=agent_id,
                user_id=user_id,
                repository_full_name=repository_full_name,
                auto_update=auto_update,
                branch=branch,
                config=config or SyncBindingConfig(),
            )
        )

    async def disable_sync(self, binding: RepositorySyncBinding) -> RepositorySyncBinding:
        return await self.store.update_binding(binding.id, sync_enabled=False)

    # --- Job maintenance ---

    async def cleanup_old_sync_jobs(self, retention_days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        return await self.store.purge_sync_jobs(cutoff)

    async def cleanup_old_webhook_deliveries(self, retention_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        return await self.store.purge_webhook_deliveries(cutoff)

    async def get_sync_job_stats(self, binding_id: str | None = None) -> dict[str, int]:
        """Job counts by status, plus a total."""
        jobs = await self.store.list_sync_jobs(binding_id)
        stats = {status.value: 0 for status in SyncJobStatus}
        for job in jobs:
            stats[job.status.value] += 1
        stats["total"] = len(jobs)
        return stats

    # --- Internals ---

    async def _log(
        self, job: SyncJob, level: LogLevel, message: str, **metadata: Any
    ) -> None:
        entry = job.log(level, message, **metadata)
        logger.log(
            _PY_LEVELS[level],
            "sync_job_log",
            extra={"job_id": job.id, "message_text": message, **metadata},
        )
        try:
            await self.store.append_sync_log(job.id, entry)
        except Exception as e:
            logger.warning(
                "sync_job_log_write_failed", extra={"job_id": job.id, "error": str(e)}
            )

    async def _finish_job(
        self, job: SyncJob, status: SyncJobStatus, result: SyncResult
    ) -> None:
        job.transition(status)
        await self.store.update_sync_job(
            job.id,
            status=job.status,
            progress=job.progress,
            completed_at=job.completed_at,
            error=result.errors[0] if result.errors else None,
            result=result.to_dict(),
        )

    async def _fail(
        self,
        binding: RepositorySyncBinding,
        job: SyncJob,
        error: Exception,
        options: SyncOptions,
        result: SyncResult,
    ) -> None:
        """Record a failed run on the job and the binding without raising."""
        await self._log(job, LogLevel.ERROR, f"Sync failed: {error}")
        if not options.dry_run:
            try:
                await self.store.update_binding(
                    binding.id, sync_status=SyncStatus.ERROR, sync_error=str(error)
                )
            except Exception as e:
                logger.error(
                    "sync_binding_update_failed",
                    extra={"binding_id": binding.id, "error": str(e)},
                )
        try:
            if not job.status.is_terminal:
                await self._finish_job(job, SyncJobStatus.FAILED, result)
        except Exception as e:
            logger.error(
                "sync_job_update_failed", extra={"job_id": job.id, "error": str(e)}
            )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)

