"""Composition root.

build_services() wires one instance of every component from SyncConfig.
get_services() holds the process-wide default used by the API app and the
scripts; library code never reaches for it and always takes its collaborators
as constructor arguments.
"""

import logging
from dataclasses import dataclass

import httpx

from .config import SyncConfig, get_config
from .connectors.github.client import GitHubClient
from .connectors.github.importer import GitHubImportService
from .connectors.github.parser import SubAgentParser
from .connectors.github.quota import QuotaManager
from .connectors.github.sync import GitHubSyncService
from .connectors.github.throttle import RequestThrottler
from .connectors.github.webhooks import GitHubWebhookHandler
from .scheduler import SyncScheduler
from .store import AgentStore, InMemoryAgentStore

logger = logging.getLogger("subagents.service")

__all__ = ["SyncServices", "build_services", "get_services", "reset_services"]

DEFAULT_CALLER_ID = "service"


@dataclass
class SyncServices:
    """Every wired component, sharing one client, quota manager and store."""

    config: SyncConfig
    store: AgentStore
    quota_manager: QuotaManager
    throttler: RequestThrottler
    client: GitHubClient
    parser: SubAgentParser
    importer: GitHubImportService
    sync: GitHubSyncService
    webhooks: GitHubWebhookHandler
    scheduler: SyncScheduler
    caller_id: str = DEFAULT_CALLER_ID

    async def aclose(self) -> None:
        """Stop background tasks and close the HTTP client."""
        await self.scheduler.stop()
        await self.quota_manager.stop_persistence()
        await self.throttler.close()
        await self.client.close()


def build_services(
    config: SyncConfig | None = None,
    store: AgentStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    caller_id: str = DEFAULT_CALLER_ID,
) -> SyncServices:
    """Wire the default component graph.

    Args:
        config: Settings; get_config() when None
        store: Persistence; a fresh InMemoryAgentStore when None
        transport: httpx transport override (tests pass httpx.MockTransport)
        caller_id: Identity the service's API quota is tracked under
    """
    config = config or get_config()
    store = store if store is not None else InMemoryAgentStore()

    quota_manager = QuotaManager(
        warning_threshold=config.quota_warning_threshold,
        critical_threshold=config.quota_critical_threshold,
        store=store,
        persist_interval=config.quota_persist_interval,
    )
    throttler = RequestThrottler(
        quota_manager,
        request_delay=config.throttle_request_delay,
        max_wait=config.throttle_max_wait,
    )
    client = GitHubClient(
        token=config.get_github_token(),
        base_url=config.github_api_url,
        timeout=config.github_request_timeout,
        max_retries=config.github_max_retries,
        quota_manager=quota_manager,
        caller_id=caller_id,
        transport=transport,
    )
    parser = SubAgentParser(client, max_retries=config.github_max_retries)
    importer = GitHubImportService(
        client,
        parser=parser,
        batch_size=config.import_batch_size,
        batch_delay=config.import_batch_delay,
    )
    sync = GitHubSyncService(
        client,
        store,
        batch_size=config.sync_batch_size,
        batch_delay=config.sync_batch_delay,
    )
    webhooks = GitHubWebhookHandler(
        secret=config.get_webhook_secret(),
        dedup_window_seconds=config.webhook_dedup_window,
    )
    scheduler = SyncScheduler(sync, quota_manager, config)

    logger.info(
        "services_built",
        extra={
            "api_url": config.github_api_url,
            "authenticated": client.authenticated,
            "caller_id": caller_id,
        },
    )
    return SyncServices(
        config=config,
        store=store,
        quota_manager=quota_manager,
        throttler=throttler,
        client=client,
        parser=parser,
        importer=importer,
        sync=sync,
        webhooks=webhooks,
        scheduler=scheduler,
        caller_id=caller_id,
    )


_services: SyncServices | None = None


def get_services() -> SyncServices:
    """Process-wide default services, built on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def reset_services() -> None:
    """Close and forget the default services (tests, shutdown)."""
    global _services
    if _services is not None:
        await _services.aclose()
    _services = None
