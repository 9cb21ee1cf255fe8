"""HTTP surface for import, sync and webhooks.

Routes:
    POST /webhooks/github       GitHub webhook receiver
    POST /import                import a repository by URL and store its agents
    POST /sync/{binding_id}     sync one binding now
    GET  /sync/{binding_id}/stats   job counts for a binding
    GET  /rate-limit            refresh and report API quota
    GET  /health                liveness plus scheduler and queue state
    /metrics                    Prometheus exposition

Run with ``uvicorn subagents.api:app``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from .__version__ import __version__
from .connectors.github.client import GitHubClientError
from .connectors.github.importer import ImportContext, ImportOptions
from .connectors.github.sync import SyncOptions
from .connectors.github.webhooks import WebhookStatus
from .models import SyncBindingConfig
from .service import SyncServices, get_services

logger = logging.getLogger("subagents.api")

__all__ = ["app", "create_app"]

_WEBHOOK_STATUS_CODES = {
    WebhookStatus.INVALID_SIGNATURE: status.HTTP_403_FORBIDDEN,
    WebhookStatus.INVALID_PAYLOAD: status.HTTP_400_BAD_REQUEST,
    WebhookStatus.ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Interactive imports jump ahead of scheduled work in the throttler queue
IMPORT_PRIORITY = 8


class ImportRequest(BaseModel):
    """Import a repository by URL."""

    url: str = Field(..., description="GitHub repository URL")
    user_id: str = Field(..., description="Owner of the imported agents")
    readme_as_description: bool = Field(False, description="Use README as detailed description")
    tags_from_topics: bool = Field(False, description="Add repository topics to tags")
    version_from_releases: bool = Field(False, description="Use latest release as version fallback")
    auto_publish: bool = Field(False, description="Publish instead of draft")
    category_mapping: dict[str, str] = Field(default_factory=dict)
    default_category: str | None = None
    selected_agent_paths: list[str] = Field(default_factory=list)
    enable_sync: bool = Field(False, description="Create a sync binding per imported agent")
    auto_update: bool = Field(False, description="Content sync on push (with enable_sync)")


class SyncRequest(BaseModel):
    force: bool = Field(False, description="Skip change detection")
    dry_run: bool = Field(False, description="Compute changes without writing")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service status")
    version: str
    scheduler_running: bool
    throttle_queue: dict[str, Any] = Field(default_factory=dict)


def _services(request: Request) -> SyncServices:
    return request.app.state.services


def create_app(
    services: SyncServices | None = None, start_background: bool = True
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        services: Wired components; the process default when None
        start_background: Start the scheduler and quota persistence loops
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or get_services()
        if start_background:
            app.state.services.scheduler.start()
            app.state.services.quota_manager.start_persistence()
        logger.info("api_started", extra={"background": start_background})
        yield
        await app.state.services.aclose()
        logger.info("api_stopped")

    app = FastAPI(
        title="Sub-agent GitHub Sync",
        description="Import and sync Claude sub-agents from GitHub repositories",
        version=__version__,
        lifespan=lifespan,
    )
    app.mount("/metrics", make_asgi_app())

    @app.post("/webhooks/github", tags=["Webhooks"])
    async def github_webhook(request: Request):
        svc = _services(request)
        body = await request.body()
        outcome = await svc.webhooks.process_delivery(
            body, request.headers, svc.sync, svc.store
        )
        return JSONResponse(
            status_code=_WEBHOOK_STATUS_CODES.get(outcome.status, status.HTTP_200_OK),
            content=outcome.to_dict(),
        )

    @app.post("/import", tags=["Import"])
    async def import_repository(payload: ImportRequest, request: Request):
        svc = _services(request)
        context = ImportContext(
            user_id=payload.user_id,
            options=ImportOptions(
                readme_as_description=payload.readme_as_description,
                tags_from_topics=payload.tags_from_topics,
                version_from_releases=payload.version_from_releases,
                auto_publish=payload.auto_publish,
                category_mapping=payload.category_mapping,
                default_category=payload.default_category,
                selected_agent_paths=payload.selected_agent_paths,
            ),
        )
        result = await svc.throttler.throttled_request(
            svc.caller_id,
            lambda: svc.importer.import_and_store(payload.url, context, svc.store),
            priority=IMPORT_PRIORITY,
            timeout=None,
        )
        body = result.to_dict()
        if result.success and payload.enable_sync and result.repository:
            bindings = []
            for agent in result.agents:
                binding = await svc.sync.enable_sync(
                    agent.id,
                    payload.user_id,
                    result.repository.full_name,
                    config=SyncBindingConfig(
                        readme_as_description=payload.readme_as_description
                    ),
                    auto_update=payload.auto_update,
                    branch=result.repository.default_branch,
                )
                bindings.append(binding.id)
            body["binding_ids"] = bindings
        return JSONResponse(
            status_code=status.HTTP_200_OK
            if result.success
            else status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body,
        )

    @app.post("/sync/{binding_id}", tags=["Sync"])
    async def sync_binding(
        binding_id: str, request: Request, payload: SyncRequest | None = None
    ):
        svc = _services(request)
        binding = await svc.store.get_binding(binding_id)
        if binding is None:
            raise HTTPException(status_code=404, detail=f"Sync binding {binding_id} not found")
        payload = payload or SyncRequest()
        result = await svc.sync.sync_repository(
            binding, SyncOptions(force=payload.force, dry_run=payload.dry_run)
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK
            if result.success
            else status.HTTP_502_BAD_GATEWAY,
            content=result.to_dict(),
        )

    @app.get("/sync/{binding_id}/stats", tags=["Sync"])
    async def sync_stats(binding_id: str, request: Request):
        svc = _services(request)
        if await svc.store.get_binding(binding_id) is None:
            raise HTTPException(status_code=404, detail=f"Sync binding {binding_id} not found")
        return await svc.sync.get_sync_job_stats(binding_id)

    @app.get("/rate-limit", tags=["Quota"])
    async def rate_limit(request: Request):
        svc = _services(request)
        try:
            await svc.client.get_rate_limit()
        except GitHubClientError as e:
            logger.warning("rate_limit_fetch_failed", extra={"error": str(e)})
            raise HTTPException(status_code=502, detail=str(e)) from e
        statuses = svc.quota_manager.get_all_quota_status(svc.caller_id)
        return {
            "caller_id": svc.caller_id,
            "resources": {name: s.to_dict() for name, s in statuses.items()},
        }

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(request: Request):
        svc = _services(request)
        return HealthResponse(
            status="healthy",
            version=__version__,
            scheduler_running=svc.scheduler.is_running,
            throttle_queue=svc.throttler.get_queue_status(),
        )

    return app


app = create_app()
