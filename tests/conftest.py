"""Shared pytest fixtures for sub-agent sync tests.

Fixture Organization:
    - GitHub API fakes: route table served through httpx.MockTransport
    - Sample data: repository payloads, agent markdown, bindings
    - Wired components: client, store, parser, sync service
"""

import base64
import time
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from subagents.config import reset_config
from subagents.connectors.github.client import GitHubClient
from subagents.connectors.github.quota import QuotaManager
from subagents.models import DomainAgentRecord, RepositorySyncBinding
from subagents.store import InMemoryAgentStore

# =============================================================================
# Sample data
# =============================================================================

REVIEWER_MD = """---
name: code-reviewer
description: Reviews pull requests for correctness and style
tools: Read, Grep, Glob
---
You are a senior code reviewer. Read the diff carefully, point out bugs,
missing tests and unclear naming, and suggest concrete fixes.
"""


def repo_payload(full_name: str = "acme/agents", **overrides: Any) -> dict[str, Any]:
    """GitHub repository JSON as returned by GET /repos/{owner}/{repo}."""
    owner, _, name = full_name.partition("/")
    data = {
        "id": 1296269,
        "name": name,
        "full_name": full_name,
        "owner": {
            "login": owner,
            "html_url": f"https://github.com/{owner}",
            "avatar_url": f"https://avatars.githubusercontent.com/{owner}",
        },
        "html_url": f"https://github.com/{full_name}",
        "description": "Claude sub-agents for everyday engineering",
        "default_branch": "main",
        "private": False,
        "fork": False,
        "archived": False,
        "stargazers_count": 42,
        "forks_count": 7,
        "open_issues_count": 3,
        "topics": ["claude", "agents"],
        "license": {"key": "mit", "name": "MIT License"},
        "homepage": "",
        "language": "Python",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-06-01T12:00:00Z",
        "pushed_at": "2024-06-01T12:00:00Z",
    }
    data.update(overrides)
    return data


def blob_payload(text: str) -> dict[str, Any]:
    return {
        "content": base64.b64encode(text.encode()).decode(),
        "encoding": "base64",
    }


def content_payload(text: str, path: str = "README.md") -> dict[str, Any]:
    return {"type": "file", "path": path, **blob_payload(text)}


def rate_limit_headers(remaining: int = 4999, limit: int = 5000, resource: str = "core"):
    return {
        "x-ratelimit-limit": str(limit),
        "x-ratelimit-remaining": str(remaining),
        "x-ratelimit-reset": str(int(time.time()) + 3600),
        "x-ratelimit-used": str(limit - remaining),
        "x-ratelimit-resource": resource,
    }


# =============================================================================
# Fake GitHub API
# =============================================================================


class FakeGitHub:
    """Route table for httpx.MockTransport.

    Routes are keyed by (method, path). A route holds either one response or a
    list consumed in order (the last one repeats). Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        path: str,
        json: Any = None,
        status_code: int = 200,
        method: str = "GET",
        headers: dict[str, str] | None = None,
    ) -> "FakeGitHub":
        response = httpx.Response(
            status_code,
            json=json if json is not None else {},
            headers={**rate_limit_headers(), **(headers or {})},
        )
        self.routes.setdefault((method, path), []).append(response)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self, method: str = "GET") -> list[str]:
        return [r.url.path for r in self.requests if r.method == method]

    def add_agent_repository(
        self,
        full_name: str = "acme/agents",
        files: dict[str, str] | None = None,
        **repo_overrides: Any,
    ) -> "FakeGitHub":
        """Register a repository, its tree and one blob per file."""
        files = files if files is not None else {"agents/reviewer.md": REVIEWER_MD}
        base = f"/repos/{full_name}"
        self.add(base, repo_payload(full_name, **repo_overrides))
        tree = [{"path": "README.md", "type": "blob", "sha": "readme-sha"}]
        for index, (path, text) in enumerate(files.items()):
            sha = f"sha{index}"
            tree.append({"path": path, "type": "blob", "sha": sha})
            self.add(f"{base}/git/blobs/{sha}", blob_payload(text))
        self.add(f"{base}/git/trees/main", {"sha": "tree", "tree": tree, "truncated": False})
        self.add(
            f"{base}/commits",
            [{"sha": "abc123", "commit": {"message": "initial"}}],
        )
        return self


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate config from the developer's environment, .env file and cache."""
    for name in ("GITHUB_TOKEN", "GITHUB_WEBHOOK_SECRET", "GITHUB_API_URL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield monkeypatch
    reset_config()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def quota_manager() -> QuotaManager:
    return QuotaManager()


@pytest.fixture
def github_client(fake_github, quota_manager) -> GitHubClient:
    return GitHubClient(
        token="ghp_test_token_123",
        quota_manager=quota_manager,
        caller_id="tester",
        transport=fake_github.transport(),
    )


@pytest.fixture
def store() -> InMemoryAgentStore:
    return InMemoryAgentStore()


@pytest.fixture
def make_agent() -> Callable[..., DomainAgentRecord]:
    def _make(**overrides: Any) -> DomainAgentRecord:
        fields = {
            "slug": "code-reviewer-acme-agents",
            "name": "code-reviewer",
            "description": "Reviews pull requests for correctness and style",
            "content": REVIEWER_MD,
            "tags": ["subagent", "claude-code"],
            "github_url": "https://github.com/acme/agents",
            "github_owner": "acme",
            "github_repo_name": "agents",
            "github_sha": "old-sha",
            "github_stars": 1,
            "file_path": "agents/reviewer.md",
        }
        fields.update(overrides)
        return DomainAgentRecord(**fields)

    return _make


@pytest.fixture
def make_binding() -> Callable[..., RepositorySyncBinding]:
    def _make(agent_id: str, **overrides: Any) -> RepositorySyncBinding:
        fields = {
            "agent_id": agent_id,
            "user_id": "user-1",
            "repository_full_name": "acme/agents",
        }
        fields.update(overrides)
        return RepositorySyncBinding(**fields)

    return _make
