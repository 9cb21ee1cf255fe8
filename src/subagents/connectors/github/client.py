"""GitHub REST API client.

Async httpx-based client with optional Bearer token auth. Every response's
x-ratelimit-* headers are forwarded to the QuotaManager. Server errors and
timeouts are retried with exponential backoff; rate limit responses raise
RateLimitExceeded immediately so the caller (parser retry, throttler) decides
how long to wait.

Errors are wrapped in GitHubClientError with a message naming the operation
and the target, e.g. "Failed to fetch repository acme/tools: ...". Helpers for
optional files (README, package manifests) and optional resources (latest
release, latest commit) return None when the target does not exist.

Reference: https://docs.github.com/en/rest
"""

import asyncio
import base64
import binascii
import json
import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from ...metrics import github_requests_total
from ...models import RemoteRepository
from .quota import QuotaManager

logger = logging.getLogger("subagents.github.client")

__all__ = [
    "GitHubClient",
    "GitHubClientError",
    "GitHubNotFoundError",
    "GitHubRepoRef",
    "InvalidGitHubUrlError",
    "RateLimitExceeded",
    "is_valid_github_url",
    "parse_github_url",
]


class GitHubClientError(Exception):
    """Raised when a GitHub API request fails.

    Wraps httpx errors and HTTP error statuses for consistent error handling.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GitHubNotFoundError(GitHubClientError):
    """Raised on 404 responses."""

    pass


class RateLimitExceeded(GitHubClientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", status_code=403)


class InvalidGitHubUrlError(ValueError):
    """Raised when a string is not a github.com/owner/repo URL."""

    pass


@dataclass(frozen=True)
class GitHubRepoRef:
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


_GITHUB_URL_PATTERN = re.compile(r"github\.com[/:]([^/\s]+)/([^/\s]+?)(?:\.git)?(?:/.*)?$")


def parse_github_url(url: str) -> GitHubRepoRef:
    """Extract owner and repository name from a GitHub URL.

    Accepts https, ssh-style and scheme-less forms, with or without a .git
    suffix and trailing path:

        >>> parse_github_url("https://github.com/acme/tools.git")
        GitHubRepoRef(owner='acme', repo='tools')
        >>> parse_github_url("github.com/acme/tools/tree/main/agents").repo
        'tools'

    Raises:
        InvalidGitHubUrlError: If the input is not a GitHub repository URL.
    """
    match = _GITHUB_URL_PATTERN.search((url or "").strip().split("?")[0].split("#")[0])
    if not match:
        raise InvalidGitHubUrlError(f"Invalid GitHub URL: {url}")
    return GitHubRepoRef(owner=match.group(1), repo=match.group(2))


def is_valid_github_url(url: str) -> bool:
    try:
        parse_github_url(url)
    except InvalidGitHubUrlError:
        return False
    return True


def _decode_content(item: dict[str, Any]) -> str:
    """Decode a contents/blob API payload to text."""
    content = item.get("content") or ""
    if item.get("encoding") == "base64":
        try:
            return base64.b64decode(content).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError) as e:
            raise GitHubClientError(f"Invalid base64 content: {e}") from e
    return content


class GitHubClient:
    """GitHub REST API client using httpx.

    Uses one long-lived httpx.AsyncClient with connection pooling. Methods take
    owner/repo per call so one client serves many repositories.

    Attributes:
        base_url: GitHub API base URL (default: https://api.github.com)
        caller_id: Quota owner that response headers are recorded against
        quota_manager: Receives x-ratelimit-* headers after every response

    Example:
        >>> async with GitHubClient(token="ghp_...") as client:
        ...     repo = await client.get_repository("acme", "tools")
        ...     tree = await client.get_tree("acme", "tools", repo.default_branch)
    """

    BASE_URL = "https://api.github.com"
    USER_AGENT = "subagents-sync/1.0"

    DEFAULT_TIMEOUT = 10.0  # seconds
    DEFAULT_PER_PAGE = 30

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60  # seconds

    README_CANDIDATES = ("README.md", "README.rst", "README.txt", "README")

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        quota_manager: QuotaManager | None = None,
        caller_id: str = "anonymous",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            token: Personal access token; None for anonymous access
            base_url: API base URL (GitHub Enterprise: https://host/api/v3)
            timeout: Fixed per-request timeout in seconds
            max_retries: Retries for 5xx responses and timeouts
            quota_manager: Quota tracker fed from response headers
            caller_id: Identity the quota is tracked under
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.max_retries = max_retries
        self.quota_manager = quota_manager
        self.caller_id = caller_id
        self.authenticated = bool(token)

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": self.USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    # --- Repositories ---

    async def get_repository(self, owner: str, repo: str) -> RemoteRepository:
        data = await self._get_json(
            f"/repos/{owner}/{repo}", "fetch repository", f"{owner}/{repo}"
        )
        return RemoteRepository.from_api(data)

    async def get_repository_from_url(self, url: str) -> RemoteRepository:
        ref = parse_github_url(url)
        return await self.get_repository(ref.owner, ref.repo)

    async def list_user_repositories(
        self,
        username: str,
        type: str = "owner",
        sort: str = "updated",
        direction: str = "desc",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[RemoteRepository]:
        """List public repositories of a user.

        Args:
            username: GitHub login
            type: all, owner or member
            sort: created, updated, pushed or full_name
            direction: asc or desc
            per_page: Page size (max 100)
            page: 1-based page number
        """
        data = await self._get_json(
            f"/users/{username}/repos",
            "fetch repositories for user",
            username,
            params={
                "type": type,
                "sort": sort,
                "direction": direction,
                "per_page": per_page,
                "page": page,
            },
        )
        return [RemoteRepository.from_api(item) for item in data]

    async def list_authenticated_user_repositories(
        self,
        visibility: str = "all",
        affiliation: str = "owner",
        sort: str = "updated",
        direction: str = "desc",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[RemoteRepository]:
        data = await self._get_json(
            "/user/repos",
            "fetch repositories for",
            "authenticated user",
            params={
                "visibility": visibility,
                "affiliation": affiliation,
                "sort": sort,
                "direction": direction,
                "per_page": per_page,
                "page": page,
            },
        )
        return [RemoteRepository.from_api(item) for item in data]

    async def search_repositories(
        self,
        query: str,
        sort: str | None = None,
        order: str = "desc",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> tuple[list[RemoteRepository], int]:
        """Search repositories.

        Counts against the search resource class.

        Returns:
            (repositories, total_count)
        """
        params: dict[str, Any] = {"q": query, "order": order, "per_page": per_page, "page": page}
        if sort:
            params["sort"] = sort
        data = await self._get_json(
            "/search/repositories",
            "search repositories for",
            repr(query),
            params=params,
        )
        items = [RemoteRepository.from_api(item) for item in data.get("items", [])]
        return items, int(data.get("total_count", len(items)))

    async def batch_get_repositories(
        self, repos: list[tuple[str, str]]
    ) -> list[RemoteRepository | None]:
        """Fetch several repositories concurrently; failures become None."""
        results = await asyncio.gather(
            *(self.get_repository(owner, repo) for owner, repo in repos),
            return_exceptions=True,
        )
        return [r if isinstance(r, RemoteRepository) else None for r in results]

    async def validate_repository(self, owner: str, repo: str) -> bool:
        try:
            await self.get_repository(owner, repo)
        except GitHubClientError:
            return False
        return True

    async def validate_repository_access(self, owner: str, repo: str) -> bool:
        """True when the repository exists and is public."""
        try:
            repository = await self.get_repository(owner, repo)
        except GitHubClientError:
            return False
        return not repository.private

    # --- Contents ---

    async def get_content(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Get a file (dict) or directory listing (list) from the contents API."""
        params = {"ref": ref} if ref else None
        return await self._get_json(
            f"/repos/{owner}/{repo}/contents/{path.lstrip('/')}",
            f"fetch content {path} for",
            f"{owner}/{repo}",
            params=params,
        )

    async def get_tree(
        self,
        owner: str,
        repo: str,
        tree_sha: str = "HEAD",
        recursive: bool = True,
    ) -> dict[str, Any]:
        """Get a git tree. recursive=True lists the whole repository in one call."""
        params = {"recursive": "1"} if recursive else None
        return await self._get_json(
            f"/repos/{owner}/{repo}/git/trees/{tree_sha}",
            "fetch tree for",
            f"{owner}/{repo}",
            params=params,
        )

    async def get_blob_content(self, owner: str, repo: str, file_sha: str) -> str:
        data = await self._get_json(
            f"/repos/{owner}/{repo}/git/blobs/{file_sha}",
            f"fetch blob {file_sha} for",
            f"{owner}/{repo}",
        )
        return _decode_content(data)

    async def _get_optional_file(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> str | None:
        try:
            item = await self.get_content(owner, repo, path, ref)
        except GitHubNotFoundError:
            return None
        if not isinstance(item, dict) or item.get("type", "file") != "file":
            return None
        if not item.get("content"):
            return None
        return _decode_content(item)

    async def get_repository_readme(
        self, owner: str, repo: str, ref: str | None = None
    ) -> str | None:
        """README text, trying README.md, README.rst, README.txt and README.

        Returns:
            Decoded README, or None when the repository has none.
        """
        for filename in self.README_CANDIDATES:
            content = await self._get_optional_file(owner, repo, filename, ref)
            if content is not None:
                return content
        return None

    async def get_package_json(
        self, owner: str, repo: str, ref: str | None = None
    ) -> dict[str, Any] | None:
        return await self._get_optional_json_file(owner, repo, "package.json", ref)

    async def get_composer_json(
        self, owner: str, repo: str, ref: str | None = None
    ) -> dict[str, Any] | None:
        return await self._get_optional_json_file(owner, repo, "composer.json", ref)

    async def get_pyproject_toml(
        self, owner: str, repo: str, ref: str | None = None
    ) -> str | None:
        return await self._get_optional_file(owner, repo, "pyproject.toml", ref)

    async def get_requirements_txt(
        self, owner: str, repo: str, ref: str | None = None
    ) -> str | None:
        return await self._get_optional_file(owner, repo, "requirements.txt", ref)

    async def _get_optional_json_file(
        self, owner: str, repo: str, path: str, ref: str | None
    ) -> dict[str, Any] | None:
        text = await self._get_optional_file(owner, repo, path, ref)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            logger.debug(
                "manifest_not_json",
                extra={"repository": f"{owner}/{repo}", "path": path},
            )
            return None
        return data if isinstance(data, dict) else None

    # --- Commits, releases, branches ---

    async def list_commits(
        self,
        owner: str,
        repo: str,
        sha: str | None = None,
        path: str | None = None,
        author: str | None = None,
        since: str | None = None,
        until: str | None = None,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"per_page": per_page, "page": page}
        for key, value in (
            ("sha", sha),
            ("path", path),
            ("author", author),
            ("since", since),
            ("until", until),
        ):
            if value:
                params[key] = value
        return await self._get_json(
            f"/repos/{owner}/{repo}/commits",
            "fetch commits for",
            f"{owner}/{repo}",
            params=params,
        )

    async def get_latest_commit(
        self, owner: str, repo: str, ref: str | None = None
    ) -> dict[str, Any] | None:
        """Most recent commit on ref (default branch when None), or None.

        Empty repositories answer 409; that is treated as "no commit".
        """
        try:
            commits = await self.list_commits(owner, repo, sha=ref, per_page=1)
        except GitHubNotFoundError:
            return None
        except GitHubClientError as e:
            if e.status_code == 409:
                return None
            raise
        return commits[0] if commits else None

    async def list_releases(
        self, owner: str, repo: str, per_page: int = DEFAULT_PER_PAGE, page: int = 1
    ) -> list[dict[str, Any]]:
        return await self._get_json(
            f"/repos/{owner}/{repo}/releases",
            "fetch releases for",
            f"{owner}/{repo}",
            params={"per_page": per_page, "page": page},
        )

    async def get_latest_release(self, owner: str, repo: str) -> dict[str, Any] | None:
        """Latest published release, or None when the repository has none."""
        try:
            return await self._get_json(
                f"/repos/{owner}/{repo}/releases/latest",
                "fetch latest release for",
                f"{owner}/{repo}",
            )
        except GitHubNotFoundError:
            return None

    async def list_branches(
        self,
        owner: str,
        repo: str,
        protected: bool | None = None,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"per_page": per_page, "page": page}
        if protected is not None:
            params["protected"] = "true" if protected else "false"
        return await self._get_json(
            f"/repos/{owner}/{repo}/branches",
            "fetch branches for",
            f"{owner}/{repo}",
            params=params,
        )

    async def get_default_branch(self, owner: str, repo: str) -> dict[str, Any] | None:
        repository = await self.get_repository(owner, repo)
        try:
            return await self._get_json(
                f"/repos/{owner}/{repo}/branches/{repository.default_branch}",
                "fetch default branch for",
                f"{owner}/{repo}",
            )
        except GitHubNotFoundError:
            return None

    # --- Repository statistics ---

    async def get_languages(self, owner: str, repo: str) -> dict[str, int]:
        return await self._get_json(
            f"/repos/{owner}/{repo}/languages",
            "fetch languages for",
            f"{owner}/{repo}",
        )

    async def list_contributors(
        self,
        owner: str,
        repo: str,
        anon: bool = False,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        return await self._get_json(
            f"/repos/{owner}/{repo}/contributors",
            "fetch contributors for",
            f"{owner}/{repo}",
            params={"anon": "1" if anon else "0", "per_page": per_page, "page": page},
        )

    # --- Users ---

    async def get_user(self, username: str) -> dict[str, Any]:
        return await self._get_json(f"/users/{username}", "fetch user", username)

    async def get_authenticated_user(self) -> dict[str, Any]:
        return await self._get_json("/user", "fetch", "authenticated user")

    # --- Webhooks ---

    async def list_webhooks(self, owner: str, repo: str) -> list[dict[str, Any]]:
        return await self._get_json(
            f"/repos/{owner}/{repo}/hooks",
            "list webhooks for",
            f"{owner}/{repo}",
        )

    async def create_webhook(
        self,
        owner: str,
        repo: str,
        url: str,
        secret: str | None = None,
        content_type: str = "json",
        insecure_ssl: bool = False,
        events: list[str] | tuple[str, ...] = ("push", "pull_request"),
    ) -> dict[str, Any]:
        """Create an active repository webhook.

        Returns:
            Webhook dict; its "id" is what delete_webhook() takes.
        """
        config: dict[str, Any] = {
            "url": url,
            "content_type": content_type,
            "insecure_ssl": "1" if insecure_ssl else "0",
        }
        if secret:
            config["secret"] = secret
        response = await self._raw_request(
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            "create webhook for",
            f"{owner}/{repo}",
            json_body={"name": "web", "active": True, "events": list(events), "config": config},
        )
        return response.json()

    async def delete_webhook(self, owner: str, repo: str, hook_id: int) -> None:
        await self._raw_request(
            "DELETE",
            f"/repos/{owner}/{repo}/hooks/{hook_id}",
            f"delete webhook {hook_id} for",
            f"{owner}/{repo}",
        )

    # --- Rate limit ---

    async def get_rate_limit(self) -> dict[str, Any]:
        """Current limits for every resource class.

        Also refreshes the quota manager with each class's own values.
        """
        data = await self._get_json("/rate_limit", "fetch rate limit for", self.caller_id)
        if self.quota_manager is not None:
            self.quota_manager.update_from_rate_limit(self.caller_id, data)
        return data

    # --- Core HTTP Methods ---

    async def _get_json(
        self,
        path: str,
        action: str,
        target: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        response = await self._raw_request("GET", path, action, target, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise GitHubClientError(
                f"Failed to {action} {target}: invalid JSON response"
            ) from e

    async def _raw_request(
        self,
        method: str,
        path: str,
        action: str,
        target: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request with retries and error handling.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: API path (e.g., /repos/owner/repo)
            action: Verb phrase for error messages ("fetch repository")
            target: Object of the action ("owner/repo")
            params: Query parameters
            json_body: JSON request body

        Returns:
            httpx.Response with a 2xx status

        Raises:
            GitHubNotFoundError: On 404
            RateLimitExceeded: On exhausted primary or secondary rate limit
            GitHubClientError: On other failures, after retries where retryable
        """
        prefix = f"Failed to {action} {target}"
        label = action.split(" ")[0] if action else method.lower()

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.request(
                    method, path, params=params, json=json_body
                )
            except httpx.TimeoutException as e:
                if attempt < self.max_retries:
                    backoff = min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1))
                    logger.warning(
                        "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.max_retries,
                    )
                    await asyncio.sleep(backoff)
                    continue
                github_requests_total.labels(operation=label, status="error").inc()
                raise GitHubClientError(
                    f"{prefix}: request timeout after {self.max_retries} retries: {e}"
                ) from e
            except httpx.HTTPError as e:
                github_requests_total.labels(operation=label, status="error").inc()
                raise GitHubClientError(f"{prefix}: HTTP error: {e}") from e

            self._record_quota(response)
            status = response.status_code

            if 200 <= status < 300:
                github_requests_total.labels(operation=label, status="success").inc()
                return response

            # Primary rate limit: 403 (or 429) with no remaining requests
            remaining = response.headers.get("X-RateLimit-Remaining", "")
            if status in (403, 429) and remaining == "0":
                reset = float(response.headers.get("X-RateLimit-Reset", "0") or 0)
                github_requests_total.labels(operation=label, status="rate_limited").inc()
                raise RateLimitExceeded(
                    datetime.fromtimestamp(reset, tz=timezone.utc),
                    f"{prefix}: GitHub API rate limit exceeded",
                )

            # Secondary rate limit (Retry-After header)
            if status == 429 or (status == 403 and "Retry-After" in response.headers):
                retry_after = int(response.headers.get("Retry-After", "60"))
                github_requests_total.labels(operation=label, status="rate_limited").inc()
                raise RateLimitExceeded(
                    datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc),
                    f"{prefix}: GitHub API secondary rate limit exceeded",
                )

            if status >= 500:
                if attempt < self.max_retries:
                    backoff = min(
                        self.MAX_BACKOFF,
                        self.BASE_BACKOFF ** (attempt + 1),
                    ) + random.uniform(0, 1)  # jitter
                    logger.warning(
                        "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                        status,
                        backoff,
                        attempt + 1,
                        self.max_retries,
                    )
                    await asyncio.sleep(backoff)
                    continue
                github_requests_total.labels(operation=label, status="error").inc()
                raise GitHubClientError(
                    f"{prefix}: GitHub API server error {status} after "
                    f"{self.max_retries} retries",
                    status_code=status,
                )

            # Client errors (non-retryable)
            message = self._error_message(response)
            if status == 404:
                github_requests_total.labels(operation=label, status="not_found").inc()
                raise GitHubNotFoundError(
                    f"{prefix}: GitHub API error 404: {message}", status_code=404
                )
            github_requests_total.labels(operation=label, status="error").inc()
            raise GitHubClientError(
                f"{prefix}: GitHub API error {status}: {message}", status_code=status
            )

        raise GitHubClientError(f"{prefix}: request failed after all retries")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except (ValueError, UnicodeDecodeError):
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return response.text or response.reason_phrase

    def _record_quota(self, response: httpx.Response) -> None:
        if self.quota_manager is None:
            return
        self.quota_manager.update_quota(self.caller_id, response.headers)

