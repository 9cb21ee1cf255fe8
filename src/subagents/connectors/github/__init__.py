"""GitHub integration package.

Async REST client with quota tracking, sub-agent markdown parsing, repository
import, repository sync with webhook dispatch, and a quota-aware request
throttler.
"""

from .client import (
    GitHubClient,
    GitHubClientError,
    GitHubNotFoundError,
    InvalidGitHubUrlError,
    RateLimitExceeded,
    parse_github_url,
)
from .importer import (
    GitHubImportService,
    ImportContext,
    ImportOptions,
    ImportResult,
    RepositoryImportError,
)
from .parser import SubAgentFile, SubAgentMetadata, SubAgentParser, parse_markdown_file
from .quota import QuotaAlert, QuotaManager
from .sync import GitHubSyncService, SyncEvent, SyncOptions, SyncResult
from .throttle import QueueClearedError, RequestThrottler
from .webhooks import GitHubWebhookHandler

__all__ = [
    "GitHubClient",
    "GitHubClientError",
    "GitHubImportService",
    "GitHubNotFoundError",
    "GitHubSyncService",
    "GitHubWebhookHandler",
    "ImportContext",
    "ImportOptions",
    "ImportResult",
    "InvalidGitHubUrlError",
    "QueueClearedError",
    "QuotaAlert",
    "QuotaManager",
    "RateLimitExceeded",
    "RepositoryImportError",
    "RequestThrottler",
    "SubAgentFile",
    "SubAgentMetadata",
    "SubAgentParser",
    "SyncEvent",
    "SyncOptions",
    "SyncResult",
    "parse_github_url",
    "parse_markdown_file",
]
