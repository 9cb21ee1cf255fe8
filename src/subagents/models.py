"""Domain models for GitHub import and sync.

Repository snapshots, imported sub-agent records, sync bindings and sync
jobs. Records are plain dataclasses; the store owns their persistence.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "AgentStatus",
    "DomainAgentRecord",
    "LogLevel",
    "RemoteRepository",
    "RepositorySyncBinding",
    "SourceDocument",
    "SyncBindingConfig",
    "SyncJob",
    "SyncJobLog",
    "SyncJobStatus",
    "SyncJobType",
    "SyncStatus",
    "WebhookDelivery",
    "new_id",
    "parse_timestamp",
    "utcnow",
]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp as returned by the GitHub API.

    Accepts the 'Z' suffix, offsets, and datetime instances. Naive values are
    taken to be UTC. Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class AgentStatus(str, Enum):
    """Publication state of an imported sub-agent record."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    UNDER_REVIEW = "under_review"


class SyncStatus(str, Enum):
    """State of a repository sync binding."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SyncJobStatus(str, Enum):
    """Lifecycle of a sync job: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncJobStatus.COMPLETED, SyncJobStatus.FAILED)


class SyncJobType(str, Enum):
    FULL = "full"
    METADATA = "metadata"
    CONTENT = "content"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class RemoteRepository:
    """Read-only snapshot of a hosted repository as reported by the API.

    Built with from_api(); never mutated locally.
    """

    id: int
    name: str
    full_name: str
    owner_login: str
    html_url: str
    description: str | None = None
    default_branch: str = "main"
    private: bool = False
    fork: bool = False
    archived: bool = False
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    topics: tuple[str, ...] = ()
    license_name: str | None = None
    license_key: str | None = None
    homepage: str | None = None
    language: str | None = None
    has_pages: bool = False
    owner_html_url: str | None = None
    owner_avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    pushed_at: datetime | None = None

    @property
    def owner(self) -> str:
        return self.owner_login

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteRepository":
        """Build a snapshot from a GitHub repository JSON object."""
        owner = data.get("owner") or {}
        license_info = data.get("license") or {}
        full_name = data.get("full_name") or ""
        owner_login = owner.get("login") or (full_name.split("/")[0] if "/" in full_name else "")
        return cls(
            id=int(data.get("id") or 0),
            name=data.get("name") or "",
            full_name=full_name,
            owner_login=owner_login,
            html_url=data.get("html_url") or "",
            description=data.get("description"),
            default_branch=data.get("default_branch") or "main",
            private=bool(data.get("private", False)),
            fork=bool(data.get("fork", False)),
            archived=bool(data.get("archived", False)),
            stargazers_count=int(data.get("stargazers_count") or 0),
            forks_count=int(data.get("forks_count") or 0),
            open_issues_count=int(data.get("open_issues_count") or 0),
            topics=tuple(data.get("topics") or ()),
            license_name=license_info.get("name"),
            license_key=license_info.get("key"),
            homepage=data.get("homepage") or None,
            language=data.get("language"),
            has_pages=bool(data.get("has_pages", False)),
            owner_html_url=owner.get("html_url"),
            owner_avatar_url=owner.get("avatar_url"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            pushed_at=parse_timestamp(data.get("pushed_at")),
        )


@dataclass(frozen=True)
class SourceDocument:
    """A markdown file fetched from a repository tree."""

    path: str
    content: str
    sha: str


@dataclass
class DomainAgentRecord:
    """A sub-agent listing produced by an import.

    Provenance fields (github_*) tie the record back to the repository and
    file it came from; sync passes update them in place.
    """

    slug: str
    name: str
    description: str
    content: str
    id: str = field(default_factory=new_id)
    short_description: str = ""
    detailed_description: str | None = None
    tags: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    version: str = "1.0.0"
    license: str | None = None
    framework: str | None = None
    homepage_url: str | None = None
    category_id: str | None = None
    author_id: str | None = None
    status: AgentStatus = AgentStatus.DRAFT

    # Repository provenance
    github_url: str | None = None
    github_repo_name: str | None = None
    github_owner: str | None = None
    github_sha: str | None = None
    github_stars: int = 0
    github_forks: int = 0
    github_issues: int = 0
    github_language: str | None = None
    github_topics: list[str] = field(default_factory=list)
    last_github_sync: datetime | None = None
    file_path: str | None = None
    raw_markdown: str | None = None
    parsed_metadata: dict[str, Any] = field(default_factory=dict)

    # Attribution for third-party content
    original_author_github_username: str | None = None
    original_author_github_url: str | None = None
    original_author_avatar_url: str | None = None

    import_source: str = "github"
    requirements: list[str] = field(default_factory=list)
    installation_instructions: str | None = None
    usage_examples: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for APIs and logging."""
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "short_description": self.short_description,
            "detailed_description": self.detailed_description,
            "tags": list(self.tags),
            "tools": list(self.tools),
            "version": self.version,
            "license": self.license,
            "framework": self.framework,
            "homepage_url": self.homepage_url,
            "category_id": self.category_id,
            "author_id": self.author_id,
            "status": self.status.value,
            "github_url": self.github_url,
            "github_repo_name": self.github_repo_name,
            "github_owner": self.github_owner,
            "github_sha": self.github_sha,
            "github_stars": self.github_stars,
            "github_forks": self.github_forks,
            "file_path": self.file_path,
            "last_github_sync": (
                self.last_github_sync.isoformat() if self.last_github_sync else None
            ),
            "original_author_github_username": self.original_author_github_username,
            "requirements": list(self.requirements),
        }


@dataclass
class SyncBindingConfig:
    """Per-binding sync preferences."""

    readme_as_description: bool = False
    branch: str | None = None


@dataclass
class RepositorySyncBinding:
    """Ties one imported agent to the repository it was imported from.

    At most one binding exists per agent. Bindings are disabled, never deleted.
    """

    agent_id: str
    user_id: str
    repository_full_name: str
    id: str = field(default_factory=new_id)
    sync_enabled: bool = True
    auto_update: bool = False
    branch: str = "main"
    webhook_id: int | None = None
    last_sync_at: datetime | None = None
    last_commit_sha: str | None = None
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_error: str | None = None
    config: SyncBindingConfig = field(default_factory=SyncBindingConfig)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def owner_and_repo(self) -> tuple[str, str]:
        owner, _, repo = self.repository_full_name.partition("/")
        return owner, repo


@dataclass
class SyncJobLog:
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncJob:
    """One execution of a sync against a binding.

    Terminal states (completed, failed) are never left once entered.
    """

    binding_id: str
    job_type: SyncJobType = SyncJobType.FULL
    id: str = field(default_factory=new_id)
    status: SyncJobStatus = SyncJobStatus.PENDING
    progress: int = 0
    logs: list[SyncJobLog] = field(default_factory=list)
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition(self, status: SyncJobStatus) -> None:
        """Move to a new status, refusing to leave a terminal state."""
        if self.status.is_terminal:
            raise ValueError(
                f"Sync job {self.id} is already {self.status.value}; "
                f"cannot move to {status.value}"
            )
        self.status = status
        if status == SyncJobStatus.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        if status.is_terminal:
            self.completed_at = utcnow()
            if status == SyncJobStatus.COMPLETED:
                self.progress = 100

    def log(self, level: LogLevel, message: str, **metadata: Any) -> SyncJobLog:
        entry = SyncJobLog(level=level, message=message, metadata=metadata)
        self.logs.append(entry)
        return entry


@dataclass
class WebhookDelivery:
    """Record of an inbound webhook delivery."""

    event_type: str
    delivery_id: str | None = None
    action: str | None = None
    repository_full_name: str | None = None
    processed: bool = False
    error: str | None = None
    id: str = field(default_factory=new_id)
    received_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
