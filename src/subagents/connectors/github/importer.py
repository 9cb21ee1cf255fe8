"""Repository importer: GitHub repositories in, sub-agent records out.

import_repository() is the core: parse every sub-agent file, keep the ones the
caller selected, enrich with best-effort repository data (latest commit,
release, README, package.json) and convert each file into a DomainAgentRecord.

The URL, batch, user and search flows wrap it and report one ImportResult per
repository. One repository's failure never affects another's result.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from ...metrics import agents_imported_total, import_duration_seconds, imports_total
from ...models import AgentStatus, DomainAgentRecord, RemoteRepository, utcnow
from ...timing import timed_operation
from .client import GitHubClient, parse_github_url
from .parser import (
    SubAgentFile,
    SubAgentParser,
    extract_first_paragraph,
    extract_installation_instructions,
    extract_requirements,
    extract_tags,
    extract_tools,
    extract_usage_examples,
    generate_slug,
)

logger = logging.getLogger("subagents.github.importer")

__all__ = [
    "FEATURES_DETECTED",
    "GitHubImportService",
    "ImportContext",
    "ImportOptions",
    "ImportResult",
    "ImportValidation",
    "NoSubAgentsFoundError",
    "RepositoryFilters",
    "RepositoryImportError",
    "SelectedFilesNotFoundError",
]

FEATURES_DETECTED = ["subagent-parsing", "markdown-extraction"]
DEFAULT_VERSION = "1.0.0"
MAX_TAGS = 10
MAX_DETAILED_DESCRIPTION = 5000


class RepositoryImportError(Exception):
    """Raised when a repository yields no importable sub-agents."""

    pass


class NoSubAgentsFoundError(RepositoryImportError):
    """The repository contains no valid sub-agent files."""

    pass


class SelectedFilesNotFoundError(RepositoryImportError):
    """None of the caller's selected paths are valid sub-agents in the repository."""

    pass


@dataclass
class ImportOptions:
    """Caller preferences for an import.

    Attributes:
        readme_as_description: Use the cleaned README as detailed description
        tags_from_topics: Add repository topics to agent tags
        version_from_releases: Fall back to the latest release tag for version
        auto_publish: Create records as published instead of draft
        category_mapping: topic or lower-cased language -> category id
        default_category: Category id when no mapping matches
        selected_agent_paths: Only import these file paths
    """

    readme_as_description: bool = False
    tags_from_topics: bool = False
    version_from_releases: bool = False
    auto_publish: bool = False
    category_mapping: dict[str, str] = field(default_factory=dict)
    default_category: str | None = None
    selected_agent_paths: list[str] = field(default_factory=list)


@dataclass
class ImportContext:
    user_id: str
    options: ImportOptions = field(default_factory=ImportOptions)


@dataclass
class RepositoryFilters:
    """Filters for import_user_repositories()."""

    include_private: bool = False
    include_forks: bool = False
    min_stars: int = 0
    language: str | None = None
    topics: list[str] = field(default_factory=list)

    def matches(self, repository: RemoteRepository) -> bool:
        if repository.private and not self.include_private:
            return False
        if repository.fork and not self.include_forks:
            return False
        if self.min_stars and repository.stargazers_count < self.min_stars:
            return False
        if self.language and repository.language != self.language:
            return False
        if self.topics and not any(t in repository.topics for t in self.topics):
            return False
        return True


@dataclass
class ImportValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class ImportResult:
    """Outcome of importing one repository."""

    success: bool = False
    agents: list[DomainAgentRecord] = field(default_factory=list)
    repository: RemoteRepository | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    files_processed: int = 0
    features_detected: list[str] = field(default_factory=list)

    @property
    def agent(self) -> DomainAgentRecord | None:
        """First imported agent, for single-agent callers."""
        return self.agents[0] if self.agents else None

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "processing_time_ms": self.processing_time_ms,
            "files_processed": self.files_processed,
            "features_detected": list(self.features_detected),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "agents": [a.to_dict() for a in self.agents],
            "repository": self.repository.full_name if self.repository else None,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": self.metadata,
        }


@dataclass
class _Enrichment:
    """Best-effort repository data gathered alongside parsing."""

    commit_sha: str | None = None
    release_tag: str | None = None
    readme: str | None = None
    package_json: dict[str, Any] | None = None


# --- Pure helpers ---


def strip_version_prefix(tag: str) -> str:
    return re.sub(r"^[vV]", "", tag.strip())


def clean_readme(readme: str) -> str:
    """README trimmed for display: no images, link targets, code blocks or h4+."""
    text = re.sub(r"^#{4,}.*$", "", readme, flags=re.MULTILINE)
    text = re.sub(r"!\[.*?\]\(.*?\)", "", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"```.*?```", "", text, flags=re.DOTALL)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()[:MAX_DETAILED_DESCRIPTION]


# (dependency names, framework label), first match wins
_FRAMEWORKS = (
    (("next",), "Next.js"),
    (("react",), "React"),
    (("vue",), "Vue.js"),
    (("@angular/core", "angular"), "Angular"),
    (("svelte",), "Svelte"),
    (("express",), "Express.js"),
    (("@nestjs/core",), "NestJS"),
    (("fastify",), "Fastify"),
)


def detect_framework(package_json: dict[str, Any] | None) -> str | None:
    if not package_json:
        return None
    deps: dict[str, Any] = {}
    for key in ("dependencies", "devDependencies"):
        section = package_json.get(key)
        if isinstance(section, dict):
            deps.update(section)
    for names, label in _FRAMEWORKS:
        if any(name in deps for name in names):
            return label
    return None


def map_category(repository: RemoteRepository, options: ImportOptions) -> str | None:
    """Category id from topic mapping, then language mapping, then the default."""
    mapping = options.category_mapping
    if mapping:
        for topic in repository.topics:
            if topic in mapping:
                return mapping[topic]
        if repository.language and repository.language.lower() in mapping:
            return mapping[repository.language.lower()]
    return options.default_category


def validate_import_data(repository: RemoteRepository) -> ImportValidation:
    """Structural preconditions, checked before any parsing work."""
    errors: list[str] = []
    if not repository.name:
        errors.append("Repository name is required")
    if not repository.owner_login:
        errors.append("Repository owner is required")
    if repository.private:
        errors.append("Private repositories cannot be imported")
    if repository.archived:
        errors.append("Archived repositories should not be imported")
    return ImportValidation(valid=not errors, errors=errors)


class GitHubImportService:
    """Imports sub-agents from GitHub repositories.

    Example:
        >>> importer = GitHubImportService(client)
        >>> result = await importer.import_from_url(
        ...     "https://github.com/acme/agents", ImportContext(user_id="u1")
        ... )
        >>> result.success, len(result.agents)
        (True, 3)
    """

    BATCH_SIZE = 5
    BATCH_DELAY = 1.0  # seconds

    def __init__(
        self,
        client: GitHubClient,
        parser: SubAgentParser | None = None,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
    ) -> None:
        self.client = client
        self.parser = parser or SubAgentParser(client)
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    # --- Single repository ---

    async def import_repository(
        self, repository: RemoteRepository, context: ImportContext
    ) -> list[DomainAgentRecord]:
        """Convert every selected sub-agent file in a repository.

        Raises:
            NoSubAgentsFoundError: The repository has no valid sub-agent files
            SelectedFilesNotFoundError: selected_agent_paths matched nothing
            RepositoryImportError: Parsing failed or no file could be converted
        """
        agents, _ = await self._import(repository, context)
        return agents

    async def _import(
        self, repository: RemoteRepository, context: ImportContext
    ) -> tuple[list[DomainAgentRecord], list[str]]:
        options = context.options
        owner, name = repository.owner_login, repository.name
        warnings: list[str] = []

        try:
            files = await self.parser.parse_repository_sub_agents(
                owner, name, repository.default_branch
            )
        except Exception as e:
            raise RepositoryImportError(
                f"Failed to import sub-agents from {repository.full_name}: {e}"
            ) from e

        if not files:
            raise NoSubAgentsFoundError(
                "No valid sub-agent files found in repository. Please ensure your "
                "repository contains properly formatted sub-agent markdown files."
            )

        if options.selected_agent_paths:
            selected = set(options.selected_agent_paths)
            files = [f for f in files if f.path in selected]
            if not files:
                raise SelectedFilesNotFoundError(
                    "None of the selected agent files were found in the repository."
                )

        enrichment = await self._enrich(repository, options, warnings)
        category_id = map_category(repository, options)

        agents: list[DomainAgentRecord] = []
        for sub_agent in files:
            try:
                agents.append(
                    self.convert_to_agent(
                        sub_agent, repository, context, enrichment, category_id
                    )
                )
            except Exception as e:
                logger.warning(
                    "sub_agent_conversion_failed",
                    extra={
                        "repository": repository.full_name,
                        "path": sub_agent.path,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                warnings.append(f"Failed to convert {sub_agent.path}: {e}")

        if not agents:
            raise RepositoryImportError(
                "Failed to process any sub-agent files from repository"
            )
        return agents, warnings

    async def _enrich(
        self,
        repository: RemoteRepository,
        options: ImportOptions,
        warnings: list[str],
    ) -> _Enrichment:
        """Gather optional repository data; individual failures become warnings."""
        owner, name = repository.owner_login, repository.name
        lookups: dict[str, Any] = {
            "commit": self.client.get_latest_commit(owner, name),
            "package_json": self.client.get_package_json(owner, name),
        }
        if options.version_from_releases:
            lookups["release"] = self.client.get_latest_release(owner, name)
        if options.readme_as_description:
            lookups["readme"] = self.client.get_repository_readme(owner, name)

        results = dict(
            zip(lookups, await asyncio.gather(*lookups.values(), return_exceptions=True))
        )

        enrichment = _Enrichment()
        for key, value in results.items():
            if isinstance(value, Exception):
                logger.info(
                    "import_enrichment_skipped",
                    extra={
                        "repository": repository.full_name,
                        "lookup": key,
                        "error": str(value),
                    },
                )
                warnings.append(f"Could not fetch {key.replace('_', ' ')}: {value}")
                continue
            if value is None:
                continue
            if key == "commit":
                enrichment.commit_sha = value.get("sha")
            elif key == "release":
                enrichment.release_tag = value.get("tag_name")
            elif key == "readme":
                enrichment.readme = value
            elif key == "package_json":
                enrichment.package_json = value
        return enrichment

    def convert_to_agent(
        self,
        sub_agent: SubAgentFile,
        repository: RemoteRepository,
        context: ImportContext,
        enrichment: _Enrichment | None = None,
        category_id: str | None = None,
    ) -> DomainAgentRecord:
        """Build the domain record for one parsed sub-agent file."""
        enrichment = enrichment or _Enrichment()
        options = context.options
        metadata = sub_agent.metadata
        body = sub_agent.parsed_content

        tags = extract_tags(metadata)
        if options.tags_from_topics:
            for topic in repository.topics:
                if topic.lower() not in tags:
                    tags.append(topic.lower())
        tags = tags[:MAX_TAGS]

        if metadata.version:
            version = metadata.version
        elif options.version_from_releases and enrichment.release_tag:
            version = strip_version_prefix(enrichment.release_tag)
        else:
            version = DEFAULT_VERSION

        detailed = None
        if options.readme_as_description and enrichment.readme:
            detailed = clean_readme(enrichment.readme)

        return DomainAgentRecord(
            slug=generate_slug(sub_agent.name, repository.owner_login, repository.name),
            name=sub_agent.name,
            description=metadata.description or "",
            content=body or metadata.description or "",
            short_description=extract_first_paragraph(body),
            detailed_description=detailed,
            tags=tags,
            tools=extract_tools(metadata),
            version=version,
            license=repository.license_name,
            framework=detect_framework(enrichment.package_json),
            homepage_url=repository.homepage,
            category_id=category_id,
            author_id=context.user_id,
            status=AgentStatus.PUBLISHED if options.auto_publish else AgentStatus.DRAFT,
            github_url=repository.html_url,
            github_repo_name=repository.full_name,
            github_owner=repository.owner_login,
            github_sha=enrichment.commit_sha,
            github_stars=repository.stargazers_count,
            github_forks=repository.forks_count,
            github_issues=repository.open_issues_count,
            github_language=repository.language,
            github_topics=list(repository.topics),
            last_github_sync=utcnow(),
            file_path=sub_agent.path,
            raw_markdown=sub_agent.content,
            parsed_metadata=metadata.to_dict(),
            original_author_github_username=repository.owner_login,
            original_author_github_url=repository.owner_html_url,
            original_author_avatar_url=repository.owner_avatar_url,
            import_source="github_import",
            requirements=extract_requirements(metadata, body),
            installation_instructions=extract_installation_instructions(body),
            usage_examples=extract_usage_examples(body),
        )

    # --- Result-producing flows ---

    async def import_from_url(self, url: str, context: ImportContext) -> ImportResult:
        """Import a repository by URL. Never raises; failures land in errors."""
        start = time.perf_counter()
        result = ImportResult(features_detected=list(FEATURES_DETECTED))
        try:
            ref = parse_github_url(url)
            repository = await self.client.get_repository(ref.owner, ref.repo)
            result.repository = repository
            await self._fill_result(result, repository, context)
        except Exception as e:
            result.errors.append(f"Import failed: {e}")
        self._finish(result, start)
        return result

    async def import_and_store(
        self, url: str, context: ImportContext, store: Any
    ) -> ImportResult:
        """import_from_url() followed by an idempotent upsert of each record.

        Upserts are keyed on slug, so importing the same repository twice
        updates the existing records instead of duplicating them.
        """
        result = await self.import_from_url(url, context)
        if not result.success:
            return result
        stored: list[DomainAgentRecord] = []
        for agent in result.agents:
            try:
                stored.append(await store.upsert_agent(agent))
            except Exception as e:
                result.errors.append(f"Failed to store {agent.slug}: {e}")
        result.agents = stored
        result.success = bool(stored) and not result.errors
        return result

    async def preview_import(
        self, url: str, context: ImportContext
    ) -> list[DomainAgentRecord]:
        """Records an import would create, without storing anything."""
        ref = parse_github_url(url)
        repository = await self.client.get_repository(ref.owner, ref.repo)
        return await self.import_repository(repository, context)

    async def batch_import(
        self, repositories: list[RemoteRepository], context: ImportContext
    ) -> list[ImportResult]:
        """Import repositories in groups of batch_size, pausing between groups.

        Returns one result per input repository, in input order.
        """
        results: list[ImportResult] = []
        for offset in range(0, len(repositories), self.batch_size):
            if offset and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            batch = repositories[offset : offset + self.batch_size]
            results.extend(
                await asyncio.gather(*(self._import_one(r, context) for r in batch))
            )
        return results

    async def _import_one(
        self, repository: RemoteRepository, context: ImportContext
    ) -> ImportResult:
        start = time.perf_counter()
        result = ImportResult(repository=repository)
        validation = validate_import_data(repository)
        if not validation.valid:
            result.errors.extend(validation.errors)
            self._finish(result, start)
            return result
        try:
            await self._fill_result(result, repository, context)
        except Exception as e:
            result.errors.append(f"Failed to import {repository.full_name}: {e}")
        else:
            result.features_detected = list(FEATURES_DETECTED)
        self._finish(result, start)
        return result

    async def import_user_repositories(
        self,
        username: str,
        context: ImportContext,
        filters: RepositoryFilters | None = None,
    ) -> list[ImportResult]:
        filters = filters or RepositoryFilters()
        try:
            repositories = await self.client.list_user_repositories(
                username,
                type="all" if filters.include_private else "owner",
                sort="updated",
                direction="desc",
                per_page=100,
            )
        except Exception as e:
            return [
                ImportResult(
                    errors=[f"Failed to fetch repositories for user {username}: {e}"]
                )
            ]
        return await self.batch_import(
            [r for r in repositories if filters.matches(r)], context
        )

    async def search_and_import(
        self,
        query: str,
        context: ImportContext,
        sort: str = "stars",
        order: str = "desc",
        limit: int = 10,
    ) -> list[ImportResult]:
        try:
            repositories, _ = await self.client.search_repositories(
                query, sort=sort, order=order, per_page=min(max(limit, 1), 100)
            )
        except Exception as e:
            return [ImportResult(errors=[f"Search failed: {e}"])]
        return await self.batch_import(repositories[:limit], context)

    validate_import_data = staticmethod(validate_import_data)

    # --- Internals ---

    async def _fill_result(
        self, result: ImportResult, repository: RemoteRepository, context: ImportContext
    ) -> None:
        with timed_operation(
            "import_repository", logger, extra={"repository": repository.full_name}
        ) as ctx:
            agents, warnings = await self._import(repository, context)
            ctx["agents"] = len(agents)
        result.agents = agents
        result.warnings.extend(warnings)
        result.files_processed = len(agents)
        result.success = True

    @staticmethod
    def _finish(result: ImportResult, start: float) -> None:
        elapsed = time.perf_counter() - start
        result.processing_time_ms = int(elapsed * 1000)
        import_duration_seconds.observe(elapsed)
        imports_total.labels(status="success" if result.success else "failed").inc()
        if result.success:
            agents_imported_total.inc(len(result.agents))
