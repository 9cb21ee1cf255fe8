"""Sub-agent markdown parser.

Finds sub-agent definitions in a repository and turns them into SubAgentFile
objects. A sub-agent is a markdown file with a front-matter block:

    ---
    name: code-reviewer
    description: Reviews pull requests
    tools: Read, Grep, Glob
    ---
    You are a senior reviewer. ...

Files without front-matter are accepted when a name and description can be
recovered from the body (first heading, **Role**: line, first long line).

The whole tree is listed with one recursive call; each candidate blob is then
fetched on its own with retries. A file that cannot be fetched or does not
look like a sub-agent is skipped, never fatal.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import yaml
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from ...metrics import blob_fetch_retries_total
from ...timing import timed_operation
from .client import GitHubClient, GitHubClientError

logger = logging.getLogger("subagents.github.parser")

__all__ = [
    "EXCLUDED_FILENAMES",
    "SubAgentFile",
    "SubAgentMetadata",
    "SubAgentParser",
    "extract_first_paragraph",
    "extract_installation_instructions",
    "extract_metadata_from_body",
    "extract_requirements",
    "extract_tags",
    "extract_tools",
    "extract_usage_examples",
    "generate_slug",
    "is_valid_sub_agent",
    "load_front_matter",
    "normalize_agent_name",
    "parse_markdown_file",
    "parse_simple_front_matter",
    "slugify",
    "split_front_matter",
]

# Documentation files that are never sub-agents, matched on file name only
EXCLUDED_FILENAMES = frozenset(
    {
        "README.md",
        "CHANGELOG.md",
        "CONTRIBUTING.md",
        "LICENSE.md",
        "SECURITY.md",
        "CODE_OF_CONDUCT.md",
        "SUPPORT.md",
        "AUTHORS.md",
        "NOTICE.md",
        "CREDITS.md",
        "ACKNOWLEDGMENTS.md",
        "CLAUDE.md",
    }
)

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
FRONT_MATTER_PATTERN = re.compile(r"^---[ \t]*\n(.*?)\n---[ \t]*\n(.*)$", re.DOTALL)

MIN_BODY_CHARS = 50  # after front-matter
MIN_BARE_CONTENT_CHARS = 100  # without front-matter
BODY_SCAN_LINES = 30
MIN_DESCRIPTION_LINE = 30
MAX_TAGS = 10

CORE_TAGS = ("subagent", "claude-code")

# (keywords, tag) checked against the agent name
NAME_KEYWORD_TAGS = (
    (("test", "qa"), "testing"),
    (("review", "code"), "code-review"),
    (("debug",), "debugging"),
    (("security", "audit"), "security"),
    (("data", "sql"), "data"),
    (("deploy", "devops"), "devops"),
)

# (keyword, tag) checked against the description
DESCRIPTION_KEYWORD_TAGS = (
    ("test", "testing"),
    ("review", "code-review"),
    ("security", "security"),
    ("debug", "debugging"),
    ("data", "data"),
    ("frontend", "frontend"),
    ("backend", "backend"),
)

DEFAULT_REQUIREMENTS = ["Claude Code CLI"]


@dataclass
class SubAgentMetadata:
    """Metadata recovered from front-matter or the body.

    Known keys get their own fields; anything else lands in extra.
    """

    name: str | None = None
    description: str | None = None
    tools: list[str] | None = None
    category: str | None = None
    version: str | None = None
    author: str | None = None
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = ("name", "description", "tools", "category", "version", "author", "tags")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "SubAgentMetadata":
        def as_text(value: Any) -> str | None:
            if value is None:
                return None
            if isinstance(value, list):
                return ", ".join(str(v) for v in value)
            return str(value)

        tags = data.get("tags")
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]

        tools = data.get("tools")
        if isinstance(tools, str):
            tools = [tools]

        return cls(
            name=as_text(data.get("name")),
            description=as_text(data.get("description")),
            tools=list(tools) if tools is not None else None,
            category=as_text(data.get("category")),
            version=as_text(data.get("version")),
            author=as_text(data.get("author")),
            tags=list(tags or []),
            extra={k: v for k, v in data.items() if k not in cls.KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for key in self.KNOWN_KEYS:
            value = getattr(self, key)
            if value is not None and value != []:
                data[key] = value
        return data


@dataclass
class SubAgentFile:
    """A markdown file that passed sub-agent validation."""

    path: str
    name: str
    content: str  # raw markdown
    metadata: SubAgentMetadata
    parsed_content: str  # body without front-matter
    sha: str | None = None


# --- Text helpers ---


def slugify(text: str) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace, collapse hyphens."""
    slug = text.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def normalize_agent_name(name: str | None, path: str) -> str:
    """Return name if it is a valid slug, else derive one from the file name."""
    if name and NAME_PATTERN.match(name):
        return name
    base = path.rsplit("/", 1)[-1]
    if base.lower().endswith(".md"):
        base = base[:-3]
    derived = re.sub(r"[^a-z0-9]+", "-", base.lower()).strip("-")
    if not re.match(r"^[a-z]", derived):
        derived = f"agent-{derived}".rstrip("-")
    return derived


def generate_slug(name: str, owner: str | None = None, repo: str | None = None) -> str:
    """URL slug for an agent, suffixed with owner and repo when given.

    The suffix keeps slugs unique across repositories that ship agents with
    the same name.

        >>> generate_slug("Code Reviewer", "acme", "tools")
        'code-reviewer-acme-tools'
    """
    slug = slugify(name or "") or "unnamed-agent"
    if owner and repo:
        repo_slug = slugify(f"{owner}-{repo}")
        if repo_slug:
            slug = f"{slug}-{repo_slug}"
    return slug


def split_front_matter(markdown: str) -> tuple[str, str] | None:
    """Split '---' front-matter from the body. None when there is no block."""
    match = FRONT_MATTER_PATTERN.match(markdown.replace("\r\n", "\n"))
    if not match:
        return None
    return match.group(1), match.group(2)


def _strip_quotes(value: str) -> str:
    return re.sub(r"^['\"]|['\"]$", "", value)


def _parse_list(value: str) -> list[str]:
    inner = value[1:-1]
    return [_strip_quotes(v.strip()) for v in inner.split(",")] if inner.strip() else []


def parse_simple_front_matter(block: str) -> dict[str, Any]:
    """Parse flat 'key: value' lines.

    Not YAML: no nesting and no multi-line values. '#' lines are comments,
    surrounding quotes are removed, '[a, b]' becomes a list and tools may be a
    comma-separated string.
    """
    data: dict[str, Any] = {}
    for line in block.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = _strip_quotes(value.strip())

        if value.startswith("[") and value.endswith("]"):
            data[key] = _parse_list(value)
        elif key == "tools":
            if value:
                data[key] = [t.strip() for t in value.split(",") if t.strip()]
        else:
            data[key] = value
    return data


def load_front_matter(block: str) -> dict[str, Any]:
    """Parse a front-matter block as YAML.

    Scalars stay strings (``version: 1.10`` is not a float, ``name: null`` is
    not None). Falls back to parse_simple_front_matter() when the block is not
    valid YAML or not a mapping; agent descriptions often carry unquoted colons.
    """
    try:
        data = yaml.load(block, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        logger.debug(
            "front_matter_yaml_failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return parse_simple_front_matter(block)
    if not isinstance(data, dict):
        return parse_simple_front_matter(block)

    tools = data.get("tools")
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]
        if tools:
            data["tools"] = tools
        else:
            del data["tools"]
    return data


def extract_heading_name(line: str) -> str | None:
    if not line.startswith("# "):
        return None
    return slugify(line[2:].strip()) or None


def extract_description_line(line: str) -> str | None:
    lowered = line.lower()
    for prefix in ("**role**:", "**description**:"):
        if lowered.startswith(prefix):
            return line[len(prefix):].strip() or None
    if (
        line
        and not line.startswith(("#", "-", "**"))
        and len(line) >= MIN_DESCRIPTION_LINE
        and "tools:" not in lowered
    ):
        return line
    return None


def extract_tools_line(line: str) -> list[str] | None:
    if "tools:" not in line.lower():
        return None
    match = re.search(r"tools?:\s*(.+)", line, re.IGNORECASE)
    if not match:
        return None
    tools = [t.strip().strip("`*") for t in match.group(1).split(",")]
    return [t for t in tools if t] or None


def extract_metadata_from_body(content: str) -> SubAgentMetadata:
    """Heuristic metadata for markdown without front-matter.

    Scans the first lines for a tools line, the first '# ' heading (name), and
    a **Role**: / **Description**: line or the first long plain line
    (description). Missing pieces stay None.
    """
    metadata = SubAgentMetadata()
    for raw in content.replace("\r\n", "\n").split("\n")[:BODY_SCAN_LINES]:
        line = raw.strip()

        tools = extract_tools_line(line)
        if tools:
            metadata.tools = tools

        if metadata.name is None:
            metadata.name = extract_heading_name(line)

        if metadata.description is None:
            metadata.description = extract_description_line(line)
    return metadata


def is_valid_sub_agent(metadata: SubAgentMetadata, content: str) -> bool:
    """Whether parsed metadata plus raw content describe a usable sub-agent."""
    if not metadata.name or not metadata.description or not metadata.description.strip():
        return False
    if not NAME_PATTERN.match(metadata.name):
        return False

    parts = split_front_matter(content)
    if parts is None:
        return len(content.strip()) > MIN_BARE_CONTENT_CHARS

    body = parts[1].strip()
    if len(re.sub(r"\s", "", body)) < MIN_BODY_CHARS:
        return False

    if metadata.tools is not None:
        if not all(isinstance(t, str) and t.strip() for t in metadata.tools):
            return False
    return True


def parse_markdown_file(path: str, content: str, sha: str | None = None) -> SubAgentFile | None:
    """Parse one markdown file. Returns None for anything that is not a sub-agent."""
    try:
        parts = split_front_matter(content)
        if parts is not None:
            metadata = SubAgentMetadata.from_mapping(load_front_matter(parts[0]))
            body = parts[1].strip()
        else:
            metadata = extract_metadata_from_body(content)
            body = content

        metadata.name = normalize_agent_name(metadata.name, path)
        if not is_valid_sub_agent(metadata, content):
            return None
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning("markdown_parse_failed", extra={"path": path, "error": str(e)})
        return None

    return SubAgentFile(
        path=path,
        name=metadata.name,
        content=content,
        metadata=metadata,
        parsed_content=body,
        sha=sha,
    )


# --- Content extraction used by the importer ---


def extract_tools(metadata: SubAgentMetadata) -> list[str]:
    """Declared tools. Empty means the agent inherits every tool."""
    return list(metadata.tools or [])


def extract_tags(metadata: SubAgentMetadata) -> list[str]:
    """Core tags, declared tags and category, and keyword-derived tags (max 10)."""
    tags: list[str] = list(CORE_TAGS)

    def add(tag: str) -> None:
        tag = tag.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)

    for tag in metadata.tags:
        add(str(tag))
    if metadata.category:
        add(metadata.category)

    name = metadata.name or ""
    for keywords, tag in NAME_KEYWORD_TAGS:
        if any(k in name for k in keywords):
            add(tag)

    description = (metadata.description or "").lower()
    for keyword, tag in DESCRIPTION_KEYWORD_TAGS:
        if keyword in description:
            add(tag)

    return tags[:MAX_TAGS]


def extract_first_paragraph(content: str) -> str:
    """First plain line longer than 20 characters, cut at 500."""
    for line in content.split("\n"):
        stripped = line.strip()
        if (
            stripped
            and not stripped.startswith(("#", "-", "*"))
            and "tools:" not in stripped
            and len(stripped) > 20
        ):
            return stripped[:500]
    return ""


def extract_requirements(metadata: SubAgentMetadata, content: str) -> list[str]:
    declared = metadata.extra.get("requirements")
    if declared:
        return list(declared) if isinstance(declared, list) else [str(declared)]

    match = re.search(
        r"(?:requirements?|dependencies|prerequisites):\s*\n((?:\s*[-*]\s*.+\n?)+)",
        content,
        re.IGNORECASE,
    )
    if match:
        items = [re.sub(r"^\s*[-*]\s*", "", line).strip() for line in match.group(1).split("\n")]
        items = [item for item in items if item]
        if items:
            return items
    return list(DEFAULT_REQUIREMENTS)


def _extract_section(content: str, titles: str) -> str | None:
    match = re.search(
        rf"^#{{1,2}} (?:{titles})[ \t]*\n(.*?)(?=\n#{{1,2}} |\Z)",
        content,
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    if not match:
        return None
    return match.group(1).strip() or None


def extract_installation_instructions(content: str) -> str | None:
    return _extract_section(content, "Installation|Setup")


def extract_usage_examples(content: str) -> str | None:
    return _extract_section(content, "Usage|Examples")


# --- Repository parsing ---


def _is_rate_limit_error(error: BaseException | None) -> bool:
    message = str(error or "").lower()
    return "rate limit" in message or "403" in message


def blob_retry_wait(retry_state: RetryCallState) -> float:
    """Backoff before the next blob fetch attempt.

    Rate limit failures wait 2s, 4s, 8s; other failures wait 0.5s, 1s, 1.5s.
    """
    attempt = retry_state.attempt_number
    error = retry_state.outcome.exception() if retry_state.outcome else None
    if _is_rate_limit_error(error):
        return SubAgentParser.RATE_LIMIT_BACKOFF * 2 ** (attempt - 1)
    return SubAgentParser.TRANSIENT_BACKOFF * attempt


class SubAgentParser:
    """Finds and parses sub-agent files in a GitHub repository.

    Example:
        >>> parser = SubAgentParser(client)
        >>> agents = await parser.parse_repository_sub_agents("acme", "agents")
        >>> [a.name for a in agents]
        ['code-reviewer', 'test-writer']
    """

    MAX_RETRIES = 3
    RATE_LIMIT_BACKOFF = 2.0  # seconds, doubled per retry
    TRANSIENT_BACKOFF = 0.5  # seconds, grows linearly per retry
    FILE_DELAY = 0.1  # seconds between blob fetches
    FILE_DELAY_STEP = 0.2  # added per retry the previous blob needed
    MAX_FILE_DELAY = 1.0

    def __init__(
        self,
        client: GitHubClient,
        max_retries: int = MAX_RETRIES,
        file_delay: float = FILE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.max_retries = max_retries
        self.file_delay = file_delay
        self._sleep = sleep

    @staticmethod
    def is_candidate(item: dict[str, Any]) -> bool:
        """Tree entry is a markdown blob not on the documentation deny-list."""
        if item.get("type") != "blob":
            return False
        path = item.get("path") or ""
        if not path.endswith(".md"):
            return False
        return path.rsplit("/", 1)[-1] not in EXCLUDED_FILENAMES

    async def parse_repository_sub_agents(
        self, owner: str, repo: str, branch: str = "main"
    ) -> list[SubAgentFile]:
        """Parse every sub-agent file in a repository.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch, tag or tree SHA to read

        Returns:
            Valid sub-agent files in tree order; empty when none qualify.

        Raises:
            GitHubClientError: When the tree itself cannot be listed.
        """
        target = f"{owner}/{repo}"
        with timed_operation(
            "parse_repository_sub_agents", logger, extra={"repository": target}
        ) as ctx:
            try:
                tree = await self.client.get_tree(owner, repo, branch, recursive=True)
            except GitHubClientError as e:
                raise GitHubClientError(
                    f"Failed to parse repository sub-agents for {target}: {e}",
                    status_code=e.status_code,
                ) from e

            if not tree or not isinstance(tree.get("tree"), list):
                raise GitHubClientError(
                    f"Failed to parse repository sub-agents for {target}: "
                    "Repository tree not accessible"
                )
            if tree.get("truncated"):
                logger.warning("repository_tree_truncated", extra={"repository": target})

            candidates = [item for item in tree["tree"] if self.is_candidate(item)]
            logger.info(
                "sub_agent_candidates_found",
                extra={"repository": target, "candidates": len(candidates)},
            )

            results: list[SubAgentFile] = []
            skipped = 0
            retries = 0
            for index, item in enumerate(candidates):
                if index > 0 and self.file_delay:
                    await self._sleep(self.delay_after(retries))

                content, retries = await self._fetch_blob(owner, repo, item)
                if content is None:
                    skipped += 1
                    continue

                parsed = parse_markdown_file(item["path"], content, sha=item.get("sha"))
                if parsed is None:
                    logger.debug(
                        "not_a_sub_agent",
                        extra={"repository": target, "path": item["path"]},
                    )
                    continue
                results.append(parsed)

            ctx.update(
                candidates=len(candidates), parsed=len(results), fetch_failures=skipped
            )
            return results

    def delay_after(self, retries: int) -> float:
        """Pause before the next blob, longer when the previous one needed retries."""
        return min(self.file_delay + retries * self.FILE_DELAY_STEP, self.MAX_FILE_DELAY)

    async def _fetch_blob(
        self, owner: str, repo: str, item: dict[str, Any]
    ) -> tuple[str | None, int]:
        """Fetch one blob with retries.

        Returns the content (None once retries are used up) and the number of
        retries spent.
        """
        path = item.get("path")
        retries = 0

        def before_sleep(retry_state: RetryCallState) -> None:
            nonlocal retries
            retries += 1
            error = retry_state.outcome.exception()
            reason = "rate_limit" if _is_rate_limit_error(error) else "transient"
            blob_fetch_retries_total.labels(reason=reason).inc()
            logger.warning(
                "blob_fetch_retry",
                extra={
                    "path": path,
                    "attempt": retry_state.attempt_number,
                    "reason": reason,
                    "wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
                    "error": str(error),
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=blob_retry_wait,
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    content = await self.client.get_blob_content(owner, repo, item["sha"])
                    return content, retries
        except Exception as e:
            logger.warning(
                "blob_fetch_failed",
                extra={
                    "repository": f"{owner}/{repo}",
                    "path": path,
                    "attempts": self.max_retries + 1,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
        return None, retries
