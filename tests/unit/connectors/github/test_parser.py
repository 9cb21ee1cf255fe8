"""Tests for the sub-agent markdown parser.

Covers front-matter parsing, body heuristics, validation, slug generation,
content extraction helpers and whole-repository parsing with blob retries.
"""

import string
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import REVIEWER_MD
from subagents.connectors.github.client import GitHubClientError
from subagents.connectors.github.parser import (
    SubAgentMetadata,
    SubAgentParser,
    extract_first_paragraph,
    extract_installation_instructions,
    extract_metadata_from_body,
    extract_requirements,
    extract_tags,
    extract_usage_examples,
    generate_slug,
    load_front_matter,
    normalize_agent_name,
    parse_markdown_file,
    parse_simple_front_matter,
    slugify,
    split_front_matter,
)

BODY = (
    "You are a meticulous assistant. Work through the task step by step, "
    "explain every decision and keep answers short."
)

BARE_AGENT = """# Test Writer

**Role**: Writes focused unit tests for new code

Reads the module under test, lists the behaviours worth covering and writes
small, independent pytest cases for each of them.
"""


# =============================================================================
# Front-matter
# =============================================================================


class TestFrontMatter:
    """Front-matter parsing between --- markers."""

    def test_split_front_matter(self):
        block, body = split_front_matter(REVIEWER_MD)
        assert block.startswith("name: code-reviewer")
        assert body.startswith("You are a senior code reviewer")

    def test_split_front_matter_handles_crlf(self):
        parts = split_front_matter(REVIEWER_MD.replace("\n", "\r\n"))
        assert parts is not None

    def test_no_front_matter(self):
        assert split_front_matter("# Just a heading\n\nText") is None

    def test_parse_simple_front_matter(self):
        data = parse_simple_front_matter(
            "\n".join(
                [
                    "# comment line",
                    'name: "code-reviewer"',
                    "description: Reviews code: carefully",
                    "tools: Read, Grep ,Glob",
                    "tags: [review, 'quality']",
                    "model: sonnet",
                    "not a pair",
                ]
            )
        )
        assert data == {
            "name": "code-reviewer",
            "description": "Reviews code: carefully",
            "tools": ["Read", "Grep", "Glob"],
            "tags": ["review", "quality"],
            "model": "sonnet",
        }

    def test_empty_tools_means_no_tools_declared(self):
        assert "tools" not in parse_simple_front_matter("name: x\ntools:")

    def test_load_front_matter_yaml(self):
        data = load_front_matter(
            "name: code-reviewer\n"
            "description: >\n  Reviews pull requests\n  for style\n"
            "tools: Read, Grep\n"
            "version: 1.10\n"
            "tags:\n  - review\n  - quality\n"
        )

        assert data["description"] == "Reviews pull requests for style\n"
        assert data["tools"] == ["Read", "Grep"]
        assert data["version"] == "1.10"
        assert data["tags"] == ["review", "quality"]

    def test_load_front_matter_keeps_scalars_as_text(self):
        data = load_front_matter("name: null\ndescription: yes")
        assert data == {"name": "null", "description": "yes"}

    def test_load_front_matter_falls_back_on_invalid_yaml(self):
        data = load_front_matter("name: reviewer\ndescription: Use this: when reviewing")
        assert data["description"] == "Use this: when reviewing"

    def test_load_front_matter_empty_tools(self):
        assert "tools" not in load_front_matter("name: x\ntools:")

    def test_metadata_from_mapping_keeps_unknown_keys(self):
        metadata = SubAgentMetadata.from_mapping(
            {"name": "x", "tags": "a, b", "model": "opus", "tools": "Read"}
        )
        assert metadata.tags == ["a", "b"]
        assert metadata.tools == ["Read"]
        assert metadata.extra == {"model": "opus"}
        assert metadata.to_dict() == {
            "model": "opus",
            "name": "x",
            "tools": ["Read"],
            "tags": ["a", "b"],
        }


# =============================================================================
# Parsing single files
# =============================================================================


class TestParseMarkdownFile:
    """Acceptance and rejection of individual files."""

    def test_front_matter_agent(self):
        parsed = parse_markdown_file("agents/reviewer.md", REVIEWER_MD, sha="sha1")

        assert parsed is not None
        assert parsed.name == "code-reviewer"
        assert parsed.metadata.description == "Reviews pull requests for correctness and style"
        assert parsed.metadata.tools == ["Read", "Grep", "Glob"]
        assert parsed.parsed_content.startswith("You are a senior code reviewer")
        assert parsed.content == REVIEWER_MD
        assert parsed.sha == "sha1"

    def test_agent_without_front_matter(self):
        parsed = parse_markdown_file("agents/test-writer.md", BARE_AGENT)

        assert parsed is not None
        assert parsed.name == "test-writer"
        assert parsed.metadata.description == "Writes focused unit tests for new code"
        assert parsed.parsed_content == BARE_AGENT

    def test_invalid_name_replaced_by_file_name(self):
        content = f"---\nname: Code Reviewer\ndescription: Reviews code\n---\n{BODY}\n"
        parsed = parse_markdown_file("agents/Code_Reviewer.md", content)
        assert parsed.name == "code-reviewer"

    def test_missing_description_rejected(self):
        content = f"---\nname: reviewer\n---\n{BODY}\n"
        assert parse_markdown_file("agents/reviewer.md", content) is None

    def test_short_body_rejected(self):
        content = "---\nname: reviewer\ndescription: Reviews code\n---\nToo short.\n"
        assert parse_markdown_file("agents/reviewer.md", content) is None

    def test_short_bare_file_rejected(self):
        assert parse_markdown_file("notes.md", "# Notes\n\nSome notes for later.") is None

    @given(
        name=st.from_regex(r"[a-z][a-z0-9-]{0,20}", fullmatch=True),
        description=st.text(alphabet=string.ascii_letters + " ", min_size=1, max_size=60).filter(
            lambda s: s.strip()
        ),
    )
    def test_well_formed_front_matter_always_accepted(self, name, description):
        content = f"---\nname: {name}\ndescription: {description}\n---\n{BODY}\n"

        parsed = parse_markdown_file("agents/x.md", content)

        assert parsed is not None
        assert parsed.name == name
        assert parsed.metadata.description == description.strip()

    @settings(max_examples=200)
    @given(path=st.text(max_size=40), content=st.text(max_size=400))
    def test_arbitrary_input_never_raises(self, path, content):
        parsed = parse_markdown_file(path or "x.md", content)
        assert parsed is None or parsed.metadata.description


# =============================================================================
# Body heuristics
# =============================================================================


class TestBodyHeuristics:
    def test_metadata_from_body(self):
        body = "# Data Wrangler\n\nTools: Read, `Bash`\nCleans and reshapes messy CSV exports into tidy tables\n"

        metadata = extract_metadata_from_body(body)

        assert metadata.name == "data-wrangler"
        assert metadata.tools == ["Read", "Bash"]
        assert metadata.description == "Cleans and reshapes messy CSV exports into tidy tables"

    def test_description_prefix_line(self):
        metadata = extract_metadata_from_body("**Description**: Short one\n")
        assert metadata.description == "Short one"
        assert metadata.name is None


# =============================================================================
# Names and slugs
# =============================================================================


class TestSlugs:
    def test_slugify(self):
        assert slugify("  Code   Reviewer!! v2 ") == "code-reviewer-v2"

    def test_generate_slug_with_repository(self):
        assert generate_slug("Code Reviewer", "acme", "tools") == "code-reviewer-acme-tools"

    def test_generate_slug_without_repository(self):
        assert generate_slug("Code Reviewer") == "code-reviewer"

    def test_generate_slug_for_empty_name(self):
        assert generate_slug("!!!") == "unnamed-agent"

    def test_same_name_in_different_repositories(self):
        assert generate_slug("reviewer", "acme", "tools") != generate_slug(
            "reviewer", "other", "tools"
        )

    @pytest.mark.parametrize(
        "name,path,expected",
        [
            ("code-reviewer", "x.md", "code-reviewer"),
            (None, "agents/Security_Auditor.md", "security-auditor"),
            ("Bad Name", "agents/123.md", "agent-123"),
        ],
    )
    def test_normalize_agent_name(self, name, path, expected):
        assert normalize_agent_name(name, path) == expected

    @given(
        name=st.text(max_size=40),
        owner=st.text(alphabet=string.ascii_letters + "-", min_size=1, max_size=15),
        repo=st.text(alphabet=string.ascii_letters + "-._", min_size=1, max_size=15),
    )
    def test_slug_is_deterministic_and_url_safe(self, name, owner, repo):
        slug = generate_slug(name, owner, repo)

        assert slug == generate_slug(name, owner, repo)
        assert slug
        assert set(slug) <= set(string.ascii_lowercase + string.digits + "-")
        assert not slug.startswith("-") and not slug.endswith("-")
        assert "--" not in slug


# =============================================================================
# Content extraction
# =============================================================================


class TestContentExtraction:
    def test_tags_core_declared_and_keywords(self):
        metadata = SubAgentMetadata(
            name="security-reviewer",
            description="Audits backend data access",
            tags=["Custom"],
            category="quality",
        )

        tags = extract_tags(metadata)

        assert tags[:2] == ["subagent", "claude-code"]
        assert "custom" in tags
        assert "quality" in tags
        assert {"security", "code-review", "data", "backend"} <= set(tags)
        assert len(tags) == len(set(tags))

    def test_tags_capped(self):
        metadata = SubAgentMetadata(
            name="test-review-debug-security-data-deploy",
            description="test review security debug data frontend backend",
            tags=["a", "b", "c"],
        )
        assert len(extract_tags(metadata)) == 10

    def test_requirements_default(self):
        assert extract_requirements(SubAgentMetadata(), "No list here") == ["Claude Code CLI"]

    def test_requirements_from_body_list(self):
        body = "Requirements:\n- Python 3.11\n- Docker\n"
        assert extract_requirements(SubAgentMetadata(), body) == ["Python 3.11", "Docker"]

    def test_requirements_declared(self):
        metadata = SubAgentMetadata(extra={"requirements": "Node 20"})
        assert extract_requirements(metadata, "") == ["Node 20"]

    def test_sections(self):
        body = (
            "# Agent\n\nIntro\n\n## Installation\nCopy the file.\n\n"
            "## Usage\nAsk for a review.\n\n## Notes\nNone.\n"
        )
        assert extract_installation_instructions(body) == "Copy the file."
        assert extract_usage_examples(body) == "Ask for a review."
        assert extract_installation_instructions("# Agent\nNothing") is None

    def test_first_paragraph_skips_headings_and_short_lines(self):
        body = "# Title\n- bullet item that is long enough\nshort\nThis line is the real first paragraph."
        assert extract_first_paragraph(body) == "This line is the real first paragraph."


# =============================================================================
# Repository parsing
# =============================================================================


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def parser(github_client, sleep):
    return SubAgentParser(github_client, file_delay=0, sleep=sleep)


class TestParseRepository:
    """Tree listing, candidate selection, blob fetch retries."""

    @pytest.mark.asyncio
    async def test_readme_excluded_and_agent_found(self, fake_github, parser):
        fake_github.add_agent_repository()

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [a.name for a in agents] == ["code-reviewer"]
        assert agents[0].path == "agents/reviewer.md"
        blob_paths = [p for p in fake_github.paths() if "/git/blobs/" in p]
        assert blob_paths == ["/repos/acme/agents/git/blobs/sha0"]

    @pytest.mark.asyncio
    async def test_non_agents_skipped(self, fake_github, parser):
        fake_github.add_agent_repository(
            files={
                "agents/reviewer.md": REVIEWER_MD,
                "docs/notes.md": "# Notes\n\nshort",
                "agents/writer.md": BARE_AGENT,
            }
        )

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [a.name for a in agents] == ["code-reviewer", "test-writer"]

    def test_is_candidate(self):
        assert SubAgentParser.is_candidate({"type": "blob", "path": "a/b.md"})
        assert not SubAgentParser.is_candidate({"type": "tree", "path": "a.md"})
        assert not SubAgentParser.is_candidate({"type": "blob", "path": "a/b.txt"})
        assert not SubAgentParser.is_candidate({"type": "blob", "path": "docs/CHANGELOG.md"})

    @pytest.mark.asyncio
    async def test_transient_blob_failure_retried_then_skipped(self, fake_github, parser, sleep):
        fake_github.add(
            "/repos/acme/agents/git/trees/main",
            {"tree": [{"path": "agents/a.md", "type": "blob", "sha": "missing"}]},
        )

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert agents == []
        assert len(fake_github.paths()) == 1 + SubAgentParser.MAX_RETRIES + 1
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 1.5]

    @pytest.mark.asyncio
    async def test_rate_limited_blob_backs_off_exponentially(self, fake_github, parser, sleep):
        fake_github.add(
            "/repos/acme/agents/git/trees/main",
            {"tree": [{"path": "agents/reviewer.md", "type": "blob", "sha": "s1"}]},
        )
        fake_github.add(
            "/repos/acme/agents/git/blobs/s1",
            {"message": "API rate limit exceeded"},
            status_code=403,
            headers={"x-ratelimit-remaining": "0"},
        )
        fake_github.add(
            "/repos/acme/agents/git/blobs/s1",
            {"message": "API rate limit exceeded"},
            status_code=403,
            headers={"x-ratelimit-remaining": "0"},
        )
        fake_github.add(
            "/repos/acme/agents/git/blobs/s1",
            {"content": REVIEWER_MD, "encoding": "utf-8"},
        )

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [a.name for a in agents] == ["code-reviewer"]
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_tree_failure_raises(self, parser):
        with pytest.raises(GitHubClientError) as exc_info:
            await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert str(exc_info.value).startswith(
            "Failed to parse repository sub-agents for acme/agents"
        )
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_file_delay_between_blobs(self, fake_github, github_client, sleep):
        fake_github.add_agent_repository(
            files={"agents/reviewer.md": REVIEWER_MD, "agents/writer.md": BARE_AGENT}
        )
        parser = SubAgentParser(github_client, file_delay=0.1, sleep=sleep)

        await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [c.args[0] for c in sleep.await_args_list] == [0.1]

    @pytest.mark.asyncio
    async def test_file_delay_grows_after_retried_blob(self, fake_github, github_client, sleep):
        fake_github.add(
            "/repos/acme/agents/git/trees/main",
            {
                "tree": [
                    {"path": "agents/reviewer.md", "type": "blob", "sha": "s1"},
                    {"path": "agents/writer.md", "type": "blob", "sha": "s2"},
                ]
            },
        )
        for _ in range(2):
            fake_github.add(
                "/repos/acme/agents/git/blobs/s1", {"message": "Not Found"}, status_code=404
            )
        fake_github.add("/repos/acme/agents/git/blobs/s1", {"content": REVIEWER_MD, "encoding": "utf-8"})
        fake_github.add("/repos/acme/agents/git/blobs/s2", {"content": BARE_AGENT, "encoding": "utf-8"})
        parser = SubAgentParser(github_client, file_delay=0.1, sleep=sleep)

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [a.name for a in agents] == ["code-reviewer", "test-writer"]
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays[:2] == [0.5, 1.0]
        assert delays[2] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_file_delay_capped(self, fake_github, github_client, sleep):
        fake_github.add(
            "/repos/acme/agents/git/trees/main",
            {
                "tree": [
                    {"path": "agents/gone.md", "type": "blob", "sha": "missing"},
                    {"path": "agents/reviewer.md", "type": "blob", "sha": "s1"},
                ]
            },
        )
        fake_github.add("/repos/acme/agents/git/blobs/s1", {"content": REVIEWER_MD, "encoding": "utf-8"})
        parser = SubAgentParser(github_client, max_retries=5, file_delay=0.1, sleep=sleep)

        agents = await parser.parse_repository_sub_agents("acme", "agents", "main")

        assert [a.name for a in agents] == ["code-reviewer"]
        assert sleep.await_args_list[-1].args[0] == SubAgentParser.MAX_FILE_DELAY

    def test_delay_after(self, github_client):
        parser = SubAgentParser(github_client, file_delay=0.1)

        assert parser.delay_after(0) == 0.1
        assert parser.delay_after(1) == pytest.approx(0.3)
        assert parser.delay_after(10) == 1.0
