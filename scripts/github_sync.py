#!/usr/bin/env python3
"""GitHub sub-agent import and sync CLI.

Usage:
    github_sync.py import <url> --user-id U    # Import and print the agents
    github_sync.py preview <url>               # Show what an import would create
    github_sync.py sync <url> --user-id U      # Import, bind and run a forced sync
    github_sync.py status                      # Show config and API quota
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from subagents.config import get_config
from subagents.connectors.github.importer import ImportContext, ImportOptions
from subagents.connectors.github.sync import SyncOptions
from subagents.logging_config import configure_logging
from subagents.models import SyncBindingConfig
from subagents.service import build_services


def build_context(args) -> ImportContext:
    return ImportContext(
        user_id=args.user_id,
        options=ImportOptions(
            readme_as_description=args.readme_as_description,
            tags_from_topics=args.tags_from_topics,
            version_from_releases=args.version_from_releases,
            auto_publish=args.auto_publish,
            selected_agent_paths=args.path or [],
        ),
    )


def print_agents(agents):
    for agent in agents:
        print(f"  {agent.slug}")
        print(f"    name: {agent.name}  version: {agent.version}  status: {agent.status.value}")
        print(f"    file: {agent.file_path}")
        if agent.tools:
            print(f"    tools: {', '.join(agent.tools)}")
        if agent.tags:
            print(f"    tags: {', '.join(agent.tags)}")


async def run_import(args, preview: bool = False) -> int:
    services = build_services(get_config())
    try:
        context = build_context(args)
        if preview:
            agents = await services.importer.preview_import(args.url, context)
            print(f"Preview: {len(agents)} sub-agent(s) in {args.url}")
            print_agents(agents)
            return 0

        result = await services.importer.import_and_store(args.url, context, services.store)
        if args.json:
            print(json.dumps(result.to_dict(), indent=2, default=str))
        else:
            print(f"Import {'succeeded' if result.success else 'failed'}: {args.url}")
            print(f"  Processing time: {result.processing_time_ms} ms")
            print_agents(result.agents)
            for warning in result.warnings:
                print(f"  WARNING: {warning}")
            for error in result.errors:
                print(f"  ERROR: {error}")
        return 0 if result.success else 1
    finally:
        await services.aclose()


async def run_sync(args) -> int:
    services = build_services(get_config())
    try:
        result = await services.importer.import_and_store(
            args.url, build_context(args), services.store
        )
        if not result.success or result.repository is None:
            for error in result.errors:
                print(f"ERROR: {error}")
            return 1

        exit_code = 0
        for agent in result.agents:
            binding = await services.sync.enable_sync(
                agent.id,
                args.user_id,
                result.repository.full_name,
                config=SyncBindingConfig(readme_as_description=args.readme_as_description),
                branch=result.repository.default_branch,
            )
            sync_result = await services.sync.sync_repository(
                binding, SyncOptions(force=True, dry_run=args.dry_run)
            )
            changed = [k for k, v in sync_result.changes.to_dict().items() if v]
            print(
                f"  {agent.slug}: {'ok' if sync_result.success else 'failed'}"
                f" changes={','.join(changed) or 'none'}"
                f" ({sync_result.stats.processing_time_ms} ms)"
            )
            for error in sync_result.errors:
                print(f"    ERROR: {error}")
            if not sync_result.success:
                exit_code = 1
        return exit_code
    finally:
        await services.aclose()


async def show_status() -> int:
    config = get_config()
    services = build_services(config)
    try:
        print("GitHub Sync Status")
        print("=" * 50)
        print(f"API URL: {config.github_api_url}")
        print(f"Authenticated: {config.get_github_token() is not None}")
        print(f"Webhook signatures: {config.get_webhook_secret() is not None}")
        print(f"Sync interval: {config.sync_interval}s")
        print()

        await services.client.get_rate_limit()
        print("API quota:")
        for name, status in services.quota_manager.get_all_quota_status(
            services.caller_id
        ).items():
            print(
                f"  {name}: {status.remaining}/{status.limit}"
                f" ({status.level.value}, resets {status.reset})"
            )
        return 0
    finally:
        await services.aclose()


def add_import_options(parser):
    parser.add_argument("url", help="GitHub repository URL")
    parser.add_argument("--user-id", default="cli", help="Owner of imported agents")
    parser.add_argument("--path", action="append", help="Only import this file (repeatable)")
    parser.add_argument("--readme-as-description", action="store_true")
    parser.add_argument("--tags-from-topics", action="store_true")
    parser.add_argument("--version-from-releases", action="store_true")
    parser.add_argument("--auto-publish", action="store_true")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Import and sync Claude sub-agents from GitHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s import https://github.com/acme/agents --user-id u1
  %(prog)s preview https://github.com/acme/agents
  %(prog)s sync https://github.com/acme/agents --dry-run
  %(prog)s status

Configuration:
  Set in your environment or .env:
    GITHUB_TOKEN=ghp_your_token_here
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a repository")
    add_import_options(import_parser)
    import_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    preview_parser = subparsers.add_parser("preview", help="Preview an import")
    add_import_options(preview_parser)

    sync_parser = subparsers.add_parser("sync", help="Import, bind and sync a repository")
    add_import_options(sync_parser)
    sync_parser.add_argument("--dry-run", action="store_true", help="Do not write changes")

    subparsers.add_parser("status", help="Show config and API quota")

    args = parser.parse_args()
    configure_logging()

    if args.command == "status":
        sys.exit(asyncio.run(show_status()))
    if args.command == "sync":
        sys.exit(asyncio.run(run_sync(args)))
    sys.exit(asyncio.run(run_import(args, preview=args.command == "preview")))


if __name__ == "__main__":
    main()
