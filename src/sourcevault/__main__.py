from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sourcevault.cache import CacheContext, PromptCredentialSource, SourceVaultError
from sourcevault.cache.utils import format_timestamp
from sourcevault.config import YamlConfigLoader
from sourcevault.config.models import AppConfig, ConfigLoadRequest
from sourcevault.logging import init_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sourcevault", description="Encrypted local mirror of source trees")
    parser.add_argument(
        "--config",
        default=ConfigLoadRequest().yaml_path,
        help=f"Path to config.yaml (default: {ConfigLoadRequest().yaml_path})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    subparsers.add_parser("refresh", help="Scan the configured directories and update the cache")
    subparsers.add_parser("prune", help="Drop cached entries whose files no longer exist")
    subparsers.add_parser("clear", help="Remove every cached entry")
    subparsers.add_parser("stats", help="Show cache statistics")
    subparsers.add_parser("files", help="List cached files")

    grep_parser = subparsers.add_parser("grep", help="Search cached content (case-insensitive)")
    grep_parser.add_argument("query", help="Text to search for")
    grep_parser.add_argument("--limit", type=int, default=None, help="Stop after N matches")

    cat_parser = subparsers.add_parser("cat", help="Print the cached content of a file")
    cat_parser.add_argument("path", help="Absolute path, or path relative to the first directory")

    return parser


def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return loader.load(request)


def _print_stats(context: CacheContext) -> None:
    stats = context.get_stats()
    print("Source vault stats:")
    print(f"  Locked: {'yes' if stats.locked else 'no'}")
    print(f"  Cached files: {stats.cached_files}")
    print(f"  Total size: {stats.total_size / 1024 / 1024:.2f} MB")
    print(f"  Last refresh: {format_timestamp(stats.last_refresh)}")
    print(f"  Cache directory: {stats.cache_dir}")
    for directory in stats.directories:
        print(f"  Directory: {directory}")


async def _run_command(args: argparse.Namespace, context: CacheContext) -> int:
    if args.command == "stats":
        # A missing store has nothing to count; a declined unlock falls back to the locked view.
        if not context.needs_setup():
            context.unlock()
        try:
            _print_stats(context)
        finally:
            await context.close()
        return 0

    if not context.unlock():
        print("Cache is locked: wrong passphrase.", file=sys.stderr)
        return 2

    try:
        if args.command == "refresh":
            summary = await context.refresh()
            if summary is None:
                print("Refresh cancelled.")
                return 1
            print(f"Cache refresh complete: {summary.updated}/{summary.total} files updated", end="")
            if summary.pruned:
                print(f", {summary.pruned} pruned", end="")
            if summary.warnings:
                print(f" ({len(summary.warnings)} warnings)", end="")
            print()
        elif args.command == "prune":
            removed = await context.prune()
            print(f"Pruned {removed} entries")
        elif args.command == "clear":
            context.clear()
            print("Cache cleared")
        elif args.command == "files":
            for entry in await context.list_entries():
                print(entry.display_path)
        elif args.command == "grep":
            for match in await context.search(args.query, limit=args.limit):
                print(f"{match.path}:{match.line_number}:{match.line_text}")
        elif args.command == "cat":
            content = context.fetch(args.path)
            if content is None:
                print(f"File not found in cache: {args.path}", file=sys.stderr)
                return 1
            sys.stdout.buffer.write(content)
            sys.stdout.flush()
    finally:
        await context.close()
    return 0


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = _load_config(args)
    init_logging(config.logging)

    context = CacheContext(config.cache, credentials=PromptCredentialSource())
    try:
        return await _run_command(args, context)
    except SourceVaultError as e:
        logger.error("Command failed. command=%s error=%s", args.command, e)
        return 1


def main() -> None:
    try:
        sys.exit(asyncio.run(_main_async()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
