"""Command-line interface for git-content-backend.

This module provides a small CLI that authenticates against the configured
provider, runs one backend operation and prints its results.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .backend import Backend, create_backend
from .cache import ContentCache
from .config import Config, get_collection, load_config
from .models import Credentials
from .request import RequestsExecutor
from .result import OperationResult

TOKEN_ENV = "GIT_BACKEND_TOKEN"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration.

    Args:
        verbose: Enable debug logging if True
    """
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level, format=format_str, handlers=[logging.StreamHandler()]
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="Browse content stored in a Git hosting provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the newest page of a folder collection
  git-backend entries posts

  # List every entry of a collection
  git-backend -c cms/config.yml entries posts --all

  # Show entries waiting for review
  git-backend unpublished
        """.strip(),
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yml"),
        help="Path to the configuration YAML file (default: config.yml)",
    )

    parser.add_argument(
        "--token",
        type=str,
        default=None,
        help=f"Provider access token (default: ${TOKEN_ENV})",
    )

    parser.add_argument(
        "--timeout",
        type=int,
        default=30,
        help="Request timeout in seconds (default: 30)",
    )

    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Directory for cached file contents (default: in memory)",
    )

    parser.add_argument(
        "--fork",
        action="store_true",
        help="Allow creating a personal fork when the fork workflow needs one",
    )

    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    entries = subparsers.add_parser("entries", help="List the entries of a collection")
    entries.add_argument("collection", help="Collection name")
    entries.add_argument(
        "--all", action="store_true", help="Follow pagination and list every entry"
    )

    entry = subparsers.add_parser("entry", help="Print one entry")
    entry.add_argument("path", help="Path of the entry in the repository")

    subparsers.add_parser("media", help="List the media library")
    subparsers.add_parser("unpublished", help="List entries under review")

    return parser


def _report(result: OperationResult, lines: list[str]) -> int:
    logger = logging.getLogger(__name__)
    if not result.ok:
        logger.error(f"Operation did not complete: {result}")
        return 1
    for line in lines:
        print(line)
    return 0


async def run(args: argparse.Namespace, config: Config, backend: Backend) -> int:
    """Authenticate and run the requested command.

    Returns:
        Process exit code
    """

    async def confirm_fork() -> bool:
        return args.fork

    await backend.authenticate(Credentials(token=args.token), confirm_fork=confirm_fork)

    if args.command == "entries":
        collection = get_collection(config, args.collection)
        if args.all:
            result: OperationResult[Any] = await backend.all_entries_by_folder(collection)
            files = result.value
        elif collection.get("folder"):
            result = await backend.entries_by_folder(collection)
            files = result.value.entries
        else:
            result = await backend.entries_by_files(collection)
            files = result.value
        return _report(result, sorted(loaded.file.path for loaded in files))

    if args.command == "entry":
        result = await backend.get_entry(args.path)
        return _report(result, [result.value.data] if result.value else [])

    if args.command == "media":
        result = await backend.get_media()
        return _report(result, [media.path for media in result.value])

    result = await backend.unpublished_entries()
    return _report(
        result,
        [
            f"{entry.collection}/{entry.slug}\t{entry.metadata.status.value}\t{entry.path}"
            for entry in result.value
        ],
    )


def main() -> None:
    """Main entry point for the CLI application."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    args.token = args.token or os.getenv(TOKEN_ENV)
    if not args.token:
        logger.error(f"No access token given, use --token or set {TOKEN_ENV}")
        sys.exit(1)

    if not args.config.exists():
        logger.error(f"Configuration file not found: {args.config}")
        sys.exit(1)

    try:
        try:
            config = load_config(args.config)
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            sys.exit(1)

        cache = ContentCache(args.cache_dir)
        with create_backend(
            config, cache=cache, executor=RequestsExecutor(timeout=args.timeout)
        ) as backend:
            exit_code = asyncio.run(run(args, config, backend))
        sys.exit(exit_code)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.verbose:
            logger.exception("Full traceback:")
        sys.exit(1)


if __name__ == "__main__":
    main()
