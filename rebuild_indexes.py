#!/usr/bin/env python3
"""
Script to wipe the RepoScope index and rebuild it from scratch.

This script:
1. Removes the index directory (vector table, revision records)
2. Re-ingests every configured repository with force=True
3. Prints a per-repository ingestion summary
"""

import asyncio
import logging
import shutil
import sys
from pathlib import Path

from reposcope.config import get_config
from reposcope.logging_utils import setup_logging
from reposcope.server import RepoScopeService

logger = logging.getLogger(__name__)


async def rebuild_all(service: RepoScopeService, repos: dict) -> dict:
    """Re-ingest every repository; failures are logged and the rest continue."""
    summaries = {}
    for repo_name, repo_path_str in repos.items():
        repo_path = Path(repo_path_str).expanduser()
        if not repo_path.exists():
            logger.warning("Repository path does not exist: %s", repo_path)
            continue
        logger.info("Rebuilding %s from %s", repo_name, repo_path)
        try:
            summaries[repo_name] = await service.index_path(
                repo_path, repo_name=repo_name, force=True
            )
        except Exception as e:
            logger.error("Error rebuilding %s: %s", repo_name, e)
    return summaries


def main():
    """Main execution."""
    print("=" * 80)
    print("REPOSCOPE - REBUILD INDEXES")
    print("=" * 80)
    print()

    config = get_config().validate()
    setup_logging(config)

    repos = config.repositories
    if not repos:
        logger.error("No repositories configured!")
        return 1

    print(f"Found {len(repos)} configured repositories:")
    for name, path in repos.items():
        print(f"  - {name}: {path}")
    print()

    index_dir = config.index_path
    if index_dir.exists():
        logger.info("Removing entire index directory at %s", index_dir)
        shutil.rmtree(index_dir)
    index_dir.mkdir(parents=True, exist_ok=True)

    service = RepoScopeService(config)
    try:
        summaries = asyncio.run(rebuild_all(service, repos))
    finally:
        service.close()

    print()
    print("=" * 80)
    print("REBUILD COMPLETE")
    print("=" * 80)
    for repo_name, summary in summaries.items():
        print(
            f"  {repo_name}: {summary.status}, {summary.files_seen} files, "
            f"{summary.chunks_total} chunks, {summary.chunks_embedded} embedded, "
            f"{summary.chunks_cached} cached, {summary.chunks_failed} failed"
        )

    failed = len(repos) - len(summaries)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
