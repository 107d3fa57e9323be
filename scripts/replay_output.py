#!/usr/bin/env python3
"""Merge a saved provider output artifact into the business store again.

Useful for artifacts left behind by jobs that failed after the provider had
already written results. Without HARVESTER_DATABASE_URL the merge runs against
an in-memory store and only reports what it would have done.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from harvester.schemas.jobs import ProviderType
from harvester.services.merge import MergeEngine
from harvester.services.repository import PostgresRepository, get_repository


async def replay(
    path: str,
    *,
    provider: ProviderType,
    job_id: str | None,
    source_query: str,
    owner_id: str | None,
) -> dict[str, Any]:
    repository = get_repository()
    try:
        stats = await MergeEngine(repository).process_output(
            path,
            source_query=source_query,
            provider=provider,
            job_id=job_id,
            owner_id=owner_id,
        )
    finally:
        await repository.close()
    return {
        **stats.counters(),
        "dry_run": not isinstance(repository, PostgresRepository),
        "place_ids": stats.processed_ids,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-merge a provider output artifact (JSON array or NDJSON).")
    parser.add_argument("path", help="Path to the output artifact")
    parser.add_argument(
        "--provider",
        choices=[item.value for item in ProviderType],
        default=ProviderType.SCRAPER.value,
        help="Provider that produced the artifact",
    )
    parser.add_argument("--job-id", default=None, help="Job id to attribute raw records to")
    parser.add_argument("--source-query", default="", help="Query text stored on raw records")
    parser.add_argument("--owner-id", default=None, help="Owner attached to newly created businesses")
    args = parser.parse_args()

    result = asyncio.run(
        replay(
            args.path,
            provider=ProviderType(args.provider),
            job_id=args.job_id,
            source_query=args.source_query,
            owner_id=args.owner_id,
        )
    )
    print(json.dumps(result, sort_keys=True))


if __name__ == "__main__":
    main()
