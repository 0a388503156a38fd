"""
Operator command line for the PagerDuty directory cache.

    pagerduty-cache refresh [--force] [--output FILE]
    pagerduty-cache status
    pagerduty-cache invalidate-team TEAM_ID

Configuration comes from the environment (see ``shared.config``).
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.config import CacheConfig, get_config
from shared.errors import CacheLayerException
from shared.logging import configure_logging

from .cache.refresh import RefreshStatus
from .domain.directory import DirectoryService
from .main import SERVICE_NAME, create_directory_service


async def run_refresh(directory: DirectoryService, force: bool) -> Dict[str, Any]:
    result = await directory.refresher.populate(force=force)
    return result.to_dict()


async def run_status(directory: DirectoryService) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"cache": directory.cache.health()}
    if not directory.cache.enabled:
        return summary

    for name, read in (
        ("last_refresh", directory.misc.get_refresh_marker),
        ("refresh_status", directory.misc.get_refresh_status),
    ):
        try:
            value = await read()
        except CacheLayerException as e:
            summary[name] = {"error": e.code}
            continue
        if name == "last_refresh":
            value = {"refreshed_at": value.refreshed_at.isoformat(), "schema_version": value.schema_version}
        summary[name] = value
    return summary


async def run_invalidate_team(directory: DirectoryService, team_id: str) -> Dict[str, Any]:
    removed = await directory.team_members.invalidate(team_id)
    return {"team_id": team_id, "removed": removed}


async def _run(args: argparse.Namespace, config: CacheConfig) -> Dict[str, Any]:
    directory = await create_directory_service(config)
    try:
        if args.command == "refresh":
            return await run_refresh(directory, args.force)
        if args.command == "status":
            return await run_status(directory)
        return await run_invalidate_team(directory, args.team_id)
    finally:
        await directory.close()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pagerduty-cache", description="Manage the PagerDuty directory cache.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    refresh = subparsers.add_parser("refresh", help="Bulk refresh users, contact methods and notification rules")
    refresh.add_argument("--force", action="store_true", help="Refresh even if the cache is younger than the max age")
    refresh.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON summary")

    subparsers.add_parser("status", help="Show cache connectivity and the last refresh")

    invalidate = subparsers.add_parser("invalidate-team", help="Drop the cached membership of a team")
    invalidate.add_argument("team_id", help="Team identifier")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    config = get_config()
    configure_logging(SERVICE_NAME, config.log_level)

    try:
        summary = asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        return 130
    except CacheLayerException as exc:
        print(json.dumps(exc.to_response().model_dump(), indent=2), file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    output = getattr(args, "output", None)
    if output:
        output.write_text(json.dumps(summary, indent=2))

    if args.command == "refresh" and summary.get("status") == RefreshStatus.FAILED.value:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
