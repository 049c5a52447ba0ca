#!/usr/bin/env python3
"""Run one ProductBoard hierarchy sync from the command line.

Usage:
  python -m pbsync.scripts.sync_hierarchy --workspace-id <uuid> --api-key <token>
  python -m pbsync.scripts.sync_hierarchy --workspace-id <uuid> --product-id <id> --no-components
  python -m pbsync.scripts.sync_hierarchy --workspace-id <uuid> --json

The api key defaults to PBSYNC_PRODUCTBOARD_API_KEY.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from pydantic import ValidationError

from pbsync import config
from pbsync.db import connection, migrations, sync_engine
from pbsync.models import SyncRequest

EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync a ProductBoard hierarchy into the local store")
    parser.add_argument("--workspace-id", required=True)
    parser.add_argument("--api-key", default=config.PRODUCTBOARD_API_KEY)
    parser.add_argument("--product-id", default=None)
    parser.add_argument("--initiative-id", default=None)
    parser.add_argument("--no-features", action="store_true", help="Skip feature collection")
    parser.add_argument("--no-components", action="store_true", help="Skip component collection")
    parser.add_argument("--no-initiatives", action="store_true", help="Skip initiative collection")
    parser.add_argument("--max-depth", type=int, default=5)
    parser.add_argument("--json", action="store_true", help="Print the outcome as JSON")
    return parser


def build_request(args: argparse.Namespace) -> SyncRequest:
    return SyncRequest(
        workspace_id=args.workspace_id,
        api_key=args.api_key or "",
        product_id=args.product_id,
        initiative_id=args.initiative_id,
        include_features=not args.no_features,
        include_components=not args.no_components,
        include_initiatives=not args.no_initiatives,
        max_depth=args.max_depth,
    )


async def _run(request: SyncRequest, as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        engine = sync_engine.SyncEngine(db)
        outcome = await engine.run(request)
    finally:
        await connection.close_connection()

    payload = outcome.to_response()
    if as_json:
        print(json.dumps(payload, indent=2))
    elif outcome.success:
        results = payload["results"]
        print(f"Run {outcome.run_id} completed")
        for key, value in results.items():
            print(f"  {key}: {value}")
    else:
        print(f"Run {outcome.run_id} failed: {outcome.error}")
    return 0 if outcome.success else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        request = build_request(args)
    except ValidationError as exc:
        if args.json:
            print(json.dumps({"success": False, "error": "Invalid request", "details": exc.errors(include_url=False)}, indent=2, default=str))
        else:
            print(f"Invalid request: {exc}")
        return EXIT_INVALID

    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(request, args.json))


if __name__ == "__main__":
    raise SystemExit(main())
