#!/usr/bin/env python3
"""
YouTube feed proxy entry point.

Modes:
    serve    Run the HTTP proxy (default)
    status   Show what the state file holds
    resolve  Resolve one or more video ids now and persist the results
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from cache import MetadataCache
from config import config, get_logger
from errors import MetadataUnavailable, PersistenceLoadError
from models import VideoMetadata
from resolver import YtDlpResolver
from server import run_server
from store import PersistenceStore
from telemetry import init_telemetry
from utils import format_duration

logger = get_logger("main")

# argparse already exits with 2 on usage errors
EXIT_CORRUPT_STATE = 3


def check_status(state_path: str) -> dict:
    """Summarize the persisted cache without starting any fetches."""
    store = PersistenceStore(state_path)
    records = store.load()
    shorts = sum(1 for meta in records.values() if meta.is_short)
    status = {
        'state_path': state_path,
        'state_exists': Path(state_path).exists(),
        'videos': len(records),
        'shorts': shorts,
        'regular': len(records) - shorts,
    }
    if records:
        status['newest_resolved_at'] = max(meta.resolved_at for meta in records.values())
    return status


def print_status(status: dict) -> None:
    print(f"\n📊 Feed Proxy State")
    print(f"💾 {status['state_path']}" + ("" if status['state_exists'] else " (missing)"))
    print(f"   🎬 Videos: {status['videos']}")
    print(f"   ✂️  Shorts: {status['shorts']}")
    print(f"   📺 Regular: {status['regular']}")


async def resolve_ids(video_ids: list, state_path: str) -> bool:
    """Resolve ``video_ids`` through the cache, print one line each, persist."""
    init_telemetry("feed-proxy-cli")
    store = PersistenceStore(state_path)
    cache = MetadataCache.open(store, YtDlpResolver())
    try:
        results = await cache.resolve_all(video_ids)
    finally:
        await cache.close()

    ok = True
    for video_id, result in results.items():
        if isinstance(result, VideoMetadata):
            kind = "short" if result.is_short else "video"
            print(f"{video_id}\t{format_duration(result.duration_seconds)}\t{kind}")
        elif isinstance(result, MetadataUnavailable):
            ok = False
            print(f"{video_id}\tunavailable\t{result.reason}")
    return ok


def main(argv: Optional[list] = None) -> None:
    """Main entry point."""

    parser = argparse.ArgumentParser(description='YouTube feed proxy')
    parser.add_argument('mode', nargs='?', default='serve', choices=['serve', 'status', 'resolve'],
                        help='Operation mode (default: serve)')
    parser.add_argument('video_ids', nargs='*', metavar='VIDEO_ID',
                        help='Video ids for resolve mode')
    parser.add_argument('--host', type=str, help=f'Listen address (default: {config.LISTEN_HOST})')
    parser.add_argument('--port', type=int, help=f'Listen port (default: {config.LISTEN_PORT})')
    parser.add_argument('--state', type=str, default=config.STATE_PATH,
                        help=f'State file path (default: {config.STATE_PATH})')

    args = parser.parse_args(argv)

    try:
        if args.mode == 'serve':
            if args.state != config.STATE_PATH:
                config.STATE_PATH = args.state
            asyncio.run(run_server(args.host, args.port))

        elif args.mode == 'status':
            print_status(check_status(args.state))

        elif args.mode == 'resolve':
            if not args.video_ids:
                parser.error('resolve needs at least one VIDEO_ID')
            success = asyncio.run(resolve_ids(args.video_ids, args.state))
            sys.exit(0 if success else 1)

    except PersistenceLoadError as e:
        logger.error(f"💥 {e}")
        logger.error("Refusing to start with a corrupt state file; fix or remove it")
        sys.exit(EXIT_CORRUPT_STATE)
    except KeyboardInterrupt:
        logger.info("👋 Feed proxy shutting down")


if __name__ == "__main__":
    main()
