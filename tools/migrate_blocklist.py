"""One-time move of the legacy flat blocklist into BlockEntry records.

The service also runs this at startup; use the script to migrate a store
without restarting the server.

Input (example):
  REDIS_URL=redis://localhost:6379 python tools/migrate_blocklist.py
  python tools/migrate_blocklist.py --store sqlite --sqlite-path flapboard.sqlite3
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from flapboard.app import make_backend
from flapboard.board.config import ServerConfig
from flapboard.board.systems.abuse import migrate_legacy


async def run(config: ServerConfig) -> int:
    backend = make_backend(config)
    backend.init()
    store = await backend.connect()
    try:
        return await migrate_legacy(store)
    finally:
        await store.close()
        backend.close()


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--store", choices=["sqlite", "redis"], default=None)
    ap.add_argument("--sqlite-path", default=None)
    ap.add_argument("--redis-url", default=None)
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = ServerConfig.from_env()
    if args.redis_url:
        config.redis_url = args.redis_url
        config.store = "redis"
    if args.sqlite_path:
        config.sqlite_path = args.sqlite_path
    if args.store:
        config.store = args.store

    moved = asyncio.run(run(config))
    print(f"Migrated {moved} legacy blocklist entries ({config.store})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
