"""Application entrypoint — start the API server or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn

from neuronest.config import get_settings
from neuronest.logger import setup_logging


async def _init_db(database_url: str) -> None:
    from neuronest.storage.database import create_engine, init_db

    engine = create_engine(database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="neuronest",
        description="Wearable telemetry, stress classification and history service.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the API server.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── init-db ───────────────────────────────────────────────
    init_parser = sub.add_parser("init-db", help="Create database tables.")
    init_parser.add_argument("--database-url", default=None)

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "neuronest.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "init-db":
        asyncio.run(_init_db(args.database_url or settings.database_url))
        print("Database tables created.")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
