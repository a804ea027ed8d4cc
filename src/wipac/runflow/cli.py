# wipac/runflow/cli.py
"""CLI entry point: serve, init-db, import-events commands.

Usage:
    runflow serve [--host HOST] [--port PORT]
    runflow init-db
    runflow import-events <events.json>
"""
from __future__ import annotations

import argparse
import asyncio
import inspect
import logging
from pathlib import Path

from wipac.runflow.core.config import settings
from wipac.runflow.core.logging import configure_logging

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(
        "DEBUG" if args.verbose else settings.log_level, json=settings.log_json
    )

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        if inspect.iscoroutinefunction(args.func):
            return asyncio.run(args.func(args))
        return args.func(args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runflow",
        description="Run workflow service: registration, dispatch and tracking",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- serve ---
    p_serve = subparsers.add_parser(
        "serve", help="Run the admin API and the scheduler",
    )
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=_cmd_serve)

    # --- init-db ---
    p_init = subparsers.add_parser(
        "init-db", help="Create the tables (development; prefer alembic upgrade)",
    )
    p_init.set_defaults(func=_cmd_init_db)

    # --- import-events ---
    p_import = subparsers.add_parser(
        "import-events", help="Register runs from a legacy events.json",
    )
    p_import.add_argument("path", type=Path, help="Path to events.json")
    p_import.set_defaults(func=_cmd_import_events)

    return parser


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from wipac.runflow.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)
    return 0


async def _cmd_init_db(args: argparse.Namespace) -> int:
    from wipac.runflow.core.db import get_engine, init_db

    engine = get_engine()
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    return 0


async def _cmd_import_events(args: argparse.Namespace) -> int:
    from wipac.runflow.core.db import get_engine, get_sessionmaker
    from wipac.runflow.registrar import import_events
    from wipac.runflow.workflow.engine import TransitionEngine

    path: Path = args.path
    if not path.exists():
        logger.error("File not found: %s", path)
        return 1

    try:
        report = await import_events(path, TransitionEngine(get_sessionmaker()))
    finally:
        await get_engine().dispose()

    print("\n=== Import Complete ===")
    print(f"Imported: {report.imported}")
    print(f"Skipped:  {report.skipped}")
    print(f"Total:    {report.total}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
