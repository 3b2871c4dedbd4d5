"""Command-line entry point.

Subcommands::

    cvesentry init-db            create the schema
    cvesentry run                run one cycle and print its summary
    cvesentry serve              run cycles on the configured interval
    cvesentry status             print the watermark and the last summary

``--config`` points at a YAML/JSON file; without it ``CVESENTRY_CONFIG``
or ``./cvesentry.yaml`` is used, and defaults apply when none exists.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

import yaml
from pydantic import ValidationError

from . import __version__
from .config import AppConfig, find_config, load_config
from .database import Database
from .errors import PipelineError
from .feed import FeedClient
from .report import render_cycle_summary
from .scheduler import CycleSummary, Orchestrator
from .search import SearchClient
from .state import load_summary, stored_watermark
from .utils import configure_logging, log_event

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cvesentry", description="Vulnerability ingestion and notification pipeline")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to cvesentry.yaml (or .json)")
    parser.add_argument("--database-url", default=None, help="Override store.database_url")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("run", help="Run one ingestion cycle")
    sub.add_parser("serve", help="Run cycles periodically until interrupted")
    sub.add_parser("status", help="Show watermark and last cycle summary")
    return parser


def _load(args: argparse.Namespace) -> AppConfig:
    path = args.config or find_config()
    cfg = load_config(path)
    if args.database_url:
        cfg.store.database_url = args.database_url
    return cfg


def _install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform (e.g. Windows event loops).
            pass


async def _run_pipeline(cfg: AppConfig, db: Database, forever: bool) -> CycleSummary | None:
    async with FeedClient(cfg.feed) as feed, SearchClient(cfg.search) as search:
        orchestrator = Orchestrator(cfg, db, feed, search)
        if forever:
            _install_signal_handlers(orchestrator.stop)
            await orchestrator.run_forever()
            return orchestrator.last_summary
        _install_signal_handlers(orchestrator.cancel)
        return await orchestrator.run_cycle()


def cmd_init_db(cfg: AppConfig, db: Database) -> int:
    db.init_db()
    print(f"Initialised schema at {db.engine.url.render_as_string(hide_password=True)}")
    return EXIT_OK


def cmd_run(cfg: AppConfig, db: Database) -> int:
    db.init_db()
    summary = asyncio.run(_run_pipeline(cfg, db, forever=False))
    if summary is None:
        return EXIT_FAILED
    print(render_cycle_summary(summary))
    if summary.status == "cancelled":
        return EXIT_CANCELLED
    return EXIT_OK if summary.succeeded else EXIT_FAILED


def cmd_serve(cfg: AppConfig, db: Database) -> int:
    db.init_db()
    log_event(log, logging.INFO, "serve_start", interval=cfg.scheduler.interval_seconds)
    asyncio.run(_run_pipeline(cfg, db, forever=True))
    return EXIT_OK


def cmd_status(cfg: AppConfig, db: Database) -> int:
    db.init_db()
    watermark = stored_watermark(db)
    print(f"Watermark: {watermark.isoformat() if watermark else 'not set'}")
    summary = load_summary(db)
    if summary is None:
        print("No cycle has completed yet.")
    else:
        print()
        print(render_cycle_summary(summary))
    return EXIT_OK


COMMANDS = {
    "init-db": cmd_init_db,
    "run": cmd_run,
    "serve": cmd_serve,
    "status": cmd_status,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(default_level=args.log_level or "INFO")
    if args.log_level:
        logging.getLogger().setLevel(args.log_level.upper())

    try:
        cfg = _load(args)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    db = Database(cfg.store.database_url, echo=cfg.store.echo)
    try:
        return COMMANDS[args.command](cfg, db)
    except PipelineError as exc:
        log_event(log, logging.ERROR, "command_failed", command=args.command, kind=exc.kind, error=exc)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        db.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
