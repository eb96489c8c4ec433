"""Command line entry point: run the relay server or inspect stored history."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import TextIO

from aiohttp import web

from .config import RelayConfig, load_config_from_env
from .errors import RelayError
from .log import conversation_id
from .sqlite_backend import SQLiteBackend
from .sqlite_log import SQLiteMessageLog
from .ws_transport import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # aiohttp.access logs every request at INFO.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _run_serve(args: argparse.Namespace, config: RelayConfig) -> int:
    configure_logging(args.log_level or config.log_level)
    db_path = config.db_path if args.db is None else (args.db or None)
    if db_path is None:
        logger.warning("no database configured; messages are kept in memory only")
    app = create_app(
        db_path=db_path,
        max_body_bytes=config.max_body_bytes,
        ws_heartbeat_s=config.ws_heartbeat,
    )
    host = args.host or config.host
    port = args.port if args.port is not None else config.port
    logger.info("relay listening on http://%s:%s", host, port)
    web.run_app(app, host=host, port=port, print=None)
    return 0


def _run_history(args: argparse.Namespace, config: RelayConfig, output: TextIO) -> int:
    db_path = args.db or config.db_path
    if not db_path:
        print("history requires --db or RELAY_DB_PATH", file=sys.stderr)
        return 2
    if db_path != ":memory:" and not os.path.exists(db_path):
        print(f"database {db_path} does not exist", file=sys.stderr)
        return 2
    try:
        conv_id = conversation_id(args.username, args.contact_username)
    except RelayError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    backend = SQLiteBackend(db_path)
    try:
        for message in SQLiteMessageLog(backend).history(conv_id):
            output.write(json.dumps(message.to_api_dict()) + "\n")
    finally:
        backend.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", description="Two-party chat relay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp relay server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (RELAY_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (RELAY_PORT or PORT)")
    serve_parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (RELAY_DB_PATH); an empty string keeps state in memory",
    )
    serve_parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (RELAY_LOG_LEVEL)",
    )

    history_parser = subparsers.add_parser("history", help="Print a conversation as JSON lines")
    history_parser.add_argument("username")
    history_parser.add_argument("contact_username")
    history_parser.add_argument("--db", type=str, default=None, help="Path to the SQLite database")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)
    config = load_config_from_env()

    if args.command == "serve":
        return _run_serve(args, config)
    return _run_history(args, config, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
