"""Relay CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .cache_store import DEFAULT_MAX_BYTES, DEFAULT_MAX_ENTRIES, DEFAULT_TTL_SECONDS, HelperCacheStore
from .ws_transport import create_app


def build_app(args: argparse.Namespace) -> web.Application:
    cache = HelperCacheStore(
        ttl_seconds=args.cache_ttl,
        max_entries=args.cache_max_entries,
        max_bytes=args.cache_max_bytes,
    )
    return create_app(
        ping_interval_s=args.ping_interval,
        cache=cache,
        mailbox_ttl_s=args.mailbox_ttl,
        sweep_interval_s=args.sweep_interval,
    )


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    web.run_app(build_app(args), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NukeNote relay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp relay server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=float,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--cache-ttl",
        type=int,
        default=DEFAULT_TTL_SECONDS,
        help="Seconds before helper cache entries expire",
    )
    serve_parser.add_argument("--cache-max-entries", type=int, default=DEFAULT_MAX_ENTRIES)
    serve_parser.add_argument("--cache-max-bytes", type=int, default=DEFAULT_MAX_BYTES)
    serve_parser.add_argument(
        "--mailbox-ttl",
        type=int,
        default=DEFAULT_TTL_SECONDS,
        help="Seconds before mailbox envelopes expire",
    )
    serve_parser.add_argument("--sweep-interval", type=float, default=3600, help="Seconds between expiry sweeps")
    serve_parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for relay commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
