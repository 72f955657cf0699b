"""Command line driver for harvesting sessions."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from harvester.core.atomic import StoreError
from harvester.core.fetch_job import article_limit_quota
from harvester.core.sessions import SessionRegistry, init_registry
from harvester.core.settings import Settings
from harvester.providers.pocket import PocketError, parse_fetch_request

logger = logging.getLogger(__name__)


def _parse_header(value: str) -> tuple[str, str]:
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError("header must be NAME:VALUE")
    return name.strip(), header_value.strip()


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="harvester", description="Harvest a Pocket saved-article library")
    parser.add_argument("--sessions-dir", help="Override HARVESTER_SESSIONS_DIR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("save-auth", help="Create or refresh a session from browser cookies")
    p.add_argument("--cookie", default=os.getenv("POCKET_COOKIE_STRING"), help="Cookie header value")
    p.add_argument("--header", action="append", type=_parse_header, default=[], help="Extra NAME:VALUE header")
    p.add_argument("--fetch-file", type=Path, help="File holding a browser 'Copy as fetch' request")

    p = sub.add_parser("fetch", help="Walk the saved-items listing")
    p.add_argument("session_id")
    p.add_argument("--limit", type=int, help="Stop once this many items are stored")

    p = sub.add_parser("download", help="Download original pages and images")
    p.add_argument("session_id")
    p.add_argument("--ids", nargs="+", help="Only these saved ids, in this order")

    p = sub.add_parser("download-one", help="Download a single article")
    p.add_argument("session_id")
    p.add_argument("saved_id")

    p = sub.add_parser("stop", help="Ask a running fetch (or downloads) to stop")
    p.add_argument("session_id")
    p.add_argument("--downloads", action="store_true", help="Stop downloads instead of the fetch")

    p = sub.add_parser("status", help="Show session status")
    p.add_argument("session_id")
    p.add_argument("--articles", action="store_true", help="Include per-article download state")

    p = sub.add_parser("boost", help="Discount the oldest requests from rate-limit pacing")
    p.add_argument("session_id")
    p.add_argument("--count", type=int, default=25)

    p = sub.add_parser("delete", help="Delete a session and all its files")
    p.add_argument("session_id")

    sub.add_parser("list", help="List sessions")
    return parser


def _auth_from_args(args: argparse.Namespace) -> tuple[str, dict[str, str]]:
    if args.fetch_file:
        return parse_fetch_request(args.fetch_file.read_text(encoding="utf-8"))
    if not args.cookie:
        raise ValueError("Provide --cookie, POCKET_COOKIE_STRING or --fetch-file")
    return args.cookie, dict(args.header)


async def _dispatch(registry: SessionRegistry, args: argparse.Namespace) -> int:
    cmd = args.command
    try:
        if cmd == "save-auth":
            cookie_string, headers = _auth_from_args(args)
            session_id = registry.save_auth(cookie_string, headers)
            print(session_id)

        elif cmd == "fetch":
            task = await registry.start_fetch(args.session_id)
            result = await task
            _print(result.to_dict())
            return 0 if result.error is None else 1

        elif cmd == "download":
            task = await registry.start_download(args.session_id, args.ids)
            status = await task
            _print(registry.get_download_status(args.session_id) | {"status": status.value})

        elif cmd == "download-one":
            result = await registry.download_single(args.session_id, args.saved_id)
            _print(result.to_dict())
            return 0 if result.success else 1

        elif cmd == "stop":
            if args.downloads:
                stopped = registry.stop_download(args.session_id)
            else:
                stopped = registry.stop(args.session_id)
            print("stop requested" if stopped else "not running")

        elif cmd == "status":
            status = registry.get_status(args.session_id)
            if args.articles:
                status["downloads"] = registry.get_download_status(args.session_id)
            _print(status)

        elif cmd == "boost":
            moved = registry.boost_rate_limit(args.session_id, args.count)
            _print({"boosted": moved, "rate_limit": registry.limiter.status(args.session_id).to_dict()})

        elif cmd == "delete":
            deleted = await registry.delete_session(args.session_id)
            print("deleted" if deleted else "nothing to delete")

        elif cmd == "list":
            for session_id in registry.store.list_sessions():
                print(session_id)

    except (StoreError, PocketError, ValueError, OSError) as e:
        logger.error(str(e))
        return 1
    finally:
        await registry.aclose()
    return 0


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    settings = Settings.from_env()
    if args.sessions_dir:
        settings = replace(settings, sessions_dir=args.sessions_dir)

    quota = article_limit_quota(getattr(args, "limit", None))
    registry = init_registry(settings, quota=quota)
    sys.exit(asyncio.run(_dispatch(registry, args)))


if __name__ == "__main__":
    main()
