#!/usr/bin/env python3
"""
Command-line front-end for memory-client.

Usage:
    memory-client add user "How do I reset the cache?"
    memory-client search "cache reset"
    memory-client clear day | week | month
    memory-client clear range --from 2025-01-01 --to 2025-01-31
    memory-client index-project ./src --tag proj1
    memory-client watch-project .
    memory-client serve --protocol stdio
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import threading
from datetime import datetime, timedelta, tzinfo

import requests

from config import CONFIG
from dispatcher import ToolDispatcher
from errors import InvalidArgument, MemoryClientError
from utils import truncate

VERSION = "0.3.0"


def _dispatcher() -> ToolDispatcher:
    from server import get_dispatcher

    return get_dispatcher()


def _parse_date(value: str, flag: str, tz: tzinfo = CONFIG.tz) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=tz)
    except ValueError:
        raise InvalidArgument(f"Invalid {flag} date '{value}'. Date format should be YYYY-MM-DD") from None


# =============================================================================
# Commands
# =============================================================================


def cmd_add(args, dispatcher: ToolDispatcher) -> None:
    arguments = {"role": args.role, "content": args.content}
    if args.tag:
        arguments["tags"] = args.tag
    result = dispatcher.call("add_message", arguments)
    print(f"Message added successfully (ID: {result['id']})")


def cmd_search(args, dispatcher: ToolDispatcher) -> None:
    messages = dispatcher.memory.search_messages(args.query, args.limit)
    print(f"Found {len(messages)} results:")
    for i, message in enumerate(messages, 1):
        print(f"{i}. [{message.role.value}] {truncate(message.content, 200)} (score {message.score:.3f})")


def cmd_search_project(args, dispatcher: ToolDispatcher) -> None:
    files = dispatcher.indexer.search_project_files(args.query, args.limit)
    print(f"Found {len(files)} project files:")
    for i, project_file in enumerate(files, 1):
        print(f"{i}. [{project_file.path}] {truncate(project_file.content, 100)}")


def cmd_history(args, dispatcher: ToolDispatcher) -> None:
    messages = dispatcher.call("get_conversation_history", {"limit": args.limit, "tags": args.tag or []})["messages"]
    print(f"Conversation History (last {args.limit} messages):")
    for i, message in enumerate(messages, 1):
        print(f"{i}. [{message['role']}] {message['content']}")


def cmd_clear(args, dispatcher: ToolDispatcher) -> None:
    if args.period == "range":
        if not args.date_from or not args.date_to:
            raise InvalidArgument("--from and --to flags are required for range period")
        start = _parse_date(args.date_from, "--from", dispatcher.config.tz)
        end = _parse_date(args.date_to, "--to", dispatcher.config.tz) + timedelta(days=1)  # --to is inclusive
        print(f"Clearing messages from {args.date_from} to {args.date_to}...")
        count = dispatcher.memory.delete_messages_by_time_range(start, end)
    else:
        print(f"Clearing messages from the current {args.period}...")
        count = dispatcher.call("clear_messages", {"period": args.period})["deleted"]
    print(f"Successfully deleted {count} messages.")


def cmd_purge(args, dispatcher: ToolDispatcher) -> None:
    if not args.yes:
        print("WARNING: This will delete ALL data from the vector store!")
        print("This action cannot be undone.")
        if input("Are you sure you want to continue? (y/N): ").strip().lower() != "y":
            print("Operation cancelled.")
            return
    dispatcher.memory.purge()
    print("All data has been purged successfully.")


def _print_report(verb: str, result: dict) -> None:
    print(
        f"{verb} complete: {result['added']} new files, {result['updated']} updated files, "
        f"{result['skipped']} skipped, {result['failed']} failed"
    )
    for path, error in result["errors"].items():
        print(f"  {path}: {error}", file=sys.stderr)


def cmd_index_project(args, dispatcher: ToolDispatcher) -> None:
    print(f"Indexing project files in: {args.path}")
    if args.tag:
        print(f"Using tag: {args.tag}")
    _print_report("Indexing", dispatcher.call("index_project", {"path": args.path, "tag": args.tag}))


def cmd_update_project(args, dispatcher: ToolDispatcher) -> None:
    print(f"Updating project files in: {args.path}")
    _print_report("Project update", dispatcher.call("update_project", {"path": args.path, "tag": args.tag}))


def cmd_watch_project(args, dispatcher: ToolDispatcher) -> None:
    print(f"Watching project directory: {args.path}")
    print("Press Ctrl+C to stop")
    _print_report("Initial indexing", dispatcher.call("index_project", {"path": args.path, "tag": args.tag}))

    cancel = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: cancel.set())
    try:
        dispatcher.indexer.watch_project(args.path, cancel, interval=args.interval, tag=args.tag)
    except KeyboardInterrupt:
        cancel.set()
    print("Stopping project watcher")


def cmd_status(args, dispatcher: ToolDispatcher | None = None) -> None:
    url = f"http://{CONFIG.api_host}:{CONFIG.api_port}/api/status"
    try:
        response = requests.get(url, timeout=CONFIG.request_timeout)
        response.raise_for_status()
    except requests.RequestException:
        print("Memory server is not running")
        print("To start the server, run: memory-client serve")
        return
    status = response.json()
    print(f"Memory server is running (uptime {status['uptime_seconds']}s)")
    print(f"Collection: {status['collection']}")
    print(f"Requests handled: {status['requests']}")
    print(f"Conversation tag: {status['session']['tag'] or '(none)'} ({status['session']['mode']} mode)")


def cmd_serve(args, dispatcher: ToolDispatcher | None = None) -> None:
    from server import run_server

    asyncio.run(run_server(protocol=args.protocol, api=not args.no_api, watch=args.watch, watch_tag=args.tag))


def cmd_version(args, dispatcher: ToolDispatcher | None = None) -> None:
    print(f"memory-client v{VERSION}")


# =============================================================================
# Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memory-client",
        description="Conversation memory backed by a vector store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="Add a message to memory")
    p.add_argument("role", help="user, assistant or system")
    p.add_argument("content")
    p.add_argument("--tag", action="append", help="Tag (repeatable)")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("search", help="Search conversation memory")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("search-project", help="Search project files")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_search_project)

    p = sub.add_parser("history", help="Show conversation history")
    p.add_argument("limit", nargs="?", type=int, default=CONFIG.history_limit)
    p.add_argument("--tag", action="append", help="Only messages with this tag (repeatable)")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("clear", help="Clear messages for a time period")
    p.add_argument("period", choices=["day", "week", "month", "range"])
    p.add_argument("--from", dest="date_from", help="Range start, YYYY-MM-DD")
    p.add_argument("--to", dest="date_to", help="Range end (inclusive), YYYY-MM-DD")
    p.set_defaults(func=cmd_clear)

    p = sub.add_parser("purge", help="Drop and recreate the collection")
    p.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(func=cmd_purge)

    for name, func, help_text in [
        ("index-project", cmd_index_project, "Index project files in a directory"),
        ("update-project", cmd_update_project, "Index new and modified project files"),
        ("watch-project", cmd_watch_project, "Watch a project and keep its index current"),
    ]:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("path", nargs="?", default=".")
        p.add_argument("--tag", help="Tag for newly indexed files")
        if name == "watch-project":
            p.add_argument("--interval", type=float, default=CONFIG.watch_interval)
        p.set_defaults(func=func)

    p = sub.add_parser("status", help="Check whether the server is running")
    p.set_defaults(func=cmd_status, local=False)

    p = sub.add_parser("serve", help="Run the memory server daemon")
    p.add_argument("--protocol", choices=["mcp", "stdio"], default="mcp")
    p.add_argument("--no-api", action="store_true", help="Do not start the HTTP API")
    p.add_argument("--watch", help="Project directory to keep indexed")
    p.add_argument("--tag", help="Tag for files indexed by --watch")
    p.set_defaults(func=cmd_serve, local=False)

    p = sub.add_parser("version", help="Show version information")
    p.set_defaults(func=cmd_version, local=False)

    return parser


def main(argv: list[str] | None = None, dispatcher: ToolDispatcher | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if getattr(args, "local", True):
            dispatcher = dispatcher or _dispatcher()
            dispatcher.memory.store.ensure_collection()
        args.func(args, dispatcher)
    except MemoryClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
