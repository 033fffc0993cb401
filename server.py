#!/usr/bin/env python3
"""
Memory Client Server - conversation memory over a Qdrant vector store

Runs the daemon that editor tools talk to:
- FastMCP tools (or line-delimited JSON envelopes) over stdin/stdout
- Flask HTTP API for tagging, envelopes, status and stats
- Periodic stats collector and optional project watcher
"""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP
from werkzeug.serving import BaseWSGIServer, make_server

from config import CONFIG
from dispatcher import ToolDispatcher
from embeddings import Embedder
from http_api import create_app
from indexer import ProjectIndexer
from memory_store import MemoryStore
from session import SessionState
from stats import ActivityLog, StatsCollector
from utils import log, new_id
from vector_store import QdrantStore

# =============================================================================
# Thread-Safety Lock (for singleton initialization)
# =============================================================================

_lock = threading.RLock()
_dispatcher: ToolDispatcher | None = None


def get_dispatcher() -> ToolDispatcher:
    """Get or create the dispatcher and the stores behind it (thread-safe)."""
    global _dispatcher
    if _dispatcher is None:
        with _lock:
            if _dispatcher is None:  # Double-check after acquiring lock
                store = QdrantStore(CONFIG)
                embedder = Embedder(CONFIG)
                _dispatcher = ToolDispatcher(
                    MemoryStore(store, embedder, CONFIG),
                    ProjectIndexer(store, embedder, CONFIG),
                    SessionState(),
                    ActivityLog(CONFIG.activity_log_size),
                    CONFIG,
                )
    return _dispatcher


async def _call(name: str, **arguments: Any) -> str:
    """Run a tool through the dispatcher; failures come back as 'Error: ...'."""
    request = {
        "id": new_id(),
        "type": "tool_call",
        "data": {"name": name, "arguments": {k: v for k, v in arguments.items() if v is not None}},
    }
    response = await get_dispatcher().handle(request)
    if response["status"] == "error":
        return f"Error: {response['error']}"
    return json.dumps(response["result"], indent=2)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "memory-client",
    instructions="Conversation memory and project file search backed by a Qdrant vector store",
)

READ_ONLY = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True}
WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
IDEMPOTENT_WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": True}
DESTRUCTIVE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True}


@mcp.tool(annotations=WRITE)
async def add_message(
    role: str,
    content: str,
    tags: list[str] | None = None,
    metadata: dict[str, str] | None = None,
) -> str:
    """Store a conversation message. The active conversation tag is added in automatic mode.

    Args:
        role: One of user, assistant, system
        content: Message text
        tags: Optional tags
        metadata: Optional string key/value pairs
    """
    return await _call("add_message", role=role, content=content, tags=tags, metadata=metadata)


@mcp.tool(annotations=READ_ONLY)
async def search_similar_messages(query: str, limit: int = 5) -> str:
    """Semantic search over stored messages and project files.

    Args:
        query: Search text
        limit: Max results (default 5, max 100)
    """
    return await _call("search_similar_messages", query=query, limit=limit)


@mcp.tool(annotations=READ_ONLY)
async def get_conversation_history(
    limit: int = 10,
    role: str | None = None,
    tags: list[str] | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
) -> str:
    """Recent messages, newest first.

    Args:
        limit: Max messages (default 10)
        role: Only messages with this role
        tags: Only messages carrying all of these tags
        start_time: ISO-8601 lower bound (inclusive)
        end_time: ISO-8601 upper bound (inclusive)
    """
    return await _call(
        "get_conversation_history", limit=limit, role=role, tags=tags, start_time=start_time, end_time=end_time
    )


@mcp.tool(annotations=READ_ONLY)
async def get_messages_by_tag(tag: str) -> str:
    """Messages carrying a tag, newest first.

    Args:
        tag: Tag to look up
    """
    return await _call("get_messages_by_tag", tag=tag)


@mcp.tool(annotations=DESTRUCTIVE)
async def delete_message(id: str) -> str:
    """Delete a message by ID.

    Args:
        id: Message ID
    """
    return await _call("delete_message", id=id)


@mcp.tool(annotations=DESTRUCTIVE)
async def delete_messages_by_time_range(start_time: str, end_time: str) -> str:
    """Delete messages with start_time <= timestamp < end_time.

    Args:
        start_time: ISO-8601 start (inclusive)
        end_time: ISO-8601 end (exclusive)
    """
    return await _call("delete_messages_by_time_range", start_time=start_time, end_time=end_time)


@mcp.tool(annotations=DESTRUCTIVE)
async def clear_messages(period: str) -> str:
    """Delete messages from the current day, week (from Sunday), month, or all of them.

    Args:
        period: One of day, week, month, all
    """
    return await _call("clear_messages", period=period)


@mcp.tool(annotations=DESTRUCTIVE)
async def delete_all_messages() -> str:
    """Delete every message. Project files are kept."""
    return await _call("delete_all_messages")


@mcp.tool(annotations=IDEMPOTENT_WRITE)
async def index_project(path: str, tag: str | None = None) -> str:
    """Index the files of a project directory that are not stored yet.

    Args:
        path: Project root directory
        tag: Optional tag for newly indexed files
    """
    return await _call("index_project", path=path, tag=tag)


@mcp.tool(annotations=IDEMPOTENT_WRITE)
async def update_project(path: str, tag: str | None = None) -> str:
    """Index new files and re-index files modified since they were stored.

    Args:
        path: Project root directory
        tag: Optional tag for newly indexed files
    """
    return await _call("update_project", path=path, tag=tag)


@mcp.tool(annotations=READ_ONLY)
async def search_project_files(query: str, limit: int = 5) -> str:
    """Semantic search over indexed project files.

    Args:
        query: Search text
        limit: Max results (default 5, max 100)
    """
    return await _call("search_project_files", query=query, limit=limit)


@mcp.tool(annotations=READ_ONLY)
async def list_project_files(limit: int | None = None, tag: str | None = None) -> str:
    """List indexed project files.

    Args:
        limit: Max files
        tag: Only files with this tag
    """
    return await _call("list_project_files", limit=limit, tag=tag)


@mcp.tool(annotations=DESTRUCTIVE)
async def delete_project_file(path: str) -> str:
    """Delete one indexed project file.

    Args:
        path: Absolute file path or point ID
    """
    return await _call("delete_project_file", path=path)


@mcp.tool(annotations=DESTRUCTIVE)
async def delete_all_project_files(tag: str | None = None) -> str:
    """Delete all indexed project files, or only those with a tag.

    Args:
        tag: Optional tag restricting the deletion
    """
    return await _call("delete_all_project_files", tag=tag)


@mcp.tool(annotations=DESTRUCTIVE)
async def clear_all_memories() -> str:
    """Delete every message and project file."""
    return await _call("clear_all_memories")


@mcp.tool(annotations=READ_ONLY)
async def get_memory_stats() -> str:
    """Collection statistics: total vectors, messages per role, project files."""
    return await _call("get_memory_stats")


@mcp.tool(annotations=IDEMPOTENT_WRITE)
async def set_conversation_tag(tag: str) -> str:
    """Set the tag attached to new messages in automatic mode. Empty clears it.

    Args:
        tag: Conversation tag
    """
    return await _call("set_conversation_tag", tag=tag)


@mcp.tool(annotations=READ_ONLY)
async def get_conversation_tag() -> str:
    """Current conversation tag."""
    return await _call("get_conversation_tag")


@mcp.tool(annotations=IDEMPOTENT_WRITE)
async def set_tagging_mode(mode: str) -> str:
    """Set the tagging mode.

    Args:
        mode: automatic or manual
    """
    return await _call("set_tagging_mode", mode=mode)


@mcp.tool(annotations=READ_ONLY)
async def get_tagging_mode() -> str:
    """Current tagging mode."""
    return await _call("get_tagging_mode")


# =============================================================================
# HTTP API Thread
# =============================================================================


def start_api_server(app, host: str = CONFIG.api_host, port: int = CONFIG.api_port) -> BaseWSGIServer:
    """Serve ``app`` from a daemon thread. Call ``shutdown()`` to stop it."""
    server = make_server(host, port, app, threaded=True)
    threading.Thread(target=server.serve_forever, name="memory-api", daemon=True).start()
    log(f"HTTP API listening on http://{host}:{port}")
    return server


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(
    protocol: str = "mcp",
    api: bool = True,
    watch: str | Path | None = None,
    watch_tag: str | None = None,
) -> None:
    """Run the daemon until stdin closes.

    ``protocol`` selects the stdio framing: ``mcp`` (FastMCP) or ``stdio``
    (line-delimited request envelopes).
    """
    dispatcher = get_dispatcher()
    await asyncio.to_thread(dispatcher.memory.store.ensure_collection)

    collector = StatsCollector(dispatcher.memory.get_memory_stats, CONFIG)
    stop = asyncio.Event()
    stats_task = asyncio.create_task(collector.run(stop))
    api_server = start_api_server(create_app(dispatcher, collector)) if api else None
    if watch:
        threading.Thread(
            target=dispatcher.indexer.watch_project,
            args=(watch, dispatcher.cancel),
            kwargs={"tag": watch_tag},
            name="memory-watch",
            daemon=True,
        ).start()

    log(f"Server ready ({protocol} protocol, collection '{CONFIG.collection_name}')")
    try:
        if protocol == "stdio":
            await dispatcher.serve_stdio()
        else:
            await mcp.run_stdio_async()
    finally:
        dispatcher.cancel.set()
        stop.set()
        await stats_task
        if api_server is not None:
            api_server.shutdown()
        log("Server stopped")


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
